"""System update, package and automatic security update steps."""

from rich.console import Console

from vpsharden.context import RunContext
from vpsharden.models import Step
from vpsharden.rendering import render
from vpsharden.system import (
    APT_ENV,
    apt_update,
    install_packages,
    missing_packages,
    package_installed,
    upgradable_packages,
)

console = Console()

UNATTENDED_PATH = "/etc/apt/apt.conf.d/50unattended-upgrades"
AUTO_UPGRADES_PATH = "/etc/apt/apt.conf.d/20auto-upgrades"


def system_is_current(ctx: RunContext) -> bool:
    pending = upgradable_packages(ctx.host)
    if pending:
        console.print(f"[dim]  {len(pending)} packages can be upgraded[/dim]")
    return not pending


def upgrade_system(ctx: RunContext) -> None:
    """Update system packages."""
    console.print("[cyan]Updating system packages...[/cyan]")
    apt_update(ctx.host)
    ctx.host.run(f"{APT_ENV} apt-get upgrade -y")
    ctx.host.run(f"{APT_ENV} apt-get autoremove -y")


def _packages_present(packages):
    def check(ctx: RunContext) -> bool:
        missing = missing_packages(ctx.host, packages)
        if missing:
            console.print(f"[dim]  Missing: {', '.join(missing)}[/dim]")
        return not missing

    return check


def _install_missing(packages):
    def apply(ctx: RunContext) -> None:
        missing = missing_packages(ctx.host, packages)
        console.print(f"[cyan]Installing {', '.join(missing)}...[/cyan]")
        install_packages(ctx.host, missing)

    return apply


def auto_update_files(ctx: RunContext) -> dict[str, str]:
    """Desired content of the unattended-upgrades config files."""
    return {
        UNATTENDED_PATH: render("50unattended-upgrades.j2", auto_reboot=ctx.config.auto_reboot),
        AUTO_UPGRADES_PATH: render("20auto-upgrades.j2"),
    }


def auto_updates_configured(ctx: RunContext) -> bool:
    return all(ctx.host.read_file(path) == content for path, content in auto_update_files(ctx).items())


def configure_auto_updates(ctx: RunContext) -> None:
    """Configure automatic security updates."""
    console.print("[cyan]Configuring automatic security updates...[/cyan]")
    for path, content in auto_update_files(ctx).items():
        ctx.files.write(path, content)


def verify_auto_updates(ctx: RunContext) -> bool:
    return package_installed(ctx.host, "unattended-upgrades") and auto_updates_configured(ctx)


def package_steps(config) -> list[Step]:
    steps = []

    if config.system_upgrade:
        steps.append(Step(
            name="system-upgrade",
            description="Upgrade installed packages",
            check=system_is_current,
            apply=upgrade_system,
            critical=False,
        ))

    steps.append(Step(
        name="security-packages",
        description="Install firewall, ban daemon and update tooling",
        check=_packages_present(config.security_packages),
        apply=_install_missing(config.security_packages),
        critical=True,
        remediation="Check apt sources and network access, then re-run",
    ))

    if config.convenience_packages:
        steps.append(Step(
            name="convenience-packages",
            description="Install convenience tools",
            check=_packages_present(config.convenience_packages),
            apply=_install_missing(config.convenience_packages),
            critical=False,
        ))

    steps.append(Step(
        name="auto-updates",
        description="Enable unattended security upgrades",
        check=auto_updates_configured,
        apply=configure_auto_updates,
        verify=verify_auto_updates,
        critical=False,
    ))

    return steps
