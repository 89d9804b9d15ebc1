"""fail2ban step."""

from rich.console import Console

from vpsharden.context import RunContext
from vpsharden.models import Step
from vpsharden.rendering import render
from vpsharden.system import enable_service, restart_service, service_active, service_enabled

console = Console()

JAIL_PATH = "/etc/fail2ban/jail.local"


def jail_content(ctx: RunContext) -> str:
    return render("jail.local.j2", fail2ban=ctx.config.fail2ban, ssh_port=ctx.config.ssh_port)


def fail2ban_configured(ctx: RunContext) -> bool:
    host = ctx.host
    return (
        host.read_file(JAIL_PATH) == jail_content(ctx)
        and service_enabled(host, "fail2ban")
        and service_active(host, "fail2ban")
    )


def configure_fail2ban(ctx: RunContext) -> None:
    """Write jail.local and enable the service; the restart happens after validation."""
    console.print("[cyan]Configuring fail2ban...[/cyan]")
    ctx.files.write(JAIL_PATH, jail_content(ctx))
    if not service_enabled(ctx.host, "fail2ban"):
        enable_service(ctx.host, "fail2ban")


def check_fail2ban_config(ctx: RunContext) -> bool:
    result = ctx.host.run("fail2ban-client -t", warn=True)
    if not result.ok:
        console.print(f"[red]fail2ban config test failed: {result.stderr.strip()}[/red]")
    return result.ok


def restart_fail2ban(ctx: RunContext) -> None:
    restart_service(ctx.host, "fail2ban")
    console.print("[green]✓ Fail2ban configured and started[/green]")


def fail2ban_running(ctx: RunContext) -> bool:
    return service_active(ctx.host, "fail2ban")


def fail2ban_step(config) -> Step:
    return Step(
        name="fail2ban",
        description=f"Ban brute-force SSH clients (port {config.ssh_port})",
        check=fail2ban_configured,
        apply=configure_fail2ban,
        validate=check_fail2ban_config,
        commit=restart_fail2ban,
        verify=fail2ban_running,
        critical=False,
        remediation="jail.local invalid, backup restored, fail2ban NOT restarted",
    )
