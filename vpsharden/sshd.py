"""SSH daemon hardening step.

Directives are edited one line at a time in sshd_config and in any
Include'd drop-in that overrides them. The result is checked with
`sshd -t` and `sshd -T` before the daemon is restarted.
"""

import re

from rich.console import Console

from vpsharden.accounts import key_holders
from vpsharden.context import RunContext
from vpsharden.edits import set_directive
from vpsharden.errors import Declined, ProbeError
from vpsharden.models import Step
from vpsharden.system import restart_service, service_active

console = Console()

SSHD_CONFIG = "/etc/ssh/sshd_config"
SSH_DIR = "/etc/ssh"

_INCLUDE_RE = re.compile(r"^\s*Include\s+(.+)$", re.IGNORECASE)


def managed_directives(config) -> list[tuple[str, str, bool]]:
    """(keyword, value, only_if_present) for every directive we manage."""
    return [
        ("PermitRootLogin", "no", False),
        ("PasswordAuthentication", "no", False),
        ("PubkeyAuthentication", "yes", False),
        # Deprecated alias of KbdInteractiveAuthentication; only fix it where it exists
        ("ChallengeResponseAuthentication", "no", True),
        ("KbdInteractiveAuthentication", "no", False),
        ("X11Forwarding", "no", False),
        # Port 22 is the default, so only touch an existing Port line
        ("Port", str(config.ssh_port), config.ssh_port == 22),
    ]


def expected_effective(config) -> dict[str, str]:
    """Values `sshd -T` must report once the config is live."""
    return {
        "permitrootlogin": "no",
        "passwordauthentication": "no",
        "pubkeyauthentication": "yes",
        "kbdinteractiveauthentication": "no",
        "x11forwarding": "no",
        "port": str(config.ssh_port),
    }


def harden_main_config(content: str, config) -> str:
    for key, value, only_if_present in managed_directives(config):
        content = set_directive(content, key, value, only_if_present=only_if_present)
    return content


def harden_dropin(content: str, config) -> str:
    for key, value, _ in managed_directives(config):
        content = set_directive(content, key, value, only_if_present=True)
    return content


def include_paths(ctx: RunContext, content: str) -> list[str]:
    """Files pulled in by Include lines of the main config."""
    paths = []
    for line in content.splitlines():
        match = _INCLUDE_RE.match(line)
        if not match:
            continue
        for pattern in match.group(1).split():
            if not pattern.startswith("/"):
                pattern = f"{SSH_DIR}/{pattern}"
            for path in ctx.host.glob(pattern):
                if path not in paths:
                    paths.append(path)
    return paths


def config_files(ctx: RunContext) -> list[tuple[str, str, object]]:
    """(path, mode, transform) for the main config and each drop-in."""
    content = ctx.host.read_file(SSHD_CONFIG)
    if content is None:
        raise ProbeError(f"{SSHD_CONFIG} not found; is openssh-server installed?")

    config = ctx.config
    files = [(SSHD_CONFIG, "644", lambda text: harden_main_config(text, config))]
    for path in include_paths(ctx, content):
        files.append((path, "600", lambda text: harden_dropin(text, config)))
    return files


def sshd_hardened(ctx: RunContext) -> bool:
    for path, _, transform in config_files(ctx):
        content = ctx.host.read_file(path) or ""
        if transform(content) != content:
            console.print(f"[dim]  {path} needs changes[/dim]")
            return False
    return True


def harden_sshd(ctx: RunContext) -> None:
    """Apply hardening directives. The daemon is restarted later, after validation."""
    # Someone must be able to log in with a key once password auth goes
    holders = key_holders(ctx)
    if holders:
        console.print(f"[green]  SSH key access available for {', '.join(holders)}[/green]")
    else:
        console.print("[bold yellow]⚠ No managed account has an SSH key installed.[/bold yellow]")
        console.print("[yellow]  With password auth disabled, only existing keys can log in.[/yellow]")
        if not ctx.confirm("Disable password authentication anyway? You may be locked out"):
            raise Declined("password authentication left enabled; add a key and re-run")

    console.print("[cyan]Hardening SSH configuration...[/cyan]")
    for path, mode, transform in config_files(ctx):
        if ctx.files.edit(path, transform, mode=mode):
            console.print(f"[dim]  Updated {path}[/dim]")

    console.print("[dim]  Root login: disabled[/dim]")
    console.print("[dim]  Password authentication: disabled[/dim]")
    console.print("[dim]  Public key authentication: enabled[/dim]")
    console.print(f"[dim]  SSH port: {ctx.config.ssh_port}[/dim]")


def effective_settings(ctx: RunContext) -> dict[str, str]:
    """Parse `sshd -T`; the first value wins for repeated keywords."""
    settings = {}
    for line in ctx.host.output("sshd -T").splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) == 2 and parts[0] not in settings:
            settings[parts[0]] = parts[1]
    return settings


def validate_sshd(ctx: RunContext) -> bool:
    """Test config before restarting."""
    result = ctx.host.run("sshd -t", warn=True)
    if not result.ok:
        console.print(f"[red]SSH config test failed: {result.stderr.strip()}[/red]")
        return False

    settings = effective_settings(ctx)
    ok = True
    for key, value in expected_effective(ctx.config).items():
        actual = settings.get(key)
        if actual != value:
            console.print(f"[red]Effective sshd setting {key} is {actual!r}, expected {value!r}[/red]")
            ok = False
    return ok


def restart_sshd(ctx: RunContext) -> None:
    host = ctx.host
    console.print("[yellow]⚠ Restarting SSH service. Ensure you have an active session![/yellow]")
    if not ctx.confirm("Restart SSH now?"):
        raise Declined("SSH restart skipped; new settings are not live until: systemctl restart ssh")

    # Ubuntu 24.04 socket activation: the listening port lives in ssh.socket
    if service_active(host, "ssh.socket"):
        host.run("systemctl daemon-reload")
        restart_service(host, "ssh.socket")
    restart_service(host, "ssh")

    console.print("[green]✓ SSH service restarted[/green]")
    console.print("[yellow]⚠ DO NOT close this session until you've verified new connections work![/yellow]")


def sshd_running(ctx: RunContext) -> bool:
    host = ctx.host
    if not sshd_hardened(ctx):
        return False
    return service_active(host, "ssh") or service_active(host, "ssh.socket")


def sshd_step(config) -> Step:
    return Step(
        name="ssh-hardening",
        description="Key-only SSH, no root login",
        check=sshd_hardened,
        apply=harden_sshd,
        validate=validate_sshd,
        commit=restart_sshd,
        verify=sshd_running,
        critical=True,
        remediation="SSH config invalid, backup restored, service NOT restarted",
    )
