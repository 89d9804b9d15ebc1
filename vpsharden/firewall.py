"""UFW firewall step."""

import re
import shlex
from dataclasses import dataclass, field

from rich.console import Console

from vpsharden.connection import Host
from vpsharden.context import RunContext
from vpsharden.models import Step

console = Console()

_DEFAULTS_RE = re.compile(r"^Default:\s*(\w+)\s*\(incoming\),\s*(\w+)\s*\(outgoing\)")


@dataclass
class UfwStatus:
    active: bool = False
    incoming: str | None = None
    outgoing: str | None = None
    # Targets of ALLOW rules open to Anywhere, v4 and v6 merged
    allowed: set[str] = field(default_factory=set)


def parse_status(text: str) -> UfwStatus:
    """Parse `ufw status verbose` output."""
    status = UfwStatus()
    in_rules = False

    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("Status:"):
            status.active = stripped.split(":", 1)[1].strip() == "active"
            continue
        match = _DEFAULTS_RE.match(stripped)
        if match:
            status.incoming, status.outgoing = match.group(1), match.group(2)
            continue
        if stripped.startswith("--"):
            in_rules = True
            continue
        if not in_rules or not stripped:
            continue

        columns = re.split(r"\s{2,}", stripped)
        if len(columns) < 3:
            continue
        target, action, source = columns[0], columns[1], columns[2]
        if not action.startswith("ALLOW") or not source.startswith("Anywhere"):
            continue
        if target.endswith(" (v6)"):
            target = target[: -len(" (v6)")]
        status.allowed.add(target)

    return status


def read_status(host: Host) -> UfwStatus:
    return parse_status(host.output("ufw status verbose"))


def _desired(ctx: RunContext) -> set[str]:
    return {rule for rule, _ in ctx.config.firewall_rules}


def firewall_configured(ctx: RunContext) -> bool:
    status = read_status(ctx.host)
    if not status.active:
        console.print("[dim]  UFW is inactive[/dim]")
        return False
    return (
        status.incoming == "deny"
        and status.outgoing == "allow"
        and status.allowed == _desired(ctx)
    )


def _allow(host: Host, rule: str, comment: str) -> None:
    console.print(f"[dim]  Allowing {rule} ({comment})[/dim]")
    host.run(f"ufw allow {rule} comment {shlex.quote(comment)}")


def configure_firewall(ctx: RunContext) -> None:
    """Bring UFW to deny-by-default with only the configured ports open.

    An inactive firewall is rebuilt from scratch; an active one is adjusted
    rule by rule so it never drops SSH while enforcing.
    """
    host = ctx.host
    status = read_status(host)
    rules = ctx.config.firewall_rules

    if not status.active:
        console.print("[cyan]Resetting UFW to defaults...[/cyan]")
        host.run("ufw --force reset")
        host.run("ufw default deny incoming")
        host.run("ufw default allow outgoing")
        # SSH is first in the list, so it is allowed before the firewall is enabled
        for rule, comment in rules:
            _allow(host, rule, comment)
        console.print("[yellow]Enabling UFW firewall...[/yellow]")
        host.run("ufw --force enable")
        return

    console.print("[cyan]Adjusting active UFW ruleset...[/cyan]")
    for rule, comment in rules:
        if rule not in status.allowed:
            _allow(host, rule, comment)
    if status.incoming != "deny":
        host.run("ufw default deny incoming")
    if status.outgoing != "allow":
        host.run("ufw default allow outgoing")
    for rule in sorted(status.allowed - _desired(ctx)):
        console.print(f"[dim]  Removing {rule}[/dim]")
        host.run(f"ufw delete allow {shlex.quote(rule)}")


def firewall_step(config) -> Step:
    return Step(
        name="firewall",
        description=f"UFW: deny incoming, allow {', '.join(r for r, _ in config.firewall_rules)}",
        check=firewall_configured,
        apply=configure_firewall,
        verify=firewall_configured,
        critical=True,
        remediation="Inspect `ufw status verbose`; SSH must stay allowed before enabling UFW",
    )
