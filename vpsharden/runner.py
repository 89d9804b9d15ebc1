"""Run loop: Prober -> Reconciler -> Verifier -> Reporter for each registered step."""

from contextlib import contextmanager

from rich.console import Console

from vpsharden import probe as prober
from vpsharden import reconciler, verifier
from vpsharden.connection import Host
from vpsharden.context import RunContext
from vpsharden.errors import Declined, HardenError, LockError, VerifyError
from vpsharden.models import ApplyStatus, Step, StepReport
from vpsharden.reporter import Reporter
from vpsharden.system import apt_update

console = Console()

LOCK_PATH = "/run/vps-harden.lock"
SUPPORTED_UBUNTU = ("22.04", "24.04")


def preflight(ctx: RunContext) -> dict:
    """Check privileges and OS before touching anything. Returns os-release facts."""
    console.print("\n[bold blue]Preflight[/bold blue]\n")

    if not ctx.host.is_root():
        raise HardenError("This tool must run as root (or as a user with sudo on the target)")
    console.print("[green]✓ Running with root privileges[/green]")

    os_info = ctx.host.get_os_info()
    if not os_info:
        raise HardenError("Cannot determine OS version: /etc/os-release missing")
    if os_info.get("ID") != "ubuntu":
        raise HardenError(f"This tool is designed for Ubuntu only (detected: {os_info.get('ID', 'unknown')})")

    version = os_info.get("VERSION_ID", "")
    console.print(f"[green]✓ Detected Ubuntu {version}[/green]")
    if version not in SUPPORTED_UBUNTU:
        console.print(f"[yellow]⚠ Tested on Ubuntu {' and '.join(SUPPORTED_UBUNTU)}. Your version: {version}[/yellow]")
        if not ctx.confirm("Continue anyway?"):
            raise HardenError(f"Unsupported Ubuntu version {version}")

    ctx.facts["os"] = os_info

    if not ctx.dry_run:
        console.print("[cyan]Refreshing package lists...[/cyan]")
        apt_update(ctx.host)

    return os_info


@contextmanager
def run_lock(host: Host, enabled: bool = True):
    """Hold a run-level lock on the target so two runs cannot interleave edits."""
    if not enabled:
        yield
        return

    if not host.succeeds(f"mkdir {LOCK_PATH}"):
        raise LockError(
            f"Another vps-harden run holds {LOCK_PATH}. "
            f"If no run is active, remove it with: rmdir {LOCK_PATH}"
        )
    try:
        yield
    finally:
        host.run(f"rmdir {LOCK_PATH}", warn=True)


def run_step(step: Step, ctx: RunContext, reporter: Reporter) -> StepReport:
    """Run one step through probe, apply and verification, and record it."""
    reporter.step_started(step.name, step.description)

    probe_result = prober.probe(step, ctx)
    outcome = reconciler.apply(step, probe_result, ctx)
    entry = StepReport(step=step, probe=probe_result, outcome=outcome)

    if outcome.failed:
        entry.remediation = step.remediation
    elif outcome.status is ApplyStatus.APPLIED:
        try:
            entry.verified = verifier.settle(step, ctx)
        except VerifyError as e:
            entry.verified = False
            entry.error = str(e)
            entry.remediation = e.remediation
        except Declined as e:
            # Applied, but the operator held back the restart that makes it live
            entry.warning = str(e)
    elif probe_result.satisfied and step.verify is not None:
        entry.verified = verifier.verify(step, ctx)
        if not entry.verified:
            entry.error = f"{step.name}: postcondition does not hold"

    reporter.record(entry)
    return entry


def run_steps(steps: list[Step], ctx: RunContext, reporter: Reporter) -> int:
    """Run steps in registration order. Returns the process exit code.

    A blocking failure (critical step failed, or any verification failed)
    stops the sequence; steps already applied stay in place.
    """
    for step in steps:
        entry = run_step(step, ctx, reporter)
        if entry.blocking:
            reporter.abort(entry)
            break

    return reporter.exit_code
