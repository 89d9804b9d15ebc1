"""State Prober: read-only inspection of the host before any change."""

from rich.console import Console

from vpsharden.context import RunContext
from vpsharden.errors import CommandError, ProbeError
from vpsharden.models import ProbeResult, ProbeState, Step

console = Console()


def probe(step: Step, ctx: RunContext) -> ProbeResult:
    """Decide whether `step` is already satisfied.

    An inspection that itself fails yields UNKNOWN, never UNSATISFIED.
    """
    try:
        satisfied = step.check(ctx)
    except (ProbeError, CommandError) as e:
        console.print(f"[red]✗ Could not inspect state for {step.name}: {e}[/red]")
        return ProbeResult(ProbeState.UNKNOWN, str(e))

    if satisfied:
        return ProbeResult(ProbeState.SATISFIED)
    return ProbeResult(ProbeState.UNSATISFIED)
