"""Reconciler: applies the minimal change that moves a step to its desired state."""

from rich.console import Console

from vpsharden.context import RunContext
from vpsharden.errors import ApplyError, CommandError, Declined
from vpsharden.models import ApplyOutcome, ApplyStatus, ProbeResult, Step

console = Console()


def apply(step: Step, probe_result: ProbeResult, ctx: RunContext) -> ApplyOutcome:
    """Apply `step` unless the probe says it is already satisfied.

    Errors are contained here; the runner decides whether a failure is fatal.
    """
    if probe_result.satisfied:
        return ApplyOutcome(ApplyStatus.SKIPPED, "already satisfied")

    if probe_result.unknown:
        return ApplyOutcome(ApplyStatus.FAILED, f"state unknown: {probe_result.detail}")

    if ctx.dry_run:
        return ApplyOutcome(ApplyStatus.PLANNED, "would apply")

    ctx.files.begin(step.name)
    try:
        step.apply(ctx)
    except Declined as e:
        return ApplyOutcome(ApplyStatus.SKIPPED, f"declined by operator: {e}")
    except (ApplyError, CommandError) as e:
        return ApplyOutcome(ApplyStatus.FAILED, str(e))

    return ApplyOutcome(ApplyStatus.APPLIED)
