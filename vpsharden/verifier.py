"""Verifier: validate before a restart, restart, then confirm the change took effect."""

from rich.console import Console

from vpsharden.context import RunContext
from vpsharden.errors import CommandError, VerifyError
from vpsharden.models import Step

console = Console()


def _call(check, ctx: RunContext) -> bool:
    try:
        return bool(check(ctx))
    except CommandError as e:
        console.print(f"[red]  {e}[/red]")
        return False


def validate(step: Step, ctx: RunContext) -> bool:
    """Syntax-check an applied change before the affected service picks it up."""
    if step.validate is None:
        return True
    return _call(step.validate, ctx)


def verify(step: Step, ctx: RunContext) -> bool:
    """Check that the step's postcondition holds on the live system."""
    if step.verify is None:
        return True
    return _call(step.verify, ctx)


def _roll_back(step: Step, ctx: RunContext) -> list[str]:
    """Restore the step's backups and commit them so the service runs on them."""
    restored = ctx.files.restore(step.name)
    if restored and step.commit is not None:
        console.print(f"[yellow]  Re-applying last-known-good configuration for {step.name}[/yellow]")
        try:
            step.commit(ctx)
        except CommandError as e:
            console.print(f"[red]  {e}[/red]")
    return restored


def settle(step: Step, ctx: RunContext) -> bool:
    """Run validate, commit and verify for a step that was just applied.

    A validation failure restores the step's backups and skips the commit,
    so the service keeps running on its previous configuration. A failed
    commit, or a failure after it, restores the backups and commits again
    to return the service to its last-known-good state. Each of these
    raises VerifyError. Declined from the commit propagates: the change is in
    place but not yet live.
    """
    if not validate(step, ctx):
        restored = ctx.files.restore(step.name)
        remediation = step.remediation or "Configuration invalid, backup restored, service NOT restarted"
        raise VerifyError(
            f"{step.name}: validation failed"
            + (f" (restored {', '.join(restored)})" if restored else ""),
            remediation,
        )

    if step.commit is not None:
        try:
            step.commit(ctx)
        except CommandError as e:
            restored = _roll_back(step, ctx)
            raise VerifyError(
                f"{step.name}: restart failed: {e}",
                "Restart failed, previous configuration restored" if restored else step.remediation,
            ) from e

    if not verify(step, ctx):
        restored = _roll_back(step, ctx)
        raise VerifyError(
            f"{step.name}: change did not take effect",
            step.remediation if restored else None,
        )

    return True
