"""Reporter: live per-step output and the end-of-run summary."""

from rich.console import Console
from rich.table import Table

from vpsharden.config import HardenConfig
from vpsharden.models import ApplyStatus, RunReport, StepReport

console = Console()

_STYLES = {
    ApplyStatus.APPLIED: "green",
    ApplyStatus.SKIPPED: "dim",
    ApplyStatus.PLANNED: "cyan",
    ApplyStatus.FAILED: "red",
}


class Reporter:
    """Accumulates step reports and turns them into a summary and exit code."""

    def __init__(self):
        self.report = RunReport()

    def step_started(self, name: str, description: str) -> None:
        console.print(f"\n[bold blue]{name}[/bold blue] [dim]{description}[/dim]")

    def record(self, entry: StepReport) -> None:
        self.report.steps.append(entry)
        status = entry.outcome.status
        name = entry.step.name

        if entry.verified is False:
            console.print(f"[red]✗ {name}: verification failed: {entry.error}[/red]")
        elif status is ApplyStatus.FAILED and entry.step.critical:
            console.print(f"[red]✗ {name}: {entry.outcome.detail}[/red]")
        elif status is ApplyStatus.FAILED:
            console.print(f"[yellow]⚠ {name} failed (non-critical): {entry.outcome.detail}[/yellow]")
        elif entry.warning:
            console.print(f"[yellow]⚠ {name} applied, pending: {entry.warning}[/yellow]")
        elif status is ApplyStatus.APPLIED:
            console.print(f"[green]✓ {name} applied[/green]")
        elif status is ApplyStatus.PLANNED:
            console.print(f"[cyan]→ {name} would be applied[/cyan]")
        else:
            console.print(f"[dim]✓ {name} {entry.outcome.detail}[/dim]")

    def abort(self, entry: StepReport) -> None:
        self.report.aborted_at = entry.step.name
        console.print(f"\n[bold red]Critical step '{entry.step.name}' failed; remaining steps aborted[/bold red]")

    @property
    def exit_code(self) -> int:
        return self.report.exit_code

    def summary(self, config: HardenConfig | None = None) -> None:
        """Print the summary table, restate failures and give remediation."""
        table = Table(title="Hardening summary")
        table.add_column("Step")
        table.add_column("Probe")
        table.add_column("Outcome")
        table.add_column("Verified")
        table.add_column("Detail", overflow="fold")

        for entry in self.report.steps:
            style = _STYLES[entry.outcome.status]
            if entry.verified is None:
                verified = "-"
            else:
                verified = "yes" if entry.verified else "[red]no[/red]"
            table.add_row(
                entry.step.name + ("" if entry.step.critical else " [dim](optional)[/dim]"),
                entry.probe.state.value,
                f"[{style}]{entry.outcome.status.value}[/{style}]",
                verified,
                entry.error or entry.warning or entry.outcome.detail,
            )
        console.print()
        console.print(table)

        if self.report.aborted_at:
            console.print(f"[red]Run aborted at '{self.report.aborted_at}'; later steps did not run.[/red]")

        failures = self.report.failures
        for entry in failures:
            if entry.blocking:
                console.print(f"[bold red]✗ {entry.step.name}: {entry.error or entry.outcome.detail}[/bold red]")
                if entry.remediation:
                    console.print(f"  [yellow]{entry.remediation}[/yellow]")
                console.print("  [dim]Fix the cause and re-run; completed steps will be skipped.[/dim]")
            else:
                console.print(f"[yellow]⚠ {entry.step.name}: {entry.outcome.detail}[/yellow]")

        for entry in self.report.warnings:
            console.print(f"[yellow]⚠ {entry.step.name}: {entry.warning}[/yellow]")

        if config is not None and self.exit_code == 0:
            self._next_steps(config)

    def _next_steps(self, config: HardenConfig) -> None:
        console.print("\n[cyan]Next steps:[/cyan]")
        console.print(f"  1. Verify you can SSH as {config.deploy_user} and {config.admin_user} from a new terminal")
        console.print(f"  2. Set a password for {config.admin_user} (passwd {config.admin_user}) to use sudo")
        console.print("  3. Test sudo access: sudo -l")
        if config.docker.enabled:
            console.print("  4. Verify Docker: docker --version")
        console.print("  5. Check firewall: sudo ufw status")
        console.print("  6. Review fail2ban: sudo fail2ban-client status")
        console.print("\n[yellow]⚠ Do not log out until you've verified SSH access with the new users![/yellow]")
