"""Step and outcome types shared by the prober, reconciler, verifier and reporter."""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from vpsharden.context import RunContext


class ProbeState(str, Enum):
    SATISFIED = "satisfied"
    UNSATISFIED = "unsatisfied"
    UNKNOWN = "unknown"


class ApplyStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"
    # Only produced by --dry-run
    PLANNED = "planned"


@dataclass(frozen=True)
class Step:
    """One named reconciliation step. Immutable once registered."""

    name: str
    description: str
    check: Callable[["RunContext"], bool]
    apply: Callable[["RunContext"], None]
    validate: Callable[["RunContext"], bool] | None = None
    commit: Callable[["RunContext"], None] | None = None
    verify: Callable[["RunContext"], bool] | None = None
    critical: bool = True
    remediation: str | None = None


@dataclass(frozen=True)
class ProbeResult:
    state: ProbeState
    detail: str = ""

    @property
    def satisfied(self) -> bool:
        return self.state is ProbeState.SATISFIED

    @property
    def unknown(self) -> bool:
        return self.state is ProbeState.UNKNOWN


@dataclass(frozen=True)
class ApplyOutcome:
    status: ApplyStatus
    detail: str = ""

    @property
    def failed(self) -> bool:
        return self.status is ApplyStatus.FAILED


@dataclass
class StepReport:
    """Everything that happened to one step in one run."""

    step: Step
    probe: ProbeResult
    outcome: ApplyOutcome
    verified: bool | None = None
    error: str | None = None
    remediation: str | None = None
    # Something the operator still has to do, e.g. a declined restart
    warning: str | None = None

    @property
    def ok(self) -> bool:
        return not self.outcome.failed and self.verified is not False

    @property
    def blocking(self) -> bool:
        """True when this report must stop the run and fail it."""
        if self.verified is False:
            return True
        return self.outcome.failed and self.step.critical


@dataclass
class RunReport:
    steps: list[StepReport] = field(default_factory=list)
    aborted_at: str | None = None

    def by_status(self, status: ApplyStatus) -> list[StepReport]:
        return [r for r in self.steps if r.outcome.status is status]

    @property
    def failures(self) -> list[StepReport]:
        return [r for r in self.steps if not r.ok]

    @property
    def warnings(self) -> list[StepReport]:
        return [r for r in self.steps if r.warning]

    @property
    def exit_code(self) -> int:
        return 1 if any(r.blocking for r in self.steps) else 0
