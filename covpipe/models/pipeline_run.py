"""
Pipeline Run Model
==================
Pydantic model for one execution instance of the coverage pipeline, plus
the explicit state machine that drives it.

Lifecycle:
    PENDING → PROVISIONING → FETCHING_TOOL → BUILDING → TESTING → EXTRACTING → SUCCEEDED
    Any non-terminal state → FAILED (first failing stage) or CANCELLED.

    SUCCEEDED, FAILED and CANCELLED are terminal: no further transition,
    no more step results, no resumption. A new run starts from PENDING.

Fields:
    run_id          — short unique id, also the name of the run's workspace directory
    trigger         — the TriggerEvent that created the run
    status          — current RunStatus
    steps           — ordered StepResults, one per executed step
    failure         — FailureInfo when status is FAILED or CANCELLED
    report          — CoverageReport, set only together with SUCCEEDED
    workspace_path  — the run's isolated workspace directory
    publish_error   — report upload error, if a publisher was configured and failed
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from covpipe.core.constants import EXIT_SUCCESS, EXIT_CANCELLED
from covpipe.core.errors import InvalidTransition, PipelineError
from covpipe.models.coverage_report import CoverageReport
from covpipe.models.trigger_event import TriggerEvent


class RunStatus(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    FETCHING_TOOL = "fetching_tool"
    BUILDING = "building"
    TESTING = "testing"
    EXTRACTING = "extracting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED})

# Forward edges only; FAILED / CANCELLED are reachable from every non-terminal state
_NEXT = {
    RunStatus.PENDING: RunStatus.PROVISIONING,
    RunStatus.PROVISIONING: RunStatus.FETCHING_TOOL,
    RunStatus.FETCHING_TOOL: RunStatus.BUILDING,
    RunStatus.BUILDING: RunStatus.TESTING,
    RunStatus.TESTING: RunStatus.EXTRACTING,
    RunStatus.EXTRACTING: RunStatus.SUCCEEDED,
}


class StepResult(BaseModel):
    name: str
    status: str                     # succeeded / failed / cancelled
    exit_code: int = 0
    duration_seconds: float = 0.0
    log_excerpt: str = ""
    error: str = ""


class FailureInfo(BaseModel):
    stage: str
    kind: str                       # exception class name, e.g. "TestFailed"
    message: str
    exit_code: int


def _new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PipelineRun(BaseModel):
    trigger: TriggerEvent
    run_id: str = Field(default_factory=_new_run_id)
    status: RunStatus = RunStatus.PENDING
    steps: List[StepResult] = []
    failure: Optional[FailureInfo] = None
    report: Optional[CoverageReport] = None
    workspace_path: str = ""
    created_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None
    publish_error: str = ""

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------
    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def exit_code(self) -> int:
        if self.status == RunStatus.SUCCEEDED:
            return EXIT_SUCCESS
        if self.status == RunStatus.CANCELLED:
            return EXIT_CANCELLED
        if self.failure is not None:
            return self.failure.exit_code
        return -1

    def describe(self) -> str:
        """Terminal status label, e.g. ``Failed(TestFailed)``."""
        if self.status == RunStatus.FAILED and self.failure is not None:
            return f"Failed({self.failure.kind})"
        return self.status.value.replace("_", " ").title().replace(" ", "")

    def step(self, name: str) -> Optional[StepResult]:
        for s in self.steps:
            if s.name == name:
                return s
        return None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def _ensure_active(self) -> None:
        if self.is_terminal:
            raise InvalidTransition(
                f"run {self.run_id} is already {self.status.value}"
            )

    def advance(self, target: RunStatus) -> None:
        """Move one step forward along the happy path."""
        self._ensure_active()
        if target == RunStatus.SUCCEEDED:
            raise InvalidTransition("use succeed() to finish a run")
        if _NEXT.get(self.status) != target:
            raise InvalidTransition(
                f"cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def record_step(self, result: StepResult) -> None:
        self._ensure_active()
        self.steps.append(result)

    def succeed(self, report: CoverageReport) -> None:
        self._ensure_active()
        if self.status != RunStatus.EXTRACTING:
            raise InvalidTransition(
                f"cannot succeed from {self.status.value}; extraction has not run"
            )
        self.report = report
        self.status = RunStatus.SUCCEEDED
        self.finished_at = _now()

    def fail(self, error: PipelineError) -> None:
        self._ensure_active()
        self.failure = FailureInfo(
            stage=error.stage,
            kind=error.kind,
            message=error.message,
            exit_code=error.exit_code,
        )
        self.report = None
        self.status = RunStatus.FAILED
        self.finished_at = _now()

    def cancel(self, stage: str = "", reason: str = "run cancelled") -> None:
        self._ensure_active()
        self.failure = FailureInfo(
            stage=stage or self.status.value,
            kind="RunCancelled",
            message=reason,
            exit_code=EXIT_CANCELLED,
        )
        self.report = None
        self.status = RunStatus.CANCELLED
        self.finished_at = _now()
