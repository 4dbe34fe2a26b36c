"""Typed records persisted by the Whetstone session store."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import StateTransitionError


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class FrozenRecordModel(BaseModel):
    """Base model for records that must never be edited in place."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class SessionStatus(str, Enum):
    """Lifecycle states for a refinement session."""

    INITIALIZING = "initializing"
    ITERATING = "iterating"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[SessionStatus] = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
)

_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.INITIALIZING: frozenset(
        {
            SessionStatus.ITERATING,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.ITERATING: frozenset(
        {
            SessionStatus.EVALUATING,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.EVALUATING: frozenset(
        {
            SessionStatus.ITERATING,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.CANCELLED,
        }
    ),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


class SessionMode(str, Enum):
    """Whether a session explores one lineage or several in parallel."""

    SINGLE = "single"
    MULTI = "multi-attempt"


class AttemptStatus(str, Enum):
    """Lifecycle states for a single validation pass."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Complexity(str, Enum):
    """Three-level classification of a change set."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TestFailure(FrozenRecordModel):
    """Single failing test as reported by the test runner."""

    __test__ = False

    name: str
    file: str = ""
    line: Optional[int] = None
    message: str = ""
    expected: Optional[str] = None
    actual: Optional[str] = None
    soft_score: Optional[float] = None


class TestOutcome(FrozenRecordModel):
    """Structured summary of one test run."""

    __test__ = False

    framework: str
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    duration_ms: float = 0.0
    failures: List[TestFailure] = Field(default_factory=list)
    stdout: str = ""
    stderr: str = ""
    soft_score: Optional[float] = None

    @property
    def all_passing(self) -> bool:
        return self.total > 0 and self.failed == 0

    def summary(self) -> str:
        return f"{self.passed}/{self.total} tests passing"


class DiffStats(FrozenRecordModel):
    """Change statistics derived from ``git diff --numstat``."""

    files_changed: List[str] = Field(default_factory=list)
    insertions: int = 0
    deletions: int = 0
    complexity: Complexity = Complexity.LOW
    complexity_score: int = 0
    strategy: Optional[str] = None

    @property
    def total_changes(self) -> int:
        return self.insertions + self.deletions


class Deduction(FrozenRecordModel):
    """Points removed from the base pass rate, with the reason."""

    points: int
    reason: str


class ScoreBreakdown(FrozenRecordModel):
    """Explains how a hard score was derived."""

    pass_rate: float
    test_pass_score: float
    deductions: List[Deduction] = Field(default_factory=list)


class SignalKind(str, Enum):
    """Kinds of code-quality signals raised on added lines."""

    LARGE_FUNCTION = "large_function"
    DEEP_NESTING = "deep_nesting"
    LONG_LINE = "long_line"
    DEBUG_PRINT = "debug_print"
    TODO_COMMENT = "todo_comment"
    ANY_TYPE = "any_type"
    MAGIC_NUMBER = "magic_number"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class QualitySignal(FrozenRecordModel):
    """One advisory finding about the lines an iteration added."""

    kind: SignalKind
    severity: Severity
    message: str
    file: str = ""
    line: Optional[int] = None
    suggestion: str = ""


class QualityReport(FrozenRecordModel):
    signals: List[QualitySignal] = Field(default_factory=list)
    score: int = Field(default=100, ge=0, le=100)


class SolutionSnapshot(FrozenRecordModel):
    """Recorded solution kept as memory for later iterations."""

    code: str
    feedback: str = ""
    score: int = 0


class AttemptRecord(FrozenRecordModel):
    """Immutable result of one validation pass."""

    iteration: int = Field(ge=1)
    attempt_id: Optional[int] = None
    status: AttemptStatus = AttemptStatus.COMPLETED
    created_at: datetime = Field(default_factory=utc_now)
    test_outcome: Optional[TestOutcome] = None
    score: Optional[int] = Field(default=None, ge=0, le=100)
    pass_rate: Optional[float] = None
    score_breakdown: Optional[ScoreBreakdown] = None
    diff: Optional[DiffStats] = None
    workspace_path: Optional[str] = None
    branch: Optional[str] = None
    base_branch: Optional[str] = None
    commit_sha: Optional[str] = None
    solution: Optional[SolutionSnapshot] = None
    quality: Optional[QualityReport] = None
    error: Optional[str] = None

    @property
    def key(self) -> tuple[int, int]:
        """Identity of the record within its session."""
        return (self.attempt_id or 0, self.iteration)

    @property
    def is_scored(self) -> bool:
        return self.status == AttemptStatus.COMPLETED and self.score is not None

    @property
    def is_passing(self) -> bool:
        """True when at least one test ran and none failed."""
        return self.test_outcome is not None and self.test_outcome.all_passing

    @property
    def soft_score(self) -> float:
        if self.test_outcome is None or self.test_outcome.soft_score is None:
            return 0.0
        return self.test_outcome.soft_score

    @property
    def diff_size(self) -> int:
        return self.diff.total_changes if self.diff else 0


class AttemptState(RecordModel):
    """Running state of one attempt lineage in multi-attempt mode."""

    attempt_id: int = Field(ge=1)
    seed: int = 0
    current_iteration: int = 0
    best_score: Optional[int] = None
    best_iteration: Optional[int] = None
    finished: bool = False


class SessionSettings(RecordModel):
    """Controls which prior solutions are surfaced as memory."""

    max_solutions: int = 5
    improving_order: bool = True
    selection_probability: float = Field(default=1.0, ge=0.0, le=1.0)
    shuffle_examples: bool = False
    seed: Optional[int] = None


class Session(RecordModel):
    """One refinement task and its full attempt history."""

    id: str
    task_description: str
    status: SessionStatus = SessionStatus.INITIALIZING
    max_iterations: int = Field(default=5, ge=1)
    merge_threshold: Optional[int] = Field(default=None, ge=0, le=100)
    current_iteration: int = 0
    mode: SessionMode = SessionMode.SINGLE
    attempt_count: int = Field(default=1, ge=1)
    base_branch: str = "main"
    attempts: List[AttemptRecord] = Field(default_factory=list)
    attempt_states: Dict[int, AttemptState] = Field(default_factory=dict)
    best_score: Optional[int] = None
    best_iteration: Optional[int] = None
    best_attempt: Optional[int] = None
    selected_iteration: Optional[int] = None
    selected_attempt: Optional[int] = None
    merged_commit: Optional[str] = None
    merged_iteration: Optional[int] = None
    merged_attempt: Optional[int] = None
    settings: SessionSettings = Field(default_factory=SessionSettings)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    @property
    def is_multi(self) -> bool:
        return self.mode == SessionMode.MULTI

    @property
    def is_merged(self) -> bool:
        return self.merged_commit is not None

    def can_transition(self, target: SessionStatus) -> bool:
        return target == self.status or target in _TRANSITIONS[self.status]

    def transition_to(self, target: SessionStatus) -> None:
        """Move to ``target`` or raise when the state machine forbids it."""

        if not self.can_transition(target):
            raise StateTransitionError(
                f"Cannot move session {self.id} from {self.status.value} to {target.value}",
                details={"from": self.status.value, "to": target.value},
            )
        if target != self.status:
            self.status = target
        self.updated_at = utc_now()

    def records_for(self, attempt_id: Optional[int]) -> List[AttemptRecord]:
        return [record for record in self.attempts if record.attempt_id == attempt_id]

    def find_record(self, iteration: int, attempt_id: Optional[int] = None) -> Optional[AttemptRecord]:
        for record in self.attempts:
            if record.iteration == iteration and record.attempt_id == attempt_id:
                return record
        return None

    def latest_record(self, attempt_id: Optional[int] = None) -> Optional[AttemptRecord]:
        if attempt_id is None and self.is_multi:
            return self.attempts[-1] if self.attempts else None
        records = self.records_for(attempt_id)
        return records[-1] if records else None

    def iteration_for(self, attempt_id: Optional[int]) -> int:
        """Return the number of iterations recorded for ``attempt_id``."""
        if attempt_id is None:
            return self.current_iteration
        state = self.attempt_states.get(attempt_id)
        if state is not None:
            return state.current_iteration
        return len(self.records_for(attempt_id))

    def completed_records(self) -> List[AttemptRecord]:
        return [record for record in self.attempts if record.is_scored]


__all__ = [
    "AttemptRecord",
    "AttemptState",
    "AttemptStatus",
    "Complexity",
    "Deduction",
    "DiffStats",
    "FrozenRecordModel",
    "QualityReport",
    "QualitySignal",
    "RecordModel",
    "ScoreBreakdown",
    "Session",
    "SessionMode",
    "SessionSettings",
    "SessionStatus",
    "Severity",
    "SignalKind",
    "SolutionSnapshot",
    "TERMINAL_STATUSES",
    "TestFailure",
    "TestOutcome",
    "utc_now",
]
