"""Domain models for analysis sessions."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class SessionStatus(StrEnum):
    """Lifecycle states of an analysis session."""

    PENDING = "pending"
    PROCESSING = "processing"
    GENERATING = "generating"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.TIMEOUT}
)

PIPELINE_ORDER: tuple[SessionStatus, ...] = (
    SessionStatus.PENDING,
    SessionStatus.PROCESSING,
    SessionStatus.GENERATING,
    SessionStatus.VALIDATING,
    SessionStatus.COMPLETED,
)


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    """Return True when the state machine allows moving current -> target.

    Non-terminal states advance along PIPELINE_ORDER (staying put is allowed
    so progress can be reported within a stage) and may jump to FAILED or
    TIMEOUT at any time. Terminal states never change.
    """
    if current.is_terminal:
        return False
    if target in {SessionStatus.FAILED, SessionStatus.TIMEOUT}:
        return True
    return PIPELINE_ORDER.index(target) >= PIPELINE_ORDER.index(current)


@dataclass(frozen=True)
class AnalysisRequest:
    """Immutable input of an analysis session."""

    requirement: str
    product_type: str = "web"
    implement_type: str = "standard"
    source: str = "text"
    options: dict[str, object] = field(default_factory=dict)

    def dedup_key(self) -> tuple[str, str, str]:
        return (self.requirement, self.product_type, self.implement_type)


@dataclass
class SessionProgress:
    """User-visible progress of a session."""

    stage: str = "initializing"
    percentage: int = 0
    message: str = "Initializing analysis"
    steps: list[str] = field(default_factory=list)


@dataclass
class SessionMetadata:
    """Timing bookkeeping for a session."""

    created_at: datetime
    updated_at: datetime
    start_time: datetime
    end_time: datetime | None = None
    processing_time_ms: float = 0.0
    retry_count: int = 0


@dataclass
class Session:
    """A tracked unit of asynchronous analysis work."""

    id: str
    request: AnalysisRequest
    metadata: SessionMetadata
    status: SessionStatus = SessionStatus.PENDING
    progress: SessionProgress = field(default_factory=SessionProgress)
    result: dict[str, object] | None = None
    error: dict[str, object] | None = None
    performance: dict[str, float] = field(default_factory=dict)


@dataclass
class SessionStats:
    """Rolling aggregate statistics kept by the session store."""

    total_sessions: int = 0
    active_sessions: int = 0
    completed_sessions: int = 0
    failed_sessions: int = 0
    average_processing_time_ms: float = 0.0
    duplicate_requests: int = 0
