"""In-memory session store and the background sweep that expires sessions."""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import uuid4

from flowchart_ai.domain.errors import RequestValidationError, SessionCapacityError
from flowchart_ai.domain.sessions import (
    AnalysisRequest,
    Session,
    SessionMetadata,
    SessionStats,
    SessionStatus,
    can_transition,
)
from flowchart_ai.services.clock import Clock, SystemClock, elapsed_ms

_logger = logging.getLogger(__name__)

PRODUCT_TYPES = ("web", "mobile", "desktop", "api", "miniprogram")
IMPLEMENT_TYPES = ("standard", "ai", "uncertain", "hybrid")
CANCELLABLE_STATUSES = frozenset({SessionStatus.PENDING, SessionStatus.PROCESSING})
SUMMARY_REQUIREMENT_LENGTH = 100


@dataclass(frozen=True)
class SessionConfig:
    """Limits and time windows applied by the session store."""

    max_sessions: int = 100
    session_timeout_seconds: float = 300.0
    cleanup_interval_seconds: float = 60.0
    duplicate_window_seconds: float = 30.0
    min_requirement_length: int = 10
    max_requirement_length: int = 5000


@dataclass
class SessionStore:
    """Owns every session and is the only place that mutates them.

    All mutations are synchronous, so on a single event loop no two updates
    of the same session can interleave and the sweep never runs in the middle
    of a request-driven change.
    """

    config: SessionConfig = field(default_factory=SessionConfig)
    clock: Clock = field(default_factory=SystemClock)
    _sessions: dict[str, Session] = field(default_factory=dict, init=False)
    _stats: SessionStats = field(default_factory=SessionStats, init=False)

    def create_session(self, request: AnalysisRequest) -> tuple[Session, bool]:
        """Return ``(session, created)``.

        An identical request issued within the dedup window returns the
        existing session with ``created=False``.
        """
        self._validate_request(request)
        duplicate = self._find_duplicate(request)
        if duplicate is not None:
            self._stats.duplicate_requests += 1
            _logger.info("Duplicate analysis request reuses session %s", duplicate.id)
            return duplicate, False
        if self._in_flight_count() >= self.config.max_sessions:
            raise SessionCapacityError("System is busy, please retry later")

        now = self.clock.now()
        session = Session(
            id=uuid4().hex,
            request=request,
            metadata=SessionMetadata(created_at=now, updated_at=now, start_time=now),
        )
        self._sessions[session.id] = session
        self._stats.total_sessions += 1
        self._stats.active_sessions += 1
        _logger.info("Created analysis session %s", session.id)
        return session, True

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def update_session(  # noqa: PLR0913
        self,
        session_id: str,
        status: SessionStatus,
        *,
        progress: dict[str, object] | None = None,
        result: dict[str, object] | None = None,
        error: dict[str, object] | None = None,
        performance: dict[str, float] | None = None,
    ) -> bool:
        """Apply a status change plus optional patches.

        Returns False without touching the session when it is missing,
        already terminal, or the transition would move backwards. ``result``
        is only stored on COMPLETED and ``error`` only on FAILED or TIMEOUT.
        """
        session = self._sessions.get(session_id)
        if session is None:
            _logger.warning("Update for unknown session %s", session_id)
            return False
        if not can_transition(session.status, status):
            _logger.debug(
                "Ignoring update of session %s from %s to %s",
                session_id,
                session.status.value,
                status.value,
            )
            return False

        now = self.clock.now()
        session.status = status
        session.metadata.updated_at = now
        if progress:
            _merge_progress(session, progress)
        if performance:
            session.performance.update(performance)
        if result is not None and status is SessionStatus.COMPLETED:
            session.result = result
        if error is not None and status in {
            SessionStatus.FAILED,
            SessionStatus.TIMEOUT,
        }:
            session.error = error

        if status.is_terminal:
            self._finish(session, now)
        _logger.info("Session %s is now %s", session_id, status.value)
        return True

    def delete_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        if not session.status.is_terminal:
            self._stats.active_sessions -= 1
        _logger.info("Deleted session %s", session_id)
        return True

    def cancel_session(self, session_id: str) -> bool:
        """Fail a pending or processing session on behalf of the user.

        The in-flight generation call keeps running; its eventual result is
        dropped because updates to a terminal session are no-ops.
        """
        session = self._sessions.get(session_id)
        if session is None or session.status not in CANCELLABLE_STATUSES:
            return False
        return self.update_session(
            session_id,
            SessionStatus.FAILED,
            error={
                "kind": "user_cancelled",
                "message": "Analysis was cancelled by the user",
            },
            progress={
                "stage": "cancelled",
                "percentage": 0,
                "message": "Analysis cancelled",
            },
        )

    def record_retry(self, session_id: str, retry_count: int) -> bool:
        session = self._sessions.get(session_id)
        if session is None or session.status.is_terminal:
            return False
        session.metadata.retry_count = retry_count
        session.metadata.updated_at = self.clock.now()
        return True

    def active_sessions(self) -> list[dict[str, object]]:
        """Short descriptions of every non-terminal session."""
        now = self.clock.now()
        return [
            {
                "id": session.id,
                "status": session.status.value,
                "progress": _progress_dict(session),
                "start_time": session.metadata.start_time.isoformat(),
                "processing_time_ms": elapsed_ms(session.metadata.start_time, now),
            }
            for session in self._sessions.values()
            if not session.status.is_terminal
        ]

    def summary(self, session: Session) -> dict[str, object]:
        """Compact view of a session with the requirement truncated."""
        requirement = session.request.requirement
        if len(requirement) > SUMMARY_REQUIREMENT_LENGTH:
            requirement = requirement[:SUMMARY_REQUIREMENT_LENGTH] + "..."
        return {
            "id": session.id,
            "status": session.status.value,
            "progress": _progress_dict(session),
            "has_result": session.result is not None,
            "has_error": session.error is not None,
            "processing_time_ms": self.processing_time_ms(session),
            "created_at": session.metadata.created_at.isoformat(),
            "request": {
                "requirement": requirement,
                "product_type": session.request.product_type,
                "implement_type": session.request.implement_type,
            },
        }

    def processing_time_ms(self, session: Session) -> float:
        """Final processing time, or elapsed time while still running."""
        if session.metadata.end_time is not None:
            return session.metadata.processing_time_ms
        return elapsed_ms(session.metadata.start_time, self.clock.now())

    def stats(self) -> dict[str, object]:
        stats = self._stats
        success_rate = (
            stats.completed_sessions / stats.total_sessions * 100
            if stats.total_sessions
            else 0.0
        )
        return {
            "total_sessions": stats.total_sessions,
            "active_sessions": stats.active_sessions,
            "completed_sessions": stats.completed_sessions,
            "failed_sessions": stats.failed_sessions,
            "duplicate_requests": stats.duplicate_requests,
            "average_processing_time_ms": round(stats.average_processing_time_ms),
            "sessions_in_memory": len(self._sessions),
            "success_rate": f"{success_rate:.2f}%",
        }

    def reset_stats(self) -> None:
        self._stats = SessionStats(active_sessions=self._in_flight_count())
        _logger.info("Session statistics reset")

    def reset(self) -> None:
        """Drop every session and counter."""
        self._sessions.clear()
        self._stats = SessionStats()

    def cleanup_expired(self, now: datetime | None = None) -> dict[str, int]:
        """Time out stale in-flight sessions and purge old terminal ones.

        Terminal sessions are kept for twice the session timeout so clients
        can still poll the outcome. FAILED covers every failed outcome, there
        is no separate error status.
        """
        current = now or self.clock.now()
        timeout = timedelta(seconds=self.config.session_timeout_seconds)
        timed_out = 0
        purge: list[str] = []
        for session_id, session in list(self._sessions.items()):
            age = current - session.metadata.start_time
            if session.status.is_terminal:
                if age > timeout * 2:
                    purge.append(session_id)
                continue
            if age > timeout:
                self.update_session(
                    session_id,
                    SessionStatus.TIMEOUT,
                    error={
                        "kind": "timeout",
                        "message": "Analysis timed out, please retry",
                    },
                    progress={
                        "stage": "timeout",
                        "message": "Analysis timed out",
                    },
                )
                timed_out += 1
        for session_id in purge:
            self.delete_session(session_id)
        if timed_out or purge:
            _logger.info(
                "Session sweep: %s timed out, %s purged", timed_out, len(purge)
            )
        return {"timed_out": timed_out, "purged": len(purge)}

    def _validate_request(self, request: AnalysisRequest) -> None:
        requirement = (request.requirement or "").strip()
        if len(requirement) < self.config.min_requirement_length:
            raise RequestValidationError(
                "requirement",
                "Requirement must be at least "
                f"{self.config.min_requirement_length} characters",
            )
        if len(requirement) > self.config.max_requirement_length:
            raise RequestValidationError(
                "requirement",
                "Requirement must be at most "
                f"{self.config.max_requirement_length} characters",
            )
        if request.product_type not in PRODUCT_TYPES:
            raise RequestValidationError(
                "product_type", f"Unsupported product type: {request.product_type}"
            )
        if request.implement_type not in IMPLEMENT_TYPES:
            raise RequestValidationError(
                "implement_type",
                f"Unsupported implement type: {request.implement_type}",
            )

    def _find_duplicate(self, request: AnalysisRequest) -> Session | None:
        now = self.clock.now()
        window = timedelta(seconds=self.config.duplicate_window_seconds)
        key = request.dedup_key()
        candidates = [
            session
            for session in self._sessions.values()
            if session.status not in {SessionStatus.FAILED, SessionStatus.TIMEOUT}
            and now - session.metadata.start_time <= window
            and session.request.dedup_key() == key
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda session: session.metadata.start_time)

    def _in_flight_count(self) -> int:
        return sum(
            1 for session in self._sessions.values() if not session.status.is_terminal
        )

    def _finish(self, session: Session, now: datetime) -> None:
        session.metadata.end_time = now
        session.metadata.processing_time_ms = elapsed_ms(
            session.metadata.start_time, now
        )
        self._stats.active_sessions -= 1
        if session.status is SessionStatus.COMPLETED:
            self._stats.completed_sessions += 1
            completed = self._stats.completed_sessions
            previous = self._stats.average_processing_time_ms
            self._stats.average_processing_time_ms = (
                previous * (completed - 1) + session.metadata.processing_time_ms
            ) / completed
        else:
            self._stats.failed_sessions += 1


@dataclass
class SessionSweeper:
    """Runs ``SessionStore.cleanup_expired`` on a fixed interval.

    Started and stopped explicitly, usually from the application lifespan.
    Tests call ``run_once`` with a manual clock instead of waiting.
    """

    store: SessionStore
    interval_seconds: float
    _task: asyncio.Task[None] | None = field(default=None, init=False)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        _logger.info("Session sweeper started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        _logger.info("Session sweeper stopped")

    def run_once(self) -> dict[str, int]:
        return self.store.cleanup_expired()

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.run_once()
            except Exception:
                _logger.exception("Session sweep failed")


def _merge_progress(session: Session, patch: dict[str, object]) -> None:
    progress = session.progress
    if "stage" in patch:
        progress.stage = str(patch["stage"])
    if "percentage" in patch:
        progress.percentage = max(0, min(100, int(patch["percentage"])))
    if "message" in patch:
        progress.message = str(patch["message"])
    if "steps" in patch:
        progress.steps = [str(step) for step in patch["steps"]]


def _progress_dict(session: Session) -> dict[str, object]:
    progress = session.progress
    return {
        "stage": progress.stage,
        "percentage": progress.percentage,
        "message": progress.message,
        "steps": list(progress.steps),
    }
