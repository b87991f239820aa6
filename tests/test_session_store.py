"""Tests for the session store state machine and sweep."""

import asyncio
from datetime import timedelta

import pytest

from flowchart_ai.domain.errors import RequestValidationError, SessionCapacityError
from flowchart_ai.domain.sessions import AnalysisRequest, SessionStatus
from flowchart_ai.services.sessions import SessionConfig, SessionStore, SessionSweeper
from tests.conftest import ManualClock

REQUIREMENT = "Users log in and then browse their order list"


def _request(requirement: str = REQUIREMENT, **kwargs: str) -> AnalysisRequest:
    return AnalysisRequest(requirement=requirement, **kwargs)


def test_create_session_starts_pending(session_store: SessionStore) -> None:
    session, created = session_store.create_session(_request())

    assert created
    assert session.status is SessionStatus.PENDING
    assert session.progress.percentage == 0
    assert session_store.get_session(session.id) is session
    assert session_store.stats()["active_sessions"] == 1


def test_duplicate_within_window_reuses_session(
    session_store: SessionStore, clock: ManualClock
) -> None:
    first, _ = session_store.create_session(_request())
    clock.advance(10)

    second, created = session_store.create_session(_request())

    assert not created
    assert second.id == first.id
    assert session_store.stats()["duplicate_requests"] == 1
    assert session_store.stats()["total_sessions"] == 1


def test_duplicate_outside_window_creates_new_session(
    session_store: SessionStore, clock: ManualClock
) -> None:
    first, _ = session_store.create_session(_request())
    clock.advance(31)

    second, created = session_store.create_session(_request())

    assert created
    assert second.id != first.id


def test_duplicate_lookup_prefers_earliest_start_time(
    session_store: SessionStore, clock: ManualClock
) -> None:
    first, _ = session_store.create_session(_request())
    clock.advance(40)
    second, _ = session_store.create_session(_request())
    session_store.config = SessionConfig(duplicate_window_seconds=100)
    second.metadata.start_time = clock.now() - timedelta(seconds=60)

    reused, created = session_store.create_session(_request())

    assert not created
    assert reused.id == second.id
    assert reused.id != first.id


def test_failed_sessions_are_not_reused(session_store: SessionStore) -> None:
    first, _ = session_store.create_session(_request())
    session_store.update_session(first.id, SessionStatus.FAILED)

    second, created = session_store.create_session(_request())

    assert created
    assert second.id != first.id


def test_different_product_type_is_not_a_duplicate(
    session_store: SessionStore,
) -> None:
    first, _ = session_store.create_session(_request(product_type="web"))

    second, created = session_store.create_session(_request(product_type="mobile"))

    assert created
    assert second.id != first.id


@pytest.mark.parametrize(
    ("request_kwargs", "field"),
    [
        ({"requirement": "too short"}, "requirement"),
        ({"requirement": "   padded   "}, "requirement"),
        ({"requirement": "x" * 5001}, "requirement"),
        ({"requirement": REQUIREMENT, "product_type": "watch"}, "product_type"),
        ({"requirement": REQUIREMENT, "implement_type": "magic"}, "implement_type"),
    ],
)
def test_create_session_rejects_invalid_requests(
    session_store: SessionStore, request_kwargs: dict[str, str], field: str
) -> None:
    with pytest.raises(RequestValidationError) as exc_info:
        session_store.create_session(AnalysisRequest(**request_kwargs))

    assert exc_info.value.field == field
    assert session_store.stats()["total_sessions"] == 0


def test_capacity_counts_only_in_flight_sessions(clock: ManualClock) -> None:
    store = SessionStore(config=SessionConfig(max_sessions=2), clock=clock)
    first, _ = store.create_session(_request(REQUIREMENT + " one"))
    store.create_session(_request(REQUIREMENT + " two"))

    with pytest.raises(SessionCapacityError):
        store.create_session(_request(REQUIREMENT + " three"))

    duplicate, created = store.create_session(_request(REQUIREMENT + " one"))
    assert not created
    assert duplicate.id == first.id

    store.update_session(first.id, SessionStatus.COMPLETED, result={"ok": True})
    _, created = store.create_session(_request(REQUIREMENT + " three"))
    assert created


def test_update_moves_forward_and_patches_progress(
    session_store: SessionStore,
) -> None:
    session, _ = session_store.create_session(_request())

    assert session_store.update_session(
        session.id,
        SessionStatus.PROCESSING,
        progress={"stage": "analyzing", "percentage": 140},
    )
    assert session.progress.stage == "analyzing"
    assert session.progress.percentage == 100
    assert session.progress.message == "Initializing analysis"

    assert not session_store.update_session(session.id, SessionStatus.PENDING)
    assert session.status is SessionStatus.PROCESSING


def test_result_is_only_stored_on_completion(
    session_store: SessionStore, clock: ManualClock
) -> None:
    session, _ = session_store.create_session(_request())

    session_store.update_session(
        session.id, SessionStatus.GENERATING, result={"early": True}
    )
    assert session.result is None

    clock.advance(2)
    session_store.update_session(
        session.id, SessionStatus.COMPLETED, result={"diagram_source": "flowchart"}
    )

    assert session.result == {"diagram_source": "flowchart"}
    assert session.error is None
    assert session.metadata.end_time == clock.now()
    assert session.metadata.processing_time_ms == 2000
    stats = session_store.stats()
    assert stats["completed_sessions"] == 1
    assert stats["active_sessions"] == 0
    assert stats["average_processing_time_ms"] == 2000
    assert stats["success_rate"] == "100.00%"


def test_terminal_sessions_are_immutable(session_store: SessionStore) -> None:
    session, _ = session_store.create_session(_request())
    session_store.update_session(
        session.id, SessionStatus.FAILED, error={"kind": "network"}
    )

    assert not session_store.update_session(
        session.id, SessionStatus.COMPLETED, result={"late": True}
    )
    assert session.status is SessionStatus.FAILED
    assert session.result is None
    assert session.error == {"kind": "network"}
    assert session_store.stats()["failed_sessions"] == 1


def test_update_unknown_session(session_store: SessionStore) -> None:
    assert not session_store.update_session("missing", SessionStatus.PROCESSING)


def test_cancel_session(session_store: SessionStore) -> None:
    session, _ = session_store.create_session(_request())
    session_store.update_session(session.id, SessionStatus.GENERATING)

    assert session_store.cancel_session(session.id)

    assert session.status is SessionStatus.FAILED
    assert session.error is not None
    assert session.error["kind"] == "user_cancelled"
    assert session.progress.stage == "cancelled"
    assert not session_store.cancel_session(session.id)
    assert not session_store.cancel_session("missing")


def test_delete_session(session_store: SessionStore) -> None:
    session, _ = session_store.create_session(_request())

    assert session_store.delete_session(session.id)
    assert session_store.get_session(session.id) is None
    assert session_store.stats()["active_sessions"] == 0
    assert not session_store.delete_session(session.id)


def test_record_retry_only_while_running(session_store: SessionStore) -> None:
    session, _ = session_store.create_session(_request())

    assert session_store.record_retry(session.id, 2)
    assert session.metadata.retry_count == 2

    session_store.update_session(session.id, SessionStatus.TIMEOUT)
    assert not session_store.record_retry(session.id, 3)
    assert session.metadata.retry_count == 2


def test_summary_truncates_requirement(session_store: SessionStore) -> None:
    session, _ = session_store.create_session(_request("a" * 150))

    summary = session_store.summary(session)

    assert summary["request"]["requirement"] == "a" * 100 + "..."
    assert summary["status"] == "pending"
    assert summary["has_result"] is False


def test_active_sessions_lists_only_in_flight(session_store: SessionStore) -> None:
    running, _ = session_store.create_session(_request(REQUIREMENT + " one"))
    done, _ = session_store.create_session(_request(REQUIREMENT + " two"))
    session_store.update_session(done.id, SessionStatus.COMPLETED, result={})

    active = session_store.active_sessions()

    assert [entry["id"] for entry in active] == [running.id]


def test_cleanup_times_out_stale_sessions_then_purges(
    session_store: SessionStore, clock: ManualClock
) -> None:
    stale, _ = session_store.create_session(_request(REQUIREMENT + " one"))
    clock.advance(200)
    fresh, _ = session_store.create_session(_request(REQUIREMENT + " two"))
    clock.advance(101)

    assert session_store.cleanup_expired() == {"timed_out": 1, "purged": 0}
    assert stale.status is SessionStatus.TIMEOUT
    assert stale.error is not None
    assert stale.error["kind"] == "timeout"
    assert fresh.status is SessionStatus.PENDING

    clock.advance(300)
    assert session_store.cleanup_expired() == {"timed_out": 1, "purged": 1}
    assert session_store.get_session(stale.id) is None
    assert session_store.get_session(fresh.id) is fresh
    assert fresh.status is SessionStatus.TIMEOUT


def test_reset_stats_keeps_in_flight_count(session_store: SessionStore) -> None:
    session_store.create_session(_request(REQUIREMENT + " one"))
    done, _ = session_store.create_session(_request(REQUIREMENT + " two"))
    session_store.update_session(done.id, SessionStatus.COMPLETED, result={})

    session_store.reset_stats()

    stats = session_store.stats()
    assert stats["total_sessions"] == 0
    assert stats["completed_sessions"] == 0
    assert stats["active_sessions"] == 1
    assert stats["sessions_in_memory"] == 2


def test_sweeper_run_once_uses_store(
    session_store: SessionStore, clock: ManualClock
) -> None:
    sweeper = SessionSweeper(store=session_store, interval_seconds=60)
    session, _ = session_store.create_session(_request())
    clock.advance(301)

    assert sweeper.run_once() == {"timed_out": 1, "purged": 0}
    assert session.status is SessionStatus.TIMEOUT


def test_sweeper_start_and_stop(session_store: SessionStore) -> None:
    sweeper = SessionSweeper(store=session_store, interval_seconds=3600)

    async def scenario() -> tuple[bool, bool]:
        sweeper.start()
        started = sweeper.running
        await sweeper.stop()
        return started, sweeper.running

    assert asyncio.run(scenario()) == (True, False)
