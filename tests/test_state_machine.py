from __future__ import annotations

from dataclasses import replace

import pytest

from core.errors import (
    ConcurrentModificationError,
    ErrorCode,
    ErrorType,
    InvalidTransitionError,
    SessionNotFoundError,
    categorize_error,
)
from core.models import RunType
from core.state_machine import ScanStateMachine
from core.states import PIPELINE_ORDER, ScanState


class RacingStore:
    """Delegates to a real store but lets another writer win the next CAS."""

    def __init__(self, inner, competing_status: ScanState) -> None:
        self._inner = inner
        self._competing_status = competing_status
        self.race_next = False

    def __getattr__(self, name):
        return getattr(self._inner, name)

    def compare_and_set_session(self, session, expected_status):
        if self.race_next:
            self.race_next = False
            self._inner.compare_and_set_session(
                replace(session, status=self._competing_status, error=None),
                expected_status,
            )
        return self._inner.compare_and_set_session(session, expected_status)


def _walk_to(machine: ScanStateMachine, session_id: str, target: ScanState) -> None:
    for state in PIPELINE_ORDER[1:]:
        machine.transition(session_id, state)
        if state == target:
            return


def test_create_session_starts_queued(storage, clock) -> None:
    machine = ScanStateMachine(storage, clock)

    session = machine.create_session("owner-1", RunType.INCREMENTAL)
    stored = machine.get_session(session.id)

    assert stored.status == ScanState.QUEUED
    assert stored.run_type == RunType.INCREMENTAL
    assert stored.started_at == clock.now
    assert stored.retry_count == 0
    assert stored.checkpoint.messages_collected == 0
    assert machine.get_active_session("owner-1").id == session.id


def test_get_session_raises_for_unknown_id(storage, clock) -> None:
    machine = ScanStateMachine(storage, clock)

    assert machine.find_session("missing") is None
    with pytest.raises(SessionNotFoundError):
        machine.get_session("missing")


def test_walk_to_complete_stamps_completed_at(storage, clock) -> None:
    machine = ScanStateMachine(storage, clock)
    session = machine.create_session("owner-1")

    clock.advance(minutes=5)
    _walk_to(machine, session.id, ScanState.COMPLETE)
    stored = machine.get_session(session.id)

    assert stored.status == ScanState.COMPLETE
    assert stored.completed_at == clock.now
    assert machine.get_active_session("owner-1") is None
    assert machine.has_completed_full_scan("owner-1") is True


def test_invalid_transition_leaves_session_untouched(storage, clock) -> None:
    machine = ScanStateMachine(storage, clock)
    session = machine.create_session("owner-1")

    with pytest.raises(InvalidTransitionError):
        machine.transition(session.id, ScanState.PARSING)

    stored = machine.get_session(session.id)
    assert stored.status == ScanState.QUEUED
    assert stored.updated_at == session.updated_at


def test_entering_failed_records_error_and_counts_retry(storage, clock) -> None:
    machine = ScanStateMachine(storage, clock)
    session = machine.create_session("owner-1")
    _walk_to(machine, session.id, ScanState.COLLECTING)

    metadata = categorize_error(Exception("503 Service Unavailable"))
    failed = machine.transition(session.id, ScanState.FAILED, metadata)

    assert failed.retry_count == 1
    assert failed.error.type == ErrorType.TRANSIENT
    assert failed.error.code == ErrorCode.API_SERVICE_UNAVAILABLE.value
    assert failed.error.diagnostic is None
    assert machine.get_session(session.id).error.message == "Service temporarily unavailable. Will retry."


def test_critical_failure_keeps_diagnostic(storage, clock) -> None:
    machine = ScanStateMachine(storage, clock)
    session = machine.create_session("owner-1")
    _walk_to(machine, session.id, ScanState.CONNECTING)

    metadata = categorize_error(InvalidTransitionError("table broken"))
    machine.transition(session.id, ScanState.FAILED, metadata)

    error = machine.get_session(session.id).error
    assert error.type == ErrorType.CRITICAL
    assert error.diagnostic["context"]["error_class"] == "InvalidTransitionError"


def test_resume_from_failed_clears_error_and_keeps_retry_count(storage, clock) -> None:
    machine = ScanStateMachine(storage, clock)
    session = machine.create_session("owner-1")
    _walk_to(machine, session.id, ScanState.CONNECTING)
    machine.transition(session.id, ScanState.FAILED)

    resumed = machine.resume(session.id)

    assert resumed.status == ScanState.QUEUED
    assert resumed.error is None
    assert machine.get_session(session.id).retry_count == 1


def test_resume_from_paused_picks_stage_from_checkpoint(storage, clock) -> None:
    machine = ScanStateMachine(storage, clock)

    collecting = machine.create_session("owner-1")
    _walk_to(machine, collecting.id, ScanState.COLLECTING)
    machine.transition(collecting.id, ScanState.PAUSED)
    assert machine.resume(collecting.id).status == ScanState.COLLECTING

    parsing = machine.create_session("owner-2")
    _walk_to(machine, parsing.id, ScanState.PARSING)
    machine.update_checkpoint(parsing.id, receipts_processed=40)
    machine.transition(parsing.id, ScanState.PAUSED)
    assert machine.resume(parsing.id).status == ScanState.PARSING


def test_resume_rejects_running_session(storage, clock) -> None:
    machine = ScanStateMachine(storage, clock)
    session = machine.create_session("owner-1")
    _walk_to(machine, session.id, ScanState.COLLECTING)

    with pytest.raises(InvalidTransitionError):
        machine.resume(session.id)


def test_checkpoint_merge_keeps_other_fields(storage, clock) -> None:
    machine = ScanStateMachine(storage, clock)
    session = machine.create_session("owner-1")

    machine.update_checkpoint(session.id, page_token="p2", messages_collected=50)
    machine.update_checkpoint(session.id, receipts_processed=10)
    checkpoint = machine.get_session(session.id).checkpoint

    assert checkpoint.page_token == "p2"
    assert checkpoint.messages_collected == 50
    assert checkpoint.receipts_processed == 10

    with pytest.raises(ValueError):
        machine.update_checkpoint(session.id, bogus=1)


def test_stats_merge(storage, clock) -> None:
    machine = ScanStateMachine(storage, clock)
    session = machine.create_session("owner-1")

    machine.update_stats(session.id, tokens_used=120, api_cost=0.02)
    machine.update_stats(session.id, retries=2)
    stats = machine.get_session(session.id).stats

    assert (stats.tokens_used, stats.api_cost, stats.retries) == (120, 0.02, 2)


def test_lost_race_raises_concurrent_modification(storage, clock) -> None:
    racing = RacingStore(storage, ScanState.FAILED)
    machine = ScanStateMachine(racing, clock)
    session = machine.create_session("owner-1")
    _walk_to(machine, session.id, ScanState.COLLECTING)

    racing.race_next = True
    with pytest.raises(ConcurrentModificationError):
        machine.transition(session.id, ScanState.FILTERING)

    assert machine.get_session(session.id).status == ScanState.FAILED


def test_cancel_fails_running_session(storage, clock) -> None:
    machine = ScanStateMachine(storage, clock)
    session = machine.create_session("owner-1")
    _walk_to(machine, session.id, ScanState.PARSING)

    assert machine.cancel(session.id, "user asked") is True

    stored = machine.get_session(session.id)
    assert stored.status == ScanState.FAILED
    assert stored.error.type == ErrorType.PERMANENT
    assert stored.error.code == ErrorCode.USER_CANCELLED.value
    assert stored.error.message == "user asked"


def test_cancel_queued_and_paused_sessions(storage, clock) -> None:
    machine = ScanStateMachine(storage, clock)

    queued = machine.create_session("owner-1")
    assert machine.cancel(queued.id) is True

    paused = machine.create_session("owner-2")
    _walk_to(machine, paused.id, ScanState.COLLECTING)
    machine.transition(paused.id, ScanState.PAUSED)
    assert machine.cancel(paused.id) is True
    assert machine.get_session(paused.id).status == ScanState.FAILED


def test_cancel_finished_session_is_noop(storage, clock) -> None:
    machine = ScanStateMachine(storage, clock)
    session = machine.create_session("owner-1")
    _walk_to(machine, session.id, ScanState.COMPLETE)

    assert machine.cancel(session.id) is False
    assert machine.get_session(session.id).status == ScanState.COMPLETE


def test_cancel_retries_after_lost_race(storage, clock) -> None:
    racing = RacingStore(storage, ScanState.FILTERING)
    machine = ScanStateMachine(racing, clock)
    session = machine.create_session("owner-1")
    _walk_to(machine, session.id, ScanState.COLLECTING)

    racing.race_next = True
    assert machine.cancel(session.id) is True
    assert machine.get_session(session.id).status == ScanState.FAILED


def test_cleanup_removes_only_old_finished_sessions(storage, clock) -> None:
    machine = ScanStateMachine(storage, clock)
    complete = machine.create_session("owner-1")
    _walk_to(machine, complete.id, ScanState.COMPLETE)
    failed = machine.create_session("owner-1")
    machine.cancel(failed.id)
    active = machine.create_session("owner-2")

    assert machine.cleanup_old_sessions(30) == 0

    clock.advance(days=31)
    assert machine.cleanup_old_sessions(30) == 2
    assert machine.find_session(complete.id) is None
    assert machine.find_session(failed.id) is None
    assert machine.find_session(active.id) is not None
