from __future__ import annotations

import asyncio
import json
import sqlite3
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

import pytest

from core.circuit_breaker import CircuitBreakerRegistry
from core.config import DetectionConfig, LockConfig, PipelineConfig
from core.detection import DetectionEngine
from core.errors import ErrorCode, ErrorType
from core.locks import LockManager
from core.materializer import CandidateMaterializer
from core.models import CandidateStatus, RunType
from core.orchestrator import Outcome, ScanOrchestrator
from core.ports import EvidencePage, ParseBatchResult, ParseFailure
from core.signals import KeywordEvidenceClassifier
from core.state_machine import ScanStateMachine
from core.states import ScanState

OWNER = "owner-1"


class FakeCollector:
    def __init__(
        self, pages, connect_errors=(), on_fetch: Optional[Callable[[], None]] = None, fetch_errors=None
    ) -> None:
        self.pages = pages
        self.connect_errors = list(connect_errors)
        self.fetch_errors = dict(fetch_errors or {})
        self.on_fetch = on_fetch
        self.connects = 0
        self.fetched: list[int] = []

    async def connect(self, owner_id: str) -> None:
        self.connects += 1
        if self.connect_errors:
            raise self.connect_errors.pop(0)

    async def fetch_page(self, owner_id, cursor, run_type) -> EvidencePage:
        index = int(cursor) if cursor else 0
        self.fetched.append(index)
        if self.on_fetch is not None:
            self.on_fetch()
        if index in self.fetch_errors:
            raise self.fetch_errors.pop(index)
        next_cursor = str(index + 1) if index + 1 < len(self.pages) else None
        return EvidencePage(records=list(self.pages[index]), next_cursor=next_cursor)


class FakeParser:
    def __init__(self, errors=(), fail_ids=()) -> None:
        self.errors = list(errors)
        self.fail_ids = set(fail_ids)
        self.batches: list[list[str]] = []

    async def parse_batch(self, records) -> ParseBatchResult:
        self.batches.append([record.id for record in records])
        if self.errors:
            raise self.errors.pop(0)
        return ParseBatchResult(
            records=[replace(record, parsed=True) for record in records if record.id not in self.fail_ids],
            tokens_used=10,
            cost=0.01,
            failures=[ParseFailure(record.id, "unreadable") for record in records if record.id in self.fail_ids],
        )


class RecordingTelemetry:
    def __init__(self) -> None:
        self.stages: list[ScanState] = []
        self.retries: list[tuple[str, int, int]] = []
        self.errors: list[str] = []
        self.costs: list[float] = []

    def stage_completed(self, session_id, stage, duration_ms, details) -> None:
        self.stages.append(stage)

    def retry_scheduled(self, session_id, operation, attempt, delay_ms, metadata) -> None:
        self.retries.append((operation, attempt, delay_ms))

    def error_recorded(self, session_id, metadata) -> None:
        self.errors.append(metadata.code)

    def cost_recorded(self, session_id, tokens_used, cost) -> None:
        self.costs.append(cost)


@dataclass
class Harness:
    orchestrator: ScanOrchestrator
    sessions: ScanStateMachine
    locks: LockManager
    telemetry: RecordingTelemetry
    sleeps: list[float] = field(default_factory=list)


def _build(
    storage, clock, collector, parser, pipeline_config=None, lock_config=None, breakers=None, telemetry=None
) -> Harness:
    sessions = ScanStateMachine(storage, clock)
    locks = LockManager(storage, clock)
    config = DetectionConfig()
    telemetry = telemetry or RecordingTelemetry()
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    orchestrator = ScanOrchestrator(
        sessions=sessions,
        locks=locks,
        evidence=storage,
        detection=DetectionEngine(storage, storage, KeywordEvidenceClassifier(), config, clock),
        materializer=CandidateMaterializer(storage, storage, storage, config, clock),
        collector=collector,
        parser=parser,
        telemetry=telemetry,
        breakers=breakers or CircuitBreakerRegistry(clock=clock),
        lock_config=lock_config,
        pipeline_config=pipeline_config,
        clock=clock,
        sleep=fake_sleep,
        rng=lambda: 0.5,
    )
    return Harness(orchestrator, sessions, locks, telemetry, sleeps)


def _pages(make_record):
    def unparsed(record_id, merchant, days_ago):
        return make_record(record_id, merchant, days_ago=days_ago, parsed=False, message_id=f"msg-{record_id}")

    return [
        [unparsed("n1", "Netflix", 5), unparsed("n2", "Netflix", 35), unparsed("n3", "Netflix", 65)],
        [unparsed("s1", "Spotify", 10), unparsed("s2", "Spotify", 40)],
    ]


def _start(harness: Harness) -> str:
    return harness.orchestrator.start_scan(OWNER).session.id


def test_happy_path_completes_and_creates_candidates(storage, clock, make_record) -> None:
    harness = _build(storage, clock, FakeCollector(_pages(make_record)), FakeParser())
    session_id = _start(harness)

    outcome = asyncio.run(harness.orchestrator.run(session_id))

    assert outcome.outcome == Outcome.COMPLETED
    assert len(outcome.candidate_ids) == 2
    session = harness.sessions.get_session(session_id)
    assert session.status == ScanState.COMPLETE
    assert session.completed_at == clock.now
    assert session.checkpoint.messages_collected == 5
    assert session.checkpoint.receipts_processed == 5
    assert session.checkpoint.candidates_created == 2
    assert session.checkpoint.page_token is None
    assert session.checkpoint.last_processed_message_id == "msg-s2"
    assert session.stats.total_messages_found == 5
    assert session.stats.receipts_identified == 5
    assert session.stats.subscriptions_detected == 2
    assert session.stats.tokens_used == 10
    assert session.stats.api_cost == pytest.approx(0.01)
    assert harness.telemetry.stages == [
        ScanState.QUEUED,
        ScanState.CONNECTING,
        ScanState.COLLECTING,
        ScanState.FILTERING,
        ScanState.PARSING,
        ScanState.DETECTING,
        ScanState.REVIEWING,
    ]
    pending = storage.list_candidates(OWNER, [CandidateStatus.PENDING])
    assert [candidate.merchant_key for candidate in pending] == ["netflix", "spotify"]
    assert harness.locks.is_locked("owner_scan", OWNER).locked is False


def test_start_scan_reuses_active_session_and_picks_run_type(storage, clock, make_record) -> None:
    harness = _build(storage, clock, FakeCollector(_pages(make_record)), FakeParser())

    first = harness.orchestrator.start_scan(OWNER)
    again = harness.orchestrator.start_scan(OWNER)
    assert first.created is True
    assert first.session.run_type == RunType.FULL
    assert again.created is False
    assert again.session.id == first.session.id

    asyncio.run(harness.orchestrator.run(first.session.id))
    incremental = harness.orchestrator.start_scan(OWNER)
    assert incremental.session.run_type == RunType.INCREMENTAL

    harness.orchestrator.cancel(incremental.session.id)
    forced = harness.orchestrator.start_scan(OWNER, force_full=True)
    assert forced.session.run_type == RunType.FULL


def test_transient_errors_are_retried_with_backoff(storage, clock, make_record) -> None:
    collector = FakeCollector(_pages(make_record), connect_errors=[TimeoutError(), TimeoutError()])
    harness = _build(storage, clock, collector, FakeParser())
    session_id = _start(harness)

    outcome = asyncio.run(harness.orchestrator.run(session_id))

    assert outcome.outcome == Outcome.COMPLETED
    assert collector.connects == 3
    assert harness.sleeps == [1.0, 2.0]
    assert harness.telemetry.retries == [("collector.connect", 1, 1000), ("collector.connect", 2, 2000)]
    assert harness.sessions.get_session(session_id).stats.retries == 2


def test_exhausted_retries_fail_and_session_can_resume(storage, clock, make_record) -> None:
    collector = FakeCollector(_pages(make_record), connect_errors=[TimeoutError()] * 4)
    harness = _build(storage, clock, collector, FakeParser())
    session_id = _start(harness)

    outcome = asyncio.run(harness.orchestrator.run(session_id))

    assert outcome.outcome == Outcome.FAILED
    assert outcome.error.code == ErrorCode.API_TIMEOUT.value
    assert collector.connects == 4
    assert harness.sleeps == [1.0, 2.0, 4.0]
    failed = harness.sessions.get_session(session_id)
    assert failed.status == ScanState.FAILED
    assert failed.error.type == ErrorType.TRANSIENT
    assert failed.retry_count == 1
    assert harness.locks.is_locked("owner_scan", OWNER).locked is False

    resumed = asyncio.run(harness.orchestrator.resume(session_id))

    assert resumed.outcome == Outcome.COMPLETED
    assert harness.sessions.get_session(session_id).error is None


def test_resume_after_collection_does_not_double_count(storage, clock, make_record) -> None:
    collector = FakeCollector(_pages(make_record))
    harness = _build(storage, clock, collector, FakeParser(errors=[TimeoutError()] * 4))
    session_id = _start(harness)

    failed = asyncio.run(harness.orchestrator.run(session_id))
    assert failed.outcome == Outcome.FAILED
    assert harness.sessions.get_session(session_id).checkpoint.messages_collected == 5

    resumed = asyncio.run(harness.orchestrator.resume(session_id))

    assert resumed.outcome == Outcome.COMPLETED
    assert collector.fetched == [0, 1, 0, 1]
    session = harness.sessions.get_session(session_id)
    assert session.checkpoint.messages_collected == 5
    assert session.stats.total_messages_found == 5


def test_failure_after_detection_forgets_candidate_ids(storage, clock, make_record) -> None:
    class FailingTelemetry(RecordingTelemetry):
        def stage_completed(self, session_id, stage, duration_ms, details) -> None:
            if stage == ScanState.DETECTING:
                raise RuntimeError("telemetry backend unavailable")
            super().stage_completed(session_id, stage, duration_ms, details)

    harness = _build(storage, clock, FakeCollector(_pages(make_record)), FakeParser(), telemetry=FailingTelemetry())
    session_id = _start(harness)

    outcome = asyncio.run(harness.orchestrator.run(session_id))

    assert outcome.outcome == Outcome.FAILED
    assert outcome.candidate_ids == ()
    assert harness.orchestrator._candidate_ids == {}


def test_permanent_error_fails_fast(storage, clock, make_record) -> None:
    collector = FakeCollector(_pages(make_record), connect_errors=[Exception("401 Unauthorized")])
    harness = _build(storage, clock, collector, FakeParser())
    session_id = _start(harness)

    outcome = asyncio.run(harness.orchestrator.run(session_id))

    assert outcome.outcome == Outcome.FAILED
    assert harness.sleeps == []
    error = harness.sessions.get_session(session_id).error
    assert error.type == ErrorType.PERMANENT
    assert error.code == ErrorCode.INVALID_CREDENTIALS.value
    assert harness.telemetry.errors == [ErrorCode.INVALID_CREDENTIALS.value]


def test_open_breaker_stops_calls(storage, clock, make_record) -> None:
    collector = FakeCollector(_pages(make_record), connect_errors=[ConnectionError("down")] * 10)
    breakers = CircuitBreakerRegistry(threshold=2, cooldown_seconds=60, clock=clock)
    harness = _build(storage, clock, collector, FakeParser(), breakers=breakers)
    session_id = _start(harness)

    outcome = asyncio.run(harness.orchestrator.run(session_id))

    assert outcome.outcome == Outcome.FAILED
    assert outcome.error.code == ErrorCode.CIRCUIT_OPEN.value
    assert collector.connects == 2
    assert breakers.is_open("evidence_collector") is True


def test_malformed_batch_is_skipped(storage, clock, make_record) -> None:
    parser = FakeParser(errors=[json.JSONDecodeError("Expecting value", "", 0)])
    harness = _build(storage, clock, FakeCollector(_pages(make_record)), parser)
    session_id = _start(harness)

    outcome = asyncio.run(harness.orchestrator.run(session_id))

    assert outcome.outcome == Outcome.COMPLETED
    assert outcome.candidate_ids == ()
    session = harness.sessions.get_session(session_id)
    assert session.stats.partial_failures == 5
    assert session.checkpoint.receipts_processed == 5
    assert storage.count_unparsed(OWNER) == 0


def test_unreadable_page_is_skipped_and_scan_continues(storage, clock, make_record) -> None:
    collector = FakeCollector(_pages(make_record), fetch_errors={1: json.JSONDecodeError("Expecting value", "", 0)})
    harness = _build(storage, clock, collector, FakeParser())
    session_id = _start(harness)

    outcome = asyncio.run(harness.orchestrator.run(session_id))

    assert outcome.outcome == Outcome.COMPLETED
    assert len(outcome.candidate_ids) == 1
    assert collector.fetched == [0, 1]
    assert harness.sleeps == []
    session = harness.sessions.get_session(session_id)
    assert session.error is None
    assert session.stats.partial_failures == 1
    assert session.stats.total_messages_found == 3
    assert session.checkpoint.messages_collected == 3
    assert session.checkpoint.page_token is None
    assert [candidate.merchant_key for candidate in storage.list_candidates(OWNER)] == ["netflix"]


def test_record_level_parse_failures_are_partial(storage, clock, make_record) -> None:
    parser = FakeParser(fail_ids={"n1"})
    harness = _build(storage, clock, FakeCollector(_pages(make_record)), parser)
    session_id = _start(harness)

    outcome = asyncio.run(harness.orchestrator.run(session_id))

    assert outcome.outcome == Outcome.COMPLETED
    assert harness.sessions.get_session(session_id).stats.partial_failures == 1
    netflix = next(
        candidate for candidate in storage.list_candidates(OWNER) if candidate.merchant_key == "netflix"
    )
    assert netflix.evidence_ids == ["n2", "n3"]


def test_critical_error_aborts_with_diagnostic(storage, clock, make_record) -> None:
    parser = FakeParser(errors=[sqlite3.DatabaseError("disk image is malformed")])
    harness = _build(storage, clock, FakeCollector(_pages(make_record)), parser)
    session_id = _start(harness)

    outcome = asyncio.run(harness.orchestrator.run(session_id))

    assert outcome.outcome == Outcome.FAILED
    session = harness.sessions.get_session(session_id)
    assert session.error.type == ErrorType.CRITICAL
    assert "DatabaseError" in session.error.diagnostic["stack_trace"]
    logged = storage.list_errors(session_id)
    assert len(logged) == 1
    assert logged[0]["code"] == ErrorCode.DATABASE_ERROR.value


def test_busy_lock_leaves_session_untouched(storage, clock, make_record) -> None:
    collector = FakeCollector(_pages(make_record))
    harness = _build(storage, clock, collector, FakeParser())
    session_id = _start(harness)
    harness.locks.acquire("owner_scan", OWNER, "another-session")

    outcome = asyncio.run(harness.orchestrator.run(session_id))

    assert outcome.outcome == Outcome.LOCKED
    assert harness.sessions.get_session(session_id).status == ScanState.QUEUED
    assert collector.connects == 0


def test_page_budget_pauses_and_resume_continues(storage, clock, make_record) -> None:
    collector = FakeCollector(_pages(make_record))
    harness = _build(storage, clock, collector, FakeParser(), pipeline_config=PipelineConfig(max_pages_per_run=1))
    session_id = _start(harness)

    first = asyncio.run(harness.orchestrator.run(session_id))

    assert first.outcome == Outcome.PAUSED
    paused = harness.sessions.get_session(session_id)
    assert paused.status == ScanState.PAUSED
    assert paused.checkpoint.page_token == "1"
    assert paused.checkpoint.messages_collected == 3
    assert asyncio.run(harness.orchestrator.run(session_id)).outcome == Outcome.NOT_RUNNABLE

    second = asyncio.run(harness.orchestrator.resume(session_id))

    assert second.outcome == Outcome.COMPLETED
    assert collector.fetched == [0, 1]
    assert harness.sessions.get_session(session_id).checkpoint.messages_collected == 5


def test_parse_budget_pauses_between_batches(storage, clock, make_record) -> None:
    parser = FakeParser()
    config = PipelineConfig(parse_batch_size=2, max_parse_batches_per_run=1)
    harness = _build(storage, clock, FakeCollector(_pages(make_record)), parser, pipeline_config=config)
    session_id = _start(harness)

    outcomes = [asyncio.run(harness.orchestrator.run(session_id)).outcome]
    while outcomes[-1] == Outcome.PAUSED:
        outcomes.append(asyncio.run(harness.orchestrator.resume(session_id)).outcome)

    assert outcomes == [Outcome.PAUSED, Outcome.PAUSED, Outcome.COMPLETED]
    assert [len(batch) for batch in parser.batches] == [2, 2, 1]
    assert harness.sessions.get_session(session_id).checkpoint.receipts_processed == 5


def test_cancel_while_running_stops_at_next_checkpoint(storage, clock, make_record) -> None:
    collector = FakeCollector(_pages(make_record))
    parser = FakeParser()
    harness = _build(storage, clock, collector, parser)
    session_id = _start(harness)
    collector.on_fetch = lambda: harness.orchestrator.cancel(session_id, "stop please")

    outcome = asyncio.run(harness.orchestrator.run(session_id))

    assert outcome.outcome == Outcome.CANCELLED
    assert outcome.error.code == ErrorCode.USER_CANCELLED.value
    assert collector.fetched == [0]
    assert parser.batches == []
    session = harness.sessions.get_session(session_id)
    assert session.status == ScanState.FAILED
    assert session.error.message == "stop please"
    assert harness.locks.is_locked("owner_scan", OWNER).locked is False


def test_task_cancellation_cancels_session_and_releases_lock(storage, clock, make_record) -> None:
    parser = FakeParser(errors=[asyncio.CancelledError()])
    harness = _build(storage, clock, FakeCollector(_pages(make_record)), parser)
    session_id = _start(harness)

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(harness.orchestrator.run(session_id))

    session = harness.sessions.get_session(session_id)
    assert session.status == ScanState.FAILED
    assert session.error.code == ErrorCode.USER_CANCELLED.value
    assert harness.locks.is_locked("owner_scan", OWNER).locked is False


def test_lost_lock_fails_session_as_resumable(storage, clock, make_record) -> None:
    collector = FakeCollector(_pages(make_record))
    harness = _build(storage, clock, collector, FakeParser(), lock_config=LockConfig(timeout_ms=1_000))
    session_id = _start(harness)

    def steal_lock() -> None:
        harness.locks.force_release_owner(session_id)
        clock.advance(milliseconds=600)

    collector.on_fetch = steal_lock

    outcome = asyncio.run(harness.orchestrator.run(session_id))

    assert outcome.outcome == Outcome.FAILED
    assert outcome.error.code == ErrorCode.LOCK_LOST.value
    assert outcome.error.type == ErrorType.TRANSIENT
    assert harness.sessions.resume(session_id).status == ScanState.QUEUED


def test_finished_session_is_not_runnable(storage, clock, make_record) -> None:
    harness = _build(storage, clock, FakeCollector(_pages(make_record)), FakeParser())
    session_id = _start(harness)
    asyncio.run(harness.orchestrator.run(session_id))

    outcome = asyncio.run(harness.orchestrator.run(session_id))

    assert outcome.outcome == Outcome.NOT_RUNNABLE
    assert outcome.status == ScanState.COMPLETE
