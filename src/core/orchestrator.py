"""Scan pipeline orchestration.

This module is integration-agnostic. It drives one scan session through
the state machine while holding the owner's lock, and only talks to the
outside world through ports.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from core.circuit_breaker import CircuitBreakerRegistry
from core.config import LockConfig, PipelineConfig, RetryConfig
from core.detection import DetectionEngine
from core.errors import (
    ErrorCode,
    ErrorMetadata,
    ErrorType,
    RecoveryAction,
    ScanCancelledError,
    StageFailure,
    categorize_error,
    recovery_action,
    retry_delay_ms,
)
from core.locks import LeaseHandle, LockManager
from core.materializer import CandidateMaterializer
from core.models import RunType, ScanSession, utc_now
from core.ports import EvidenceCollector, EvidenceParser, EvidenceStorePort, TelemetrySink
from core.state_machine import ScanStateMachine
from core.states import INACTIVE_STATES, ScanState, is_valid_transition

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

COLLECTOR_BREAKER = "evidence_collector"
PARSER_BREAKER = "evidence_parser"


class Outcome(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"
    CANCELLED = "cancelled"
    LOCKED = "locked"
    NOT_RUNNABLE = "not_runnable"


@dataclass(frozen=True)
class ScanStart:
    session: ScanSession
    created: bool


@dataclass(frozen=True)
class RunOutcome:
    session_id: str
    outcome: Outcome
    status: Optional[ScanState] = None
    error: Optional[ErrorMetadata] = None
    candidate_ids: tuple[str, ...] = field(default_factory=tuple)


class ScanOrchestrator:
    """Runs scan sessions end to end.

    Every collaborator call goes through the circuit breaker registry and
    the retry loop; every stage boundary renews the lease and re-reads the
    session so a concurrent cancel stops the run.
    """

    def __init__(
        self,
        sessions: ScanStateMachine,
        locks: LockManager,
        evidence: EvidenceStorePort,
        detection: DetectionEngine,
        materializer: CandidateMaterializer,
        collector: EvidenceCollector,
        parser: EvidenceParser,
        telemetry: TelemetrySink,
        breakers: CircuitBreakerRegistry,
        lock_config: Optional[LockConfig] = None,
        retry_config: Optional[RetryConfig] = None,
        pipeline_config: Optional[PipelineConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._sessions = sessions
        self._locks = locks
        self._evidence = evidence
        self._detection = detection
        self._materializer = materializer
        self._collector = collector
        self._parser = parser
        self._telemetry = telemetry
        self._breakers = breakers
        self._lock_config = lock_config or LockConfig()
        self._retry = retry_config or RetryConfig()
        self._pipeline = pipeline_config or PipelineConfig()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._stages = {
            ScanState.QUEUED: self._stage_queued,
            ScanState.CONNECTING: self._stage_connecting,
            ScanState.COLLECTING: self._stage_collecting,
            ScanState.FILTERING: self._stage_filtering,
            ScanState.PARSING: self._stage_parsing,
            ScanState.DETECTING: self._stage_detecting,
            ScanState.REVIEWING: self._stage_reviewing,
        }
        self._candidate_ids: dict[str, tuple[str, ...]] = {}

    def start_scan(self, owner_id: str, force_full: bool = False) -> ScanStart:
        """Return the owner's active session, or create a new one."""

        active = self._sessions.get_active_session(owner_id)
        if active is not None:
            LOGGER.info("Reusing active session %s for %s (%s)", active.id, owner_id, active.status.value)
            return ScanStart(session=active, created=False)

        if force_full or not self._sessions.has_completed_full_scan(owner_id):
            run_type = RunType.FULL
        else:
            run_type = RunType.INCREMENTAL
        return ScanStart(session=self._sessions.create_session(owner_id, run_type), created=True)

    async def run(self, session_id: str) -> RunOutcome:
        return await self._run_locked(session_id, resume=False)

    async def resume(self, session_id: str) -> RunOutcome:
        return await self._run_locked(session_id, resume=True)

    def cancel(self, session_id: str, reason: str = "Cancelled by user") -> bool:
        return self._sessions.cancel(session_id, reason)

    async def _run_locked(self, session_id: str, resume: bool) -> RunOutcome:
        session = self._sessions.get_session(session_id)
        if not resume and session.status in INACTIVE_STATES | {ScanState.PAUSED}:
            return RunOutcome(session_id, Outcome.NOT_RUNNABLE, session.status, _error_of(session))

        with self._locks.scoped(
            self._lock_config.resource_type,
            session.owner_id,
            session_id,
            self._lock_config.timeout_ms,
            self._lock_config.renew_ratio,
        ) as lease:
            if lease is None:
                LOGGER.info("Owner %s is already being scanned; session %s left as is", session.owner_id, session_id)
                return RunOutcome(session_id, Outcome.LOCKED, session.status)

            if resume:
                session = self._sessions.resume(session_id)

            try:
                return await self._drive(session_id, lease)
            except asyncio.CancelledError:
                if self._sessions.cancel(session_id, "Scan task was cancelled"):
                    LOGGER.warning("Session %s cancelled by task cancellation", session_id)
                raise

    async def _drive(self, session_id: str, lease: LeaseHandle) -> RunOutcome:
        started = time.monotonic()
        try:
            session = self._sessions.get_session(session_id)
            while session.status in self._stages:
                stage = session.status
                stage_started = time.monotonic()
                target = await self._stages[stage](session, lease)
                duration_ms = int((time.monotonic() - stage_started) * 1000)

                lease.renew_if_due()
                session = self._ensure_running(session_id)
                if target == ScanState.COMPLETE:
                    elapsed_ms = int((time.monotonic() - started) * 1000)
                    self._sessions.update_stats(
                        session_id,
                        processing_time_ms=session.stats.processing_time_ms + elapsed_ms,
                    )
                session = self._sessions.transition(session_id, target)
                self._telemetry.stage_completed(session_id, stage, duration_ms, {"next": target.value})

            if session.status == ScanState.PAUSED:
                return RunOutcome(session_id, Outcome.PAUSED, session.status)
            return RunOutcome(
                session_id,
                Outcome.COMPLETED,
                session.status,
                candidate_ids=self._candidate_ids.get(session_id, ()),
            )
        except ScanCancelledError:
            session = self._sessions.get_session(session_id)
            LOGGER.info("Session %s stopped: cancelled while running", session_id)
            return RunOutcome(session_id, Outcome.CANCELLED, session.status, _error_of(session))
        except Exception as error:
            metadata = categorize_error(error)
            return self._fail(session_id, metadata)
        finally:
            self._candidate_ids.pop(session_id, None)

    def _fail(self, session_id: str, metadata: ErrorMetadata) -> RunOutcome:
        self._telemetry.error_recorded(session_id, metadata)
        if metadata.type == ErrorType.CRITICAL:
            self._sessions.record_diagnostic(session_id, metadata)

        session = self._sessions.get_session(session_id)
        if session.status == ScanState.FAILED:
            outcome = Outcome.CANCELLED if _is_cancelled(session) else Outcome.FAILED
            return RunOutcome(session_id, outcome, session.status, _error_of(session) or metadata)

        if not is_valid_transition(session.status, ScanState.FAILED):
            LOGGER.error(
                "Session %s hit [%s] %s while %s and cannot be marked failed",
                session_id,
                metadata.code,
                metadata.message,
                session.status.value,
            )
            return RunOutcome(session_id, Outcome.FAILED, session.status, metadata)

        LOGGER.error(
            "Session %s failed while %s: [%s/%s] %s",
            session_id,
            session.status.value,
            metadata.type.value,
            metadata.code,
            metadata.message,
        )
        session = self._sessions.transition(session_id, ScanState.FAILED, metadata)
        return RunOutcome(session_id, Outcome.FAILED, session.status, metadata)

    def _ensure_running(self, session_id: str) -> ScanSession:
        session = self._sessions.get_session(session_id)
        if session.status == ScanState.FAILED:
            raise ScanCancelledError(f"Session {session_id} was stopped while running")
        return session

    def _checkpoint(self, session_id: str, lease: LeaseHandle, **partial: Any) -> None:
        self._sessions.update_checkpoint(session_id, **partial)
        lease.renew_if_due()
        self._ensure_running(session_id)

    async def _call(
        self,
        session_id: str,
        operation: str,
        breaker: str,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Call a collaborator with breaker protection and in-place retries."""

        attempt = 0
        while True:
            try:
                return await self._breakers.call(breaker, fn)
            except (asyncio.CancelledError, ScanCancelledError):
                raise
            except Exception as error:
                metadata = categorize_error(error)
                if recovery_action(metadata, attempt) != RecoveryAction.RETRY:
                    raise StageFailure(operation, metadata) from error

                delay_ms = retry_delay_ms(
                    metadata,
                    attempt,
                    self._retry.base_delay_ms,
                    self._retry.max_delay_ms,
                    self._rng,
                )
                attempt += 1
                LOGGER.warning(
                    "%s failed with %s, retry %s in %sms",
                    operation,
                    metadata.code,
                    attempt,
                    delay_ms,
                )
                self._telemetry.retry_scheduled(session_id, operation, attempt, delay_ms, metadata)
                session = self._sessions.get_session(session_id)
                self._sessions.update_stats(session_id, retries=session.stats.retries + 1)
                await self._sleep(delay_ms / 1000)
                self._ensure_running(session_id)

    async def _stage_queued(self, session: ScanSession, lease: LeaseHandle) -> ScanState:
        return ScanState.CONNECTING

    async def _stage_connecting(self, session: ScanSession, lease: LeaseHandle) -> ScanState:
        try:
            await self._call(
                session.id,
                "collector.connect",
                COLLECTOR_BREAKER,
                lambda: self._collector.connect(session.owner_id),
            )
        except StageFailure as failure:
            if recovery_action(failure.metadata, 0) != RecoveryAction.SKIP:
                raise
            LOGGER.warning("Session %s: skipping connect after %s", session.id, failure.metadata.code)
            self._record_partial(session.id, 1)
        return ScanState.COLLECTING

    async def _stage_collecting(self, session: ScanSession, lease: LeaseHandle) -> ScanState:
        checkpoint = session.checkpoint
        cursor = checkpoint.page_token
        # no cursor means a fresh pass over the source
        collected = checkpoint.messages_collected if cursor is not None else 0
        pages = 0

        while True:
            try:
                page = await self._call(
                    session.id,
                    "collector.fetch_page",
                    COLLECTOR_BREAKER,
                    lambda: self._collector.fetch_page(session.owner_id, cursor, session.run_type),
                )
            except StageFailure as failure:
                if recovery_action(failure.metadata, 0) != RecoveryAction.SKIP:
                    raise
                LOGGER.warning(
                    "Session %s: page after %s unreadable (%s), continuing with %s messages",
                    session.id,
                    cursor or "start",
                    failure.metadata.code,
                    collected,
                )
                self._record_partial(session.id, 1)
                self._sessions.update_stats(session.id, total_messages_found=collected)
                self._checkpoint(session.id, lease, page_token=None, messages_collected=collected)
                return ScanState.FILTERING

            inserted = self._evidence.upsert_evidence(page.records)
            collected += len(page.records)
            pages += 1

            message_ids = [record.message_id for record in page.records if record.message_id]
            partial: dict[str, Any] = {"page_token": page.next_cursor, "messages_collected": collected}
            if message_ids:
                partial["last_processed_message_id"] = message_ids[-1]
            self._sessions.update_stats(session.id, total_messages_found=collected)
            self._checkpoint(session.id, lease, **partial)
            LOGGER.debug("Session %s page %s: %s records, %s new", session.id, pages, len(page.records), inserted)

            cursor = page.next_cursor
            if cursor is None:
                return ScanState.FILTERING
            budget = self._pipeline.max_pages_per_run
            if budget is not None and pages >= budget:
                LOGGER.info("Session %s pausing after %s pages", session.id, pages)
                return ScanState.PAUSED

    async def _stage_filtering(self, session: ScanSession, lease: LeaseHandle) -> ScanState:
        pending = self._evidence.count_unparsed(session.owner_id)
        self._sessions.update_stats(session.id, receipts_identified=pending)
        LOGGER.info("Session %s: %s records queued for parsing", session.id, pending)
        return ScanState.PARSING

    async def _stage_parsing(self, session: ScanSession, lease: LeaseHandle) -> ScanState:
        batches = 0
        processed = session.checkpoint.receipts_processed

        while True:
            batch = self._evidence.list_unparsed(session.owner_id, self._pipeline.parse_batch_size)
            if not batch:
                return ScanState.DETECTING

            batch_ids = [record.id for record in batch]
            try:
                result = await self._call(
                    session.id,
                    "parser.parse_batch",
                    PARSER_BREAKER,
                    lambda: self._parser.parse_batch(batch),
                )
            except StageFailure as failure:
                if recovery_action(failure.metadata, 0) != RecoveryAction.SKIP:
                    raise
                LOGGER.warning("Skipping parse batch of %s records: %s", len(batch), failure.metadata.message)
                self._evidence.mark_parse_failed(batch_ids)
                self._record_partial(session.id, len(batch))
            else:
                parsed_ids = {record.id for record in result.records}
                failed_ids = [item.evidence_id for item in result.failures]
                missing = [item for item in batch_ids if item not in parsed_ids and item not in failed_ids]
                self._evidence.save_parsed([record for record in result.records if record.id in batch_ids])
                if failed_ids or missing:
                    self._evidence.mark_parse_failed(failed_ids + missing)
                    self._record_partial(session.id, len(failed_ids) + len(missing))
                    for item in result.failures:
                        LOGGER.warning("Could not parse evidence %s: %s", item.evidence_id, item.error)
                if result.tokens_used or result.cost:
                    current = self._sessions.get_session(session.id).stats
                    self._sessions.update_stats(
                        session.id,
                        tokens_used=current.tokens_used + result.tokens_used,
                        api_cost=round(current.api_cost + result.cost, 6),
                    )
                    self._telemetry.cost_recorded(session.id, result.tokens_used, result.cost)

            processed += len(batch)
            batches += 1
            self._checkpoint(
                session.id,
                lease,
                receipts_processed=processed,
                last_processed_evidence_id=batch_ids[-1],
            )

            budget = self._pipeline.max_parse_batches_per_run
            if budget is not None and batches >= budget and self._evidence.count_unparsed(session.owner_id):
                LOGGER.info("Session %s pausing after %s parse batches", session.id, batches)
                return ScanState.PAUSED

    def _record_partial(self, session_id: str, count: int) -> None:
        stats = self._sessions.get_session(session_id).stats
        self._sessions.update_stats(session_id, partial_failures=stats.partial_failures + count)

    async def _stage_detecting(self, session: ScanSession, lease: LeaseHandle) -> ScanState:
        now = self._clock()
        report = self._detection.detect_active_subscriptions(session.owner_id, now)
        result = self._materializer.materialize_candidates(session.owner_id, report.active, now)
        self._candidate_ids[session.id] = tuple(result.candidate_ids)
        self._sessions.update_stats(session.id, subscriptions_detected=len(report.active))
        self._checkpoint(
            session.id,
            lease,
            candidates_created=session.checkpoint.candidates_created + result.created,
        )
        return ScanState.REVIEWING

    async def _stage_reviewing(self, session: ScanSession, lease: LeaseHandle) -> ScanState:
        return ScanState.COMPLETE


def _error_of(session: ScanSession) -> Optional[ErrorMetadata]:
    if session.error is None:
        return None
    return ErrorMetadata(
        type=session.error.type,
        code=session.error.code,
        message=session.error.message,
        retryable=False,
    )


def _is_cancelled(session: ScanSession) -> bool:
    return session.error is not None and session.error.code == ErrorCode.USER_CANCELLED.value
