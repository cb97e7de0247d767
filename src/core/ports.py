"""Ports (interfaces) used by the core.

Ports define the minimal contracts for storage, collaborators and telemetry
so that the core can be reused with different backends. Every storage method
is a single atomic operation on the backing store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol, Sequence

from core.errors import ErrorMetadata
from core.models import (
    Cadence,
    CandidateStatus,
    Checkpoint,
    ConfirmedSubscription,
    DetectionCandidate,
    EvidenceRecord,
    ResourceLock,
    RunType,
    ScanSession,
    SessionStats,
)
from core.states import ScanState


class LockStorePort(Protocol):
    """Lock table operations required by the lock manager."""

    def insert_lock_if_free(self, lock: ResourceLock) -> bool:
        """Drop expired locks for the resource and insert ``lock`` unless a live one exists."""
        ...

    def get_lock(self, lock_id: str) -> Optional[ResourceLock]:
        ...

    def find_live_lock(self, resource_type: str, resource_id: str, now: datetime) -> Optional[ResourceLock]:
        ...

    def extend_lock(self, lock_id: str, renewal_token: str, now: datetime, expires_at: datetime) -> bool:
        """Push the lease forward when the token matches and the lease is still live."""
        ...

    def delete_lock(self, lock_id: str, renewal_token: str) -> bool:
        ...

    def delete_expired_locks(self, now: datetime) -> int:
        ...

    def delete_owner_locks(self, owner_id: str) -> int:
        ...


class SessionStorePort(Protocol):
    """Scan session persistence required by the state machine."""

    def insert_session(self, session: ScanSession) -> None:
        ...

    def get_session(self, session_id: str) -> Optional[ScanSession]:
        ...

    def compare_and_set_session(self, session: ScanSession, expected_status: ScanState) -> bool:
        """Write the whole session only if its stored status still equals ``expected_status``."""
        ...

    def save_checkpoint(self, session_id: str, checkpoint: Checkpoint, updated_at: datetime) -> None:
        ...

    def save_stats(self, session_id: str, stats: SessionStats, updated_at: datetime) -> None:
        ...

    def find_active_session(self, owner_id: str) -> Optional[ScanSession]:
        ...

    def latest_session(self, owner_id: str) -> Optional[ScanSession]:
        ...

    def has_completed_session(self, owner_id: str, run_type: RunType) -> bool:
        ...

    def delete_sessions_before(self, cutoff: datetime, statuses: Iterable[ScanState]) -> int:
        ...

    def log_error(self, session_id: str, metadata: ErrorMetadata, logged_at: datetime) -> None:
        ...


class EvidenceStorePort(Protocol):
    """Evidence persistence required by the orchestrator and detection engine."""

    def upsert_evidence(self, records: Sequence[EvidenceRecord]) -> int:
        """Insert new records, ignoring ones already stored; returns the number inserted."""
        ...

    def list_unparsed(self, owner_id: str, limit: int) -> list[EvidenceRecord]:
        ...

    def count_unparsed(self, owner_id: str) -> int:
        ...

    def save_parsed(self, records: Sequence[EvidenceRecord]) -> None:
        ...

    def mark_parse_failed(self, evidence_ids: Sequence[str]) -> None:
        ...

    def list_detection_evidence(self, owner_id: str) -> list[EvidenceRecord]:
        """Parsed records for the owner that carry a merchant."""
        ...

    def link_evidence_to_subscription(self, evidence_ids: Sequence[str], subscription_id: str) -> int:
        ...


class CandidateStorePort(Protocol):
    def list_candidates(
        self, owner_id: str, statuses: Optional[Iterable[CandidateStatus]] = None
    ) -> list[DetectionCandidate]:
        ...

    def save_candidate(self, candidate: DetectionCandidate) -> None:
        """Upsert the candidate and link every id in ``evidence_ids`` to it atomically."""
        ...

    def set_candidate_status(self, candidate_id: str, status: CandidateStatus, reviewed_at: datetime) -> None:
        ...


class ConfirmedSubscriptionPort(Protocol):
    def list_confirmed(self, owner_id: str) -> list[ConfirmedSubscription]:
        ...


@dataclass(frozen=True)
class EvidencePage:
    records: list[EvidenceRecord]
    next_cursor: Optional[str] = None


@dataclass(frozen=True)
class ParseFailure:
    evidence_id: str
    error: str


@dataclass(frozen=True)
class ParseBatchResult:
    records: list[EvidenceRecord]
    tokens_used: int = 0
    cost: float = 0.0
    failures: list[ParseFailure] = field(default_factory=list)


class EvidenceCollector(Protocol):
    """Source of raw evidence records (a mailbox, an export file, ...)."""

    async def connect(self, owner_id: str) -> None:
        ...

    async def fetch_page(self, owner_id: str, cursor: Optional[str], run_type: RunType) -> EvidencePage:
        ...


class EvidenceParser(Protocol):
    """Fills merchant, amount and cadence hints on collected records."""

    async def parse_batch(self, records: Sequence[EvidenceRecord]) -> ParseBatchResult:
        ...


class TelemetrySink(Protocol):
    def stage_completed(self, session_id: str, stage: ScanState, duration_ms: int, details: dict[str, Any]) -> None:
        ...

    def retry_scheduled(
        self, session_id: str, operation: str, attempt: int, delay_ms: int, metadata: ErrorMetadata
    ) -> None:
        ...

    def error_recorded(self, session_id: str, metadata: ErrorMetadata) -> None:
        ...

    def cost_recorded(self, session_id: str, tokens_used: int, cost: float) -> None:
        ...


class EvidenceClassifier(Protocol):
    """Text signals the detection engine reads from subject and body."""

    def is_cancellation(self, text: str) -> bool:
        ...

    def has_billing_confirmation(self, text: str) -> bool:
        ...

    def stays_active_until_period_end(self, text: str) -> bool:
        ...

    def is_one_time(self, text: str) -> bool:
        ...

    def has_recurring_language(self, text: str) -> bool:
        ...

    def has_strong_subject(self, subject: str) -> bool:
        ...

    def cadence_from_text(self, text: str) -> Optional[Cadence]:
        ...

    def next_charge_date(self, text: str, reference: datetime) -> Optional[datetime]:
        ...
