"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any storage- or collaborator-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from core.errors import ErrorType
from core.states import ScanState


def utc_now() -> datetime:
    """Default clock used by every core component."""

    return datetime.now(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class RunType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class Cadence(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class ReceiptKind(str, Enum):
    CHARGE = "charge"
    REFUND = "refund"
    CREDIT = "credit"
    CANCELLATION = "cancellation"


class CandidateStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DISMISSED = "dismissed"


@dataclass(frozen=True)
class ResourceLock:
    """A leased, exclusive hold on one (resource_type, resource_id) pair."""

    id: str
    resource_type: str
    resource_id: str
    owner_id: str
    acquired_at: datetime
    expires_at: datetime
    renewal_token: str
    timeout_ms: int
    renewal_count: int = 0


@dataclass(frozen=True)
class LockResult:
    """Outcome of a renew or release call.

    Failures are values rather than exceptions: a stale token or an expired
    lease is an expected situation for a lease holder.
    """

    success: bool
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    held_ms: Optional[int] = None


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    locked_by: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class Checkpoint:
    """Resumable progress markers for a scan session."""

    page_token: Optional[str] = None
    last_processed_message_id: Optional[str] = None
    last_processed_evidence_id: Optional[str] = None
    messages_collected: int = 0
    receipts_processed: int = 0
    candidates_created: int = 0

    @classmethod
    def field_names(cls) -> set[str]:
        return {item.name for item in fields(cls)}

    def merged(self, partial: dict[str, Any]) -> "Checkpoint":
        unknown = set(partial) - self.field_names()
        if unknown:
            raise ValueError(f"Unknown checkpoint fields: {', '.join(sorted(unknown))}")
        return replace(self, **partial)


@dataclass
class SessionStats:
    total_messages_found: int = 0
    receipts_identified: int = 0
    subscriptions_detected: int = 0
    tokens_used: int = 0
    api_cost: float = 0.0
    processing_time_ms: int = 0
    retries: int = 0
    partial_failures: int = 0

    @classmethod
    def field_names(cls) -> set[str]:
        return {item.name for item in fields(cls)}

    def merged(self, partial: dict[str, Any]) -> "SessionStats":
        unknown = set(partial) - self.field_names()
        if unknown:
            raise ValueError(f"Unknown stats fields: {', '.join(sorted(unknown))}")
        return replace(self, **partial)


@dataclass
class SessionError:
    """Last classified failure of a session, as shown to the user."""

    type: ErrorType
    code: str
    message: str
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    diagnostic: Optional[dict[str, Any]] = None


@dataclass
class ScanSession:
    id: str
    owner_id: str
    run_type: RunType
    status: ScanState
    started_at: datetime
    updated_at: datetime
    checkpoint: Checkpoint = field(default_factory=Checkpoint)
    stats: SessionStats = field(default_factory=SessionStats)
    error: Optional[SessionError] = None
    retry_count: int = 0
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class EvidenceRecord:
    """One parsed message contributing merchant, amount and date data.

    Parser output is an untrusted hint; nothing here is treated as ground
    truth by the detection engine.
    """

    id: str
    owner_id: str
    received_at: datetime
    message_id: Optional[str] = None
    merchant_text: Optional[str] = None
    merchant_key: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    cadence_hint: Optional[Cadence] = None
    receipt_kind: ReceiptKind = ReceiptKind.CHARGE
    subject: str = ""
    body: str = ""
    parsed: bool = False
    candidate_id: Optional[str] = None
    subscription_id: Optional[str] = None

    @property
    def text(self) -> str:
        return f"{self.subject}\n{self.body}"


@dataclass(frozen=True)
class ConfirmedSubscription:
    id: str
    owner_id: str
    name: str


@dataclass
class DetectionCandidate:
    id: str
    owner_id: str
    merchant_key: str
    proposed_name: str
    amount: float
    currency: str
    cadence: Cadence
    next_billing: datetime
    confidence: float
    detection_reason: str
    created_at: datetime
    updated_at: datetime
    status: CandidateStatus = CandidateStatus.PENDING
    evidence_ids: list[str] = field(default_factory=list)
    reviewed_at: Optional[datetime] = None
