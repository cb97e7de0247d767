from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import pytest

from adapters.sqlite_storage import SQLiteStorage
from core.models import Cadence, EvidenceRecord, ReceiptKind

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
OWNER = "owner-1"


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage(tmp_path) -> SQLiteStorage:
    store = SQLiteStorage(str(tmp_path / "subscope.db"))
    store.init_db()
    return store


def _make_record(
    record_id: str,
    merchant: Optional[str],
    days_ago: float,
    amount: Optional[float] = 9.99,
    kind: ReceiptKind = ReceiptKind.CHARGE,
    subject: str = "",
    body: str = "",
    currency: Optional[str] = "USD",
    cadence_hint: Optional[Cadence] = None,
    owner_id: str = OWNER,
    parsed: bool = True,
    message_id: Optional[str] = None,
    candidate_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    now: datetime = NOW,
) -> EvidenceRecord:
    return EvidenceRecord(
        id=record_id,
        owner_id=owner_id,
        received_at=now - timedelta(days=days_ago),
        message_id=message_id,
        merchant_text=merchant,
        amount=amount,
        currency=currency,
        cadence_hint=cadence_hint,
        receipt_kind=kind,
        subject=subject,
        body=body,
        parsed=parsed,
        candidate_id=candidate_id,
        subscription_id=subscription_id,
    )


@pytest.fixture
def make_record() -> Callable[..., EvidenceRecord]:
    return _make_record
