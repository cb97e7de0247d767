"""Billing cadence inference (core domain).

Signals are consulted in a fixed order and the first one that yields a
cadence wins: explicit wording, structured hint, interval regularity,
the amount heuristic, then the monthly default.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Sequence

from dateutil.relativedelta import relativedelta

from core.config import DetectionConfig
from core.models import Cadence, EvidenceRecord, ReceiptKind
from core.ports import EvidenceClassifier

WEEK = timedelta(days=7)
MONTH = timedelta(days=30)
YEAR = timedelta(days=365)

_NOMINAL_INTERVALS = (
    (Cadence.WEEKLY, WEEK),
    (Cadence.MONTHLY, MONTH),
    (Cadence.YEARLY, YEAR),
)


class CadenceSource(str, Enum):
    TEXT = "text"
    HINT = "hint"
    INTERVALS = "intervals"
    AMOUNT = "amount"
    DEFAULT = "default"


@dataclass(frozen=True)
class CadenceInference:
    cadence: Cadence
    source: CadenceSource


def cadence_step(cadence: Cadence) -> relativedelta:
    """Calendar-exact length of one billing period."""

    if cadence == Cadence.WEEKLY:
        return relativedelta(days=7)
    if cadence == Cadence.YEARLY:
        return relativedelta(years=1)
    return relativedelta(months=1)


def _intervals(records: Sequence[EvidenceRecord]) -> list[float]:
    ordered = sorted(records, key=lambda item: item.received_at, reverse=True)
    return [
        (ordered[index].received_at - ordered[index + 1].received_at).total_seconds()
        for index in range(len(ordered) - 1)
    ]


def _average_cadence(intervals: list[float], tolerance: float) -> Optional[Cadence]:
    if not intervals:
        return None
    average = sum(intervals) / len(intervals)
    for cadence, nominal in _NOMINAL_INTERVALS:
        seconds = nominal.total_seconds()
        if abs(average - seconds) < seconds * tolerance:
            return cadence
    return None


def cadence_from_intervals(records: Sequence[EvidenceRecord], tolerance: float = 0.2) -> Optional[Cadence]:
    """Cadence whose nominal period is within ``tolerance`` of the average gap."""

    if len(records) < 2:
        return None
    return _average_cadence(_intervals(records), tolerance)


def detect_recurring_pattern(
    records: Sequence[EvidenceRecord],
    tolerance: float = 0.2,
    consistency: float = 0.7,
) -> bool:
    """True when the gaps match a known cadence and are mostly regular.

    The average gap must sit within ``tolerance`` of a week, month or year,
    and at least ``consistency`` of the gaps must sit within ``tolerance``
    of that average.
    """

    if len(records) < 2:
        return False
    intervals = _intervals(records)
    if _average_cadence(intervals, tolerance) is None:
        return False
    average = sum(intervals) / len(intervals)
    regular = [gap for gap in intervals if abs(gap - average) < average * tolerance]
    return len(regular) / len(intervals) >= consistency


def to_usd(amount: float, currency: Optional[str], rates: dict[str, float]) -> Optional[float]:
    rate = rates.get((currency or "USD").upper())
    if rate is None:
        return None
    return amount * rate


def infer_cadence(
    records: Sequence[EvidenceRecord],
    classifier: EvidenceClassifier,
    config: DetectionConfig,
    now: datetime,
) -> CadenceInference:
    """Infer the billing cadence of one merchant group (records newest first)."""

    charges = [record for record in records if record.receipt_kind == ReceiptKind.CHARGE]

    for record in records:
        cadence = classifier.cadence_from_text(record.text)
        if cadence is not None:
            return CadenceInference(cadence, CadenceSource.TEXT)

    for record in records:
        if record.cadence_hint is not None:
            return CadenceInference(record.cadence_hint, CadenceSource.HINT)

    interval_cadence = cadence_from_intervals(charges, config.interval_tolerance)
    if interval_cadence is not None:
        return CadenceInference(interval_cadence, CadenceSource.INTERVALS)

    if len(charges) == 1:
        charge = charges[0]
        age = now - charge.received_at
        if charge.amount is not None and age > timedelta(days=config.yearly_amount_min_age_days):
            usd = to_usd(charge.amount, charge.currency, config.usd_rates)
            if usd is not None and usd >= config.yearly_amount_threshold_usd:
                return CadenceInference(Cadence.YEARLY, CadenceSource.AMOUNT)

    return CadenceInference(Cadence.MONTHLY, CadenceSource.DEFAULT)
