"""Temporal pattern detection over parsed evidence (core domain).

Given every eligible evidence record for one owner, decide which merchants
look like currently-active recurring subscriptions. The engine only reads;
turning its verdicts into candidates is the materializer's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence

from dateutil.relativedelta import relativedelta

from core.cadence import CadenceInference, CadenceSource, detect_recurring_pattern, infer_cadence
from core.config import CadenceWindow, DetectionConfig
from core.merchants import display_name, group_by_merchant
from core.models import Cadence, CandidateStatus, EvidenceRecord, ReceiptKind, utc_now
from core.ports import CandidateStorePort, EvidenceClassifier, EvidenceStorePort

LOGGER = logging.getLogger(__name__)


class Classification(str, Enum):
    ACTIVE_RECENT = "active_recent"
    ACTIVE_RECURRING = "active_recurring"
    CANCELLED = "cancelled"
    CANCELLED_BY_AGE = "cancelled_by_age"
    UNCERTAIN = "uncertain"
    NO_CHARGE = "no_charge"


ACTIVE_CLASSIFICATIONS = frozenset({Classification.ACTIVE_RECENT, Classification.ACTIVE_RECURRING})


@dataclass(frozen=True)
class ActiveSubscription:
    """A merchant classified as an active subscription."""

    merchant_key: str
    name: str
    amount: float
    currency: str
    cadence: Cadence
    cadence_source: CadenceSource
    anchor_at: datetime
    confidence: float
    classification: Classification
    receipt_count: int
    evidence_ids: tuple[str, ...]
    reason: str
    next_charge_hint: Optional[datetime] = None


@dataclass(frozen=True)
class GroupAssessment:
    merchant_key: str
    classification: Classification
    receipt_count: int
    cadence: Optional[Cadence] = None
    cadence_source: Optional[CadenceSource] = None
    anchor_at: Optional[datetime] = None
    note: str = ""


@dataclass(frozen=True)
class DetectionReport:
    owner_id: str
    generated_at: datetime
    active: list[ActiveSubscription] = field(default_factory=list)
    assessments: list[GroupAssessment] = field(default_factory=list)


def _window_delta(days: int, months: int) -> relativedelta:
    return relativedelta(months=months, days=days)


def recent_boundary(window: CadenceWindow, now: datetime) -> datetime:
    return now - _window_delta(window.recent_days, window.recent_months)


def stale_boundary(window: CadenceWindow, now: datetime) -> datetime:
    return now - _window_delta(window.stale_days, window.stale_months)


def is_cancellation_record(record: EvidenceRecord, classifier: EvidenceClassifier) -> bool:
    """Explicitly flagged, or cancellation wording without billing-confirmation wording."""

    if record.receipt_kind == ReceiptKind.CANCELLATION:
        return True
    text = record.text
    return classifier.is_cancellation(text) and not classifier.has_billing_confirmation(text)


def _is_genuine_charge(record: EvidenceRecord, classifier: EvidenceClassifier) -> bool:
    return (
        record.receipt_kind == ReceiptKind.CHARGE
        and record.amount is not None
        and record.amount > 0
        and not classifier.is_cancellation(record.text)
    )


def _has_support(
    key: str,
    records: Sequence[EvidenceRecord],
    anchor: EvidenceRecord,
    inference: CadenceInference,
    classifier: EvidenceClassifier,
    config: DetectionConfig,
) -> bool:
    if len(records) >= 2:
        return True
    if inference.cadence == Cadence.YEARLY:
        return inference.source == CadenceSource.TEXT
    if inference.cadence == Cadence.MONTHLY:
        return classifier.has_strong_subject(anchor.subject) or key in config.trusted_merchants
    return False


def _suppressing_cancellation(
    anchor: EvidenceRecord,
    cancellations: Sequence[EvidenceRecord],
    classifier: EvidenceClassifier,
    config: DetectionConfig,
) -> Optional[EvidenceRecord]:
    earliest = anchor.received_at - timedelta(days=config.cancellation_grace_days)
    for record in cancellations:
        if record.received_at < earliest:
            continue
        if classifier.stays_active_until_period_end(record.text):
            continue
        return record
    return None


def _next_charge_hint(
    records: Sequence[EvidenceRecord], classifier: EvidenceClassifier, anchor: EvidenceRecord
) -> Optional[datetime]:
    for record in records:
        found = classifier.next_charge_date(record.text, anchor.received_at)
        if found is not None:
            return found
    return None


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def _reason(classification: Classification, inference: CadenceInference, anchor: EvidenceRecord, count: int) -> str:
    day = anchor.received_at.date().isoformat()
    cadence = inference.cadence.value
    if classification == Classification.ACTIVE_RECENT:
        return (
            f"Recent {cadence} charge on {day} with {_plural(count, 'receipt')} "
            f"(cadence from {inference.source.value})"
        )
    return (
        f"Recurring {cadence} payment pattern across {_plural(count, 'receipt')}, "
        f"last charge on {day} (cadence from {inference.source.value})"
    )


def assess_group(
    key: str,
    records: Sequence[EvidenceRecord],
    cancellations: Sequence[EvidenceRecord],
    classifier: EvidenceClassifier,
    config: DetectionConfig,
    now: datetime,
) -> tuple[GroupAssessment, Optional[ActiveSubscription]]:
    """Classify one merchant group (records newest first)."""

    count = len(records)
    charges = [record for record in records if record.receipt_kind == ReceiptKind.CHARGE]
    if not charges:
        return GroupAssessment(key, Classification.NO_CHARGE, count, note="no charge evidence"), None

    anchor = charges[0]
    inference = infer_cadence(records, classifier, config, now)
    window = config.windows[inference.cadence.value]

    def assessment(classification: Classification, note: str = "") -> GroupAssessment:
        return GroupAssessment(
            merchant_key=key,
            classification=classification,
            receipt_count=count,
            cadence=inference.cadence,
            cadence_source=inference.source,
            anchor_at=anchor.received_at,
            note=note,
        )

    cancelled_by = _suppressing_cancellation(anchor, cancellations, classifier, config)
    if cancelled_by is not None:
        note = f"cancellation on {cancelled_by.received_at.date().isoformat()}"
        return assessment(Classification.CANCELLED, note), None

    one_time = classifier.is_one_time(anchor.text) and not classifier.has_recurring_language(anchor.text)
    supported = _has_support(key, records, anchor, inference, classifier, config)

    if anchor.received_at >= recent_boundary(window, now) and supported and not one_time:
        classification = Classification.ACTIVE_RECENT
        if count >= 2:
            confidence = config.recent_multi_confidence
        else:
            confidence = config.recent_single_confidence
    elif anchor.received_at < stale_boundary(window, now):
        return assessment(Classification.CANCELLED_BY_AGE, "last charge older than the stale window"), None
    elif detect_recurring_pattern(charges, config.interval_tolerance, config.interval_consistency) and any(
        _is_genuine_charge(charge, classifier) for charge in charges
    ):
        classification = Classification.ACTIVE_RECURRING
        confidence = window.middle_confidence
    else:
        if one_time:
            note = "one-time purchase wording"
        elif not supported:
            note = "not enough supporting receipts"
        else:
            note = "no regular billing pattern"
        return assessment(Classification.UNCERTAIN, note), None

    active = ActiveSubscription(
        merchant_key=key,
        name=display_name(anchor),
        amount=float(anchor.amount or 0.0),
        currency=(anchor.currency or "USD").upper(),
        cadence=inference.cadence,
        cadence_source=inference.source,
        anchor_at=anchor.received_at,
        confidence=confidence,
        classification=classification,
        receipt_count=count,
        evidence_ids=tuple(record.id for record in records),
        reason=_reason(classification, inference, anchor, count),
        next_charge_hint=_next_charge_hint(records, classifier, anchor),
    )
    return assessment(classification), active


def detect(
    owner_id: str,
    records: Iterable[EvidenceRecord],
    classifier: EvidenceClassifier,
    config: DetectionConfig,
    now: datetime,
    excluded_candidate_ids: Iterable[str] = (),
) -> DetectionReport:
    """Run detection over an owner's records.

    Records linked to a confirmed subscription or consumed by one of
    ``excluded_candidate_ids`` are ignored.
    """

    excluded = set(excluded_candidate_ids)
    eligible = [
        record
        for record in records
        if record.owner_id == owner_id
        and record.subscription_id is None
        and (record.candidate_id is None or record.candidate_id not in excluded)
    ]

    groups = group_by_merchant(
        (record for record in eligible if record.amount is not None),
        config.aliases,
        config.blocklist,
    )
    cancellation_groups = group_by_merchant(
        (record for record in eligible if is_cancellation_record(record, classifier)),
        config.aliases,
        config.blocklist,
    )

    active: list[ActiveSubscription] = []
    assessments: list[GroupAssessment] = []
    for key, group in groups.items():
        result, subscription = assess_group(key, group, cancellation_groups.get(key, []), classifier, config, now)
        assessments.append(result)
        if subscription is not None:
            active.append(subscription)
        LOGGER.debug("Merchant %s: %s %s", key, result.classification.value, result.note)

    return DetectionReport(owner_id=owner_id, generated_at=now, active=active, assessments=assessments)


class DetectionEngine:
    """Reads eligible evidence from storage and runs detection."""

    def __init__(
        self,
        evidence: EvidenceStorePort,
        candidates: CandidateStorePort,
        classifier: EvidenceClassifier,
        config: Optional[DetectionConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._evidence = evidence
        self._candidates = candidates
        self._classifier = classifier
        self._config = config or DetectionConfig()
        self._clock = clock

    def detect_active_subscriptions(self, owner_id: str, now: Optional[datetime] = None) -> DetectionReport:
        current = now or self._clock()
        accepted = self._candidates.list_candidates(owner_id, [CandidateStatus.ACCEPTED])
        report = detect(
            owner_id,
            self._evidence.list_detection_evidence(owner_id),
            self._classifier,
            self._config,
            current,
            excluded_candidate_ids=[candidate.id for candidate in accepted],
        )
        LOGGER.info(
            "Detection for %s: %s merchants, %s active",
            owner_id,
            len(report.assessments),
            len(report.active),
        )
        return report
