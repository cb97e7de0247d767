"""Turns detection verdicts into persisted candidates (core domain)."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Iterable, Optional

from core.cadence import cadence_step
from core.config import DetectionConfig
from core.detection import ActiveSubscription
from core.merchants import normalize_merchant_key
from core.models import Cadence, CandidateStatus, DetectionCandidate, utc_now
from core.ports import CandidateStorePort, ConfirmedSubscriptionPort, EvidenceStorePort

LOGGER = logging.getLogger(__name__)


@dataclass
class MaterializeResult:
    created: int = 0
    updated: int = 0
    linked: int = 0
    dismissed: int = 0
    candidate_ids: list[str] = field(default_factory=list)


def next_billing_date(
    anchor: datetime,
    cadence: Cadence,
    now: datetime,
    explicit: Optional[datetime] = None,
    max_steps: int = 520,
) -> datetime:
    """First billing date after ``now``.

    Starts from an explicit date found in the evidence when there is one,
    otherwise from the anchor charge, stepping whole periods from the start
    so month ends do not drift.
    """

    if explicit is not None and explicit > now:
        return explicit

    start = explicit or anchor
    step = cadence_step(cadence)
    projected = start + step
    for periods in range(1, max_steps + 1):
        projected = start + step * periods
        if projected > now:
            break
    return projected


class CandidateMaterializer:
    def __init__(
        self,
        evidence: EvidenceStorePort,
        candidates: CandidateStorePort,
        confirmed: ConfirmedSubscriptionPort,
        config: Optional[DetectionConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self._evidence = evidence
        self._candidates = candidates
        self._confirmed = confirmed
        self._config = config or DetectionConfig()
        self._clock = clock
        self._new_id = id_factory

    def _dismiss(self, candidate: DetectionCandidate, now: datetime, why: str) -> None:
        self._candidates.set_candidate_status(candidate.id, CandidateStatus.DISMISSED, now)
        LOGGER.info("Dismissed candidate %s (%s): %s", candidate.id, candidate.proposed_name, why)

    def materialize_candidates(
        self,
        owner_id: str,
        active: Iterable[ActiveSubscription],
        now: Optional[datetime] = None,
    ) -> MaterializeResult:
        current = now or self._clock()
        result = MaterializeResult()
        active_by_key = {item.merchant_key: item for item in active}

        confirmed_by_key = {
            normalize_merchant_key(subscription.name, self._config.aliases): subscription
            for subscription in self._confirmed.list_confirmed(owner_id)
        }

        pending_by_key: dict[str, DetectionCandidate] = {}
        for candidate in sorted(
            self._candidates.list_candidates(owner_id, [CandidateStatus.PENDING]),
            key=lambda item: (item.created_at, item.id),
        ):
            if candidate.merchant_key in pending_by_key or candidate.merchant_key not in active_by_key:
                self._dismiss(candidate, current, "merchant no longer active")
                result.dismissed += 1
                continue
            pending_by_key[candidate.merchant_key] = candidate

        for key in sorted(active_by_key):
            item = active_by_key[key]
            subscription = confirmed_by_key.get(key)
            if subscription is not None:
                result.linked += self._evidence.link_evidence_to_subscription(item.evidence_ids, subscription.id)
                existing = pending_by_key.pop(key, None)
                if existing is not None:
                    self._dismiss(existing, current, f"already tracked as {subscription.name}")
                    result.dismissed += 1
                continue

            next_billing = next_billing_date(
                item.anchor_at,
                item.cadence,
                current,
                explicit=item.next_charge_hint,
                max_steps=self._config.max_advance_steps,
            )
            existing = pending_by_key.get(key)
            if existing is not None:
                candidate = replace(
                    existing,
                    proposed_name=item.name,
                    amount=item.amount,
                    currency=item.currency,
                    cadence=item.cadence,
                    next_billing=next_billing,
                    confidence=item.confidence,
                    detection_reason=item.reason,
                    evidence_ids=list(item.evidence_ids),
                    updated_at=current,
                )
                result.updated += 1
            else:
                candidate = DetectionCandidate(
                    id=self._new_id(),
                    owner_id=owner_id,
                    merchant_key=key,
                    proposed_name=item.name,
                    amount=item.amount,
                    currency=item.currency,
                    cadence=item.cadence,
                    next_billing=next_billing,
                    confidence=item.confidence,
                    detection_reason=item.reason,
                    created_at=current,
                    updated_at=current,
                    evidence_ids=list(item.evidence_ids),
                )
                result.created += 1
            self._candidates.save_candidate(candidate)
            result.candidate_ids.append(candidate.id)

        LOGGER.info(
            "Candidates for %s: created=%s updated=%s linked=%s dismissed=%s",
            owner_id,
            result.created,
            result.updated,
            result.linked,
            result.dismissed,
        )
        return result
