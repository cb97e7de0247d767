"""File-based evidence collector and hint parser.

The collector pages through a JSON export of receipt messages; the parser
keeps the hints the export already carries and fills the gaps from the
message text. Together they let the CLI run full scans without a mailbox.

Accepted export shape: a list of objects, or ``{"messages": [...]}``, where
each object may carry ``id``, ``message_id``, ``received_at``, ``subject``,
``body``, ``merchant``, ``amount``, ``currency``, ``cadence`` and ``kind``.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from dateutil import parser as date_parser

from core.fingerprints import evidence_fingerprint, message_evidence_id
from core.models import Cadence, EvidenceRecord, ReceiptKind, RunType
from core.ports import EvidencePage, ParseBatchResult, ParseFailure

LOGGER = logging.getLogger(__name__)

_SUBJECT_MERCHANT = re.compile(
    r"(?:your|from)\s+([A-Z][\w&+.\s]+?)\s+(?:receipt|invoice|payment|subscription|membership)",
    re.IGNORECASE,
)
_AMOUNT = re.compile(r"(?:total|amount|charged|paid)[\s:]*(?:[$€£]|USD|EUR|GBP)?\s*(\d+(?:[.,]\d{1,2})?)", re.IGNORECASE)
_CURRENCY_SYMBOLS = {"$": "USD", "€": "EUR", "£": "GBP"}


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(raw / 1000 if raw > 10**11 else raw, tz=timezone.utc)
    parsed = date_parser.parse(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _optional_float(raw: Any) -> Optional[float]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, str):
        raw = raw.replace(",", ".").strip().lstrip("$€£")
    return float(raw)


def record_from_entry(owner_id: str, entry: dict[str, Any]) -> EvidenceRecord:
    """Build an unparsed evidence record from one export entry."""

    received_at = _parse_timestamp(entry["received_at"])
    subject = str(entry.get("subject") or "")
    body = str(entry.get("body") or "")
    message_id = entry.get("message_id")
    if entry.get("id"):
        record_id = str(entry["id"])
    elif message_id:
        record_id = message_evidence_id(owner_id, str(message_id))
    else:
        record_id = evidence_fingerprint(owner_id, subject, body, received_at)

    cadence = entry.get("cadence")
    return EvidenceRecord(
        id=record_id,
        owner_id=owner_id,
        received_at=received_at,
        message_id=str(message_id) if message_id else None,
        merchant_text=entry.get("merchant") or None,
        amount=_optional_float(entry.get("amount")),
        currency=(entry.get("currency") or None),
        cadence_hint=Cadence(cadence) if cadence else None,
        receipt_kind=ReceiptKind(entry.get("kind") or ReceiptKind.CHARGE.value),
        subject=subject,
        body=body,
    )


class JsonEvidenceCollector:
    """EvidenceCollector over a JSON export file."""

    def __init__(self, path: str, page_size: int = 50) -> None:
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self._path = path
        self._page_size = page_size
        self._entries: Optional[list[dict[str, Any]]] = None

    def _load(self) -> list[dict[str, Any]]:
        if self._entries is None:
            with open(self._path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
            if isinstance(data, dict):
                data = data.get("messages", [])
            if not isinstance(data, list):
                raise ValueError(f"Invalid format in evidence file {self._path}: expected a list of messages")
            self._entries = data
        return self._entries

    async def connect(self, owner_id: str) -> None:
        if not os.path.exists(self._path):
            raise FileNotFoundError(f"Evidence file not found: {self._path}")
        entries = self._load()
        LOGGER.info("Evidence file %s opened for %s (%s messages)", self._path, owner_id, len(entries))

    async def fetch_page(self, owner_id: str, cursor: Optional[str], run_type: RunType) -> EvidencePage:
        entries = self._load()
        start = int(cursor) if cursor else 0
        chunk = entries[start : start + self._page_size]

        records: list[EvidenceRecord] = []
        for offset, entry in enumerate(chunk, start=start):
            try:
                records.append(record_from_entry(owner_id, entry))
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Skipping evidence entry %s in %s: %s", offset, self._path, exc)

        end = start + len(chunk)
        next_cursor = str(end) if end < len(entries) else None
        return EvidencePage(records=records, next_cursor=next_cursor)


def _currency_from_text(text: str) -> Optional[str]:
    for symbol, code in _CURRENCY_SYMBOLS.items():
        if symbol in text:
            return code
    found = re.search(r"\b(USD|EUR|GBP|CAD|AUD|INR|JPY)\b", text)
    return found.group(1) if found else None


class HintPassthroughParser:
    """EvidenceParser that trusts export hints and fills gaps from the text."""

    async def parse_batch(self, records: Sequence[EvidenceRecord]) -> ParseBatchResult:
        parsed: list[EvidenceRecord] = []
        failures: list[ParseFailure] = []
        for record in records:
            try:
                parsed.append(self._parse(record))
            except ValueError as exc:
                failures.append(ParseFailure(evidence_id=record.id, error=str(exc)))
        return ParseBatchResult(records=parsed, failures=failures)

    def _parse(self, record: EvidenceRecord) -> EvidenceRecord:
        merchant = record.merchant_text
        if not merchant:
            found = _SUBJECT_MERCHANT.search(record.subject)
            merchant = found.group(1).strip() if found else None

        amount = record.amount
        if amount is None:
            found = _AMOUNT.search(record.text)
            amount = float(found.group(1).replace(",", ".")) if found else None

        currency = record.currency or _currency_from_text(record.text)
        if amount is not None and currency is None:
            currency = "USD"

        return replace(
            record,
            merchant_text=merchant,
            amount=amount,
            currency=currency.upper() if currency else None,
            parsed=True,
        )
