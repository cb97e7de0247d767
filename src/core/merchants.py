"""Merchant name normalisation and grouping (core domain)."""

from __future__ import annotations

import re
from typing import Iterable, Mapping, Optional

from core.models import EvidenceRecord

_PROCESSOR_PREFIX = re.compile(r"^(?:paypal|pp|sq|tst|sp|gpay)\s*\*\s*", re.IGNORECASE)
_TRAILING_PARENS = re.compile(r"\s*\([^)]*\)\s*$")
_DOMAIN_SUFFIX = re.compile(r"\.(?:com|net|org|io|co|app|tv|ai|us|uk|de)\b", re.IGNORECASE)
_LEGAL_SUFFIX = re.compile(
    r"[\s,]+(?:inc|llc|ltd|limited|corp|corporation|gmbh|co)\.?$",
    re.IGNORECASE,
)
_PUNCTUATION = re.compile(r"[^\w\s+&]")


def _collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def strip_processor_prefix(name: str) -> str:
    return _PROCESSOR_PREFIX.sub("", name.strip())


def normalize_merchant_key(name: Optional[str], aliases: Optional[Mapping[str, str]] = None) -> str:
    """Return the grouping key for a raw merchant string.

    "PAYPAL *Netflix.com (US)" and "Netflix, Inc." both map to "netflix".
    Returns an empty string when nothing usable is left.
    """

    if not name:
        return ""

    key = _collapse_whitespace(name).lower()
    key = strip_processor_prefix(key)
    while True:
        stripped = _TRAILING_PARENS.sub("", key)
        if stripped == key:
            break
        key = stripped
    key = _DOMAIN_SUFFIX.sub("", key)
    while True:
        stripped = _LEGAL_SUFFIX.sub("", key)
        if stripped == key:
            break
        key = stripped
    key = _collapse_whitespace(_PUNCTUATION.sub(" ", key))

    if aliases:
        key = aliases.get(key, key)
    return key


def normalize_aliases(raw_aliases: Mapping[str, str]) -> dict[str, str]:
    """Normalise both sides of a user alias map so lookups hit grouping keys."""

    normalized: dict[str, str] = {}
    for source, target in raw_aliases.items():
        source_key = normalize_merchant_key(source)
        target_key = normalize_merchant_key(target)
        if source_key and target_key:
            normalized[source_key] = target_key
    return normalized


def is_blocked(key: str, blocklist: Iterable[str]) -> bool:
    return not key or key in set(blocklist)


def display_name(record: EvidenceRecord) -> str:
    """Human-facing merchant name taken from the record's raw merchant text."""

    raw = strip_processor_prefix(record.merchant_text or "")
    raw = _TRAILING_PARENS.sub("", raw)
    return _collapse_whitespace(raw) or (record.merchant_key or "")


def merchant_key_for(record: EvidenceRecord, aliases: Optional[Mapping[str, str]] = None) -> str:
    if record.merchant_key:
        key = normalize_merchant_key(record.merchant_key)
        return aliases.get(key, key) if aliases else key
    return normalize_merchant_key(record.merchant_text, aliases)


def group_by_merchant(
    records: Iterable[EvidenceRecord],
    aliases: Optional[Mapping[str, str]] = None,
    blocklist: Iterable[str] = (),
) -> dict[str, list[EvidenceRecord]]:
    """Group records by merchant key, dropping blocked keys.

    Groups come back in sorted key order, each sorted newest first.
    """

    blocked = set(blocklist)
    groups: dict[str, list[EvidenceRecord]] = {}
    for record in records:
        key = merchant_key_for(record, aliases)
        if is_blocked(key, blocked):
            continue
        groups.setdefault(key, []).append(record)

    return {
        key: sorted(groups[key], key=lambda item: (item.received_at, item.id), reverse=True)
        for key in sorted(groups)
    }
