"""Evidence fingerprint helpers (core domain)."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone


def _collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def normalize_for_fingerprint(text: str) -> str:
    """Normalize text for deterministic fingerprinting."""

    return _collapse_whitespace(text).lower()


def evidence_fingerprint(owner_id: str, subject: str, body: str, received_at: datetime) -> str:
    """Stable id for evidence that arrives without a message id.

    Re-importing the same export yields the same ids, so storage can ignore
    the duplicates.
    """

    timestamp = received_at.astimezone(timezone.utc).isoformat(timespec="seconds")
    payload = "\n".join(
        [
            owner_id,
            normalize_for_fingerprint(subject),
            normalize_for_fingerprint(body),
            timestamp,
        ]
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def message_evidence_id(owner_id: str, message_id: str) -> str:
    return hashlib.sha256(f"{owner_id}\n{message_id}".encode("utf-8")).hexdigest()
