"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class LockConfig:
    """Lease settings for the per-owner scan lock."""

    timeout_ms: int = 5 * 60 * 1000
    renew_ratio: float = 0.5
    resource_type: str = "owner_scan"


@dataclass(frozen=True)
class RetryConfig:
    base_delay_ms: int = 1_000
    max_delay_ms: int = 30_000
    default_max_retries: int = 3


@dataclass(frozen=True)
class BreakerConfig:
    threshold: int = 5
    cooldown_seconds: float = 60.0


@dataclass(frozen=True)
class PipelineConfig:
    """Stage sizing and optional per-run budgets.

    A budget of None means the stage runs to completion in one go; otherwise
    the session pauses once the budget is spent and resumes later.
    """

    parse_batch_size: int = 40
    max_pages_per_run: Optional[int] = None
    max_parse_batches_per_run: Optional[int] = None
    session_retention_days: int = 30


@dataclass(frozen=True)
class CadenceWindow:
    """Recency windows for one cadence, in days or calendar months."""

    recent_days: int = 0
    recent_months: int = 0
    stale_days: int = 0
    stale_months: int = 0
    middle_confidence: float = 0.75


def _default_windows() -> dict[str, CadenceWindow]:
    return {
        "weekly": CadenceWindow(recent_months=1, stale_months=3, middle_confidence=0.70),
        "monthly": CadenceWindow(recent_days=45, stale_days=180, middle_confidence=0.75),
        "yearly": CadenceWindow(recent_months=15, stale_months=18, middle_confidence=0.85),
    }


def _default_usd_rates() -> dict[str, float]:
    return {
        "USD": 1.0,
        "EUR": 1.08,
        "GBP": 1.27,
        "CAD": 0.74,
        "AUD": 0.66,
        "INR": 0.012,
        "JPY": 0.0067,
    }


def _default_blocklist() -> frozenset[str]:
    return frozenset(
        {
            "paypal",
            "stripe",
            "square",
            "google pay",
            "apple pay",
            "venmo",
            "receipt",
            "invoice",
            "payment",
            "order",
            "billing",
            "noreply",
            "no reply",
            "unknown",
            "your receipt",
            "order confirmation",
            "payment received",
        }
    )


def _default_trusted() -> frozenset[str]:
    return frozenset(
        {
            "netflix",
            "spotify",
            "hulu",
            "disney plus",
            "youtube premium",
            "apple music",
            "icloud",
            "amazon prime",
            "hbo max",
            "dropbox",
            "adobe",
            "microsoft 365",
            "github",
            "notion",
            "chatgpt",
        }
    )


@dataclass(frozen=True)
class DetectionConfig:
    """Thresholds and heuristics used by the detection engine."""

    windows: dict[str, CadenceWindow] = field(default_factory=_default_windows)
    recent_multi_confidence: float = 0.95
    recent_single_confidence: float = 0.90
    cancellation_grace_days: int = 3
    interval_tolerance: float = 0.2
    interval_consistency: float = 0.7
    yearly_amount_threshold_usd: float = 50.0
    yearly_amount_min_age_days: int = 90
    usd_rates: dict[str, float] = field(default_factory=_default_usd_rates)
    blocklist: frozenset[str] = field(default_factory=_default_blocklist)
    trusted_merchants: frozenset[str] = field(default_factory=_default_trusted)
    aliases: dict[str, str] = field(default_factory=dict)
    max_advance_steps: int = 520
