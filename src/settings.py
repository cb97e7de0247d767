"""Static configuration for subscope.

All user-editable settings (storage, locks, retries, pipeline budgets,
detection heuristics, text signals, logging) live in a single optional JSON
file; defaults apply to anything it leaves out.
"""

import json
import os
from dataclasses import replace
from typing import Any, Optional

from dotenv import load_dotenv

from core.config import (
    BreakerConfig,
    DetectionConfig,
    LockConfig,
    PipelineConfig,
    RetryConfig,
)
from core.merchants import normalize_aliases, normalize_merchant_key

load_dotenv()

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# config.json sits at the project root unless SUBSCOPE_CONFIG points elsewhere.
CONFIG_PATH = os.getenv("SUBSCOPE_CONFIG") or os.path.join(PROJECT_ROOT, "config.json")


def load_json_config(path: str) -> dict:
    """Load config.json; a missing file means all defaults."""

    if not os.path.exists(path):
        return {}

    with open(path, "r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError(f"Config file must hold a JSON object: {path}")
    return data


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def build_lock_config(raw: dict) -> LockConfig:
    defaults = LockConfig()
    return LockConfig(
        timeout_ms=int(raw.get("timeout_ms", defaults.timeout_ms)),
        renew_ratio=float(raw.get("renew_ratio", defaults.renew_ratio)),
        resource_type=str(raw.get("resource_type", defaults.resource_type)),
    )


def build_retry_config(raw: dict) -> RetryConfig:
    defaults = RetryConfig()
    return RetryConfig(
        base_delay_ms=int(raw.get("base_delay_ms", defaults.base_delay_ms)),
        max_delay_ms=int(raw.get("max_delay_ms", defaults.max_delay_ms)),
        default_max_retries=int(raw.get("default_max_retries", defaults.default_max_retries)),
    )


def build_breaker_config(raw: dict) -> BreakerConfig:
    defaults = BreakerConfig()
    return BreakerConfig(
        threshold=int(raw.get("threshold", defaults.threshold)),
        cooldown_seconds=float(raw.get("cooldown_seconds", defaults.cooldown_seconds)),
    )


def build_pipeline_config(raw: dict) -> PipelineConfig:
    defaults = PipelineConfig()
    return PipelineConfig(
        parse_batch_size=int(raw.get("parse_batch_size", defaults.parse_batch_size)),
        max_pages_per_run=_optional_int(raw.get("max_pages_per_run")),
        max_parse_batches_per_run=_optional_int(raw.get("max_parse_batches_per_run")),
        session_retention_days=int(raw.get("session_retention_days", defaults.session_retention_days)),
    )


def build_detection_config(raw: dict) -> DetectionConfig:
    """Apply the ``detection`` block on top of the built-in heuristics."""

    config = DetectionConfig()

    windows = dict(config.windows)
    for cadence, overrides in (raw.get("windows") or {}).items():
        if cadence not in windows:
            raise ValueError(f"Unknown cadence window: {cadence}")
        windows[cadence] = replace(windows[cadence], **overrides)

    rates = dict(config.usd_rates)
    rates.update({code.upper(): float(rate) for code, rate in (raw.get("usd_rates") or {}).items()})

    blocklist = config.blocklist
    if "blocklist" in raw:
        blocklist = frozenset(normalize_merchant_key(item) for item in raw["blocklist"])
    blocklist = blocklist | frozenset(normalize_merchant_key(item) for item in raw.get("extra_blocklist", []))

    trusted = config.trusted_merchants
    if "trusted_merchants" in raw:
        trusted = frozenset(normalize_merchant_key(item) for item in raw["trusted_merchants"])

    scalar_fields = {
        "recent_multi_confidence": float,
        "recent_single_confidence": float,
        "cancellation_grace_days": int,
        "interval_tolerance": float,
        "interval_consistency": float,
        "yearly_amount_threshold_usd": float,
        "yearly_amount_min_age_days": int,
        "max_advance_steps": int,
    }
    scalars = {name: cast(raw[name]) for name, cast in scalar_fields.items() if name in raw}

    return replace(
        config,
        windows=windows,
        usd_rates=rates,
        blocklist=blocklist,
        trusted_merchants=trusted,
        aliases=normalize_aliases(raw.get("aliases") or {}),
        **scalars,
    )


_CONFIG = load_json_config(CONFIG_PATH)

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

_storage = _CONFIG.get("storage", {})
# Where to store the SQLite database; SUBSCOPE_DB_PATH wins over config.json.
DB_PATH = os.getenv("SUBSCOPE_DB_PATH") or _storage.get("db_path") or os.path.join(PROJECT_ROOT, "subscope.db")
if not os.path.isabs(DB_PATH):
    DB_PATH = os.path.join(PROJECT_ROOT, DB_PATH)
DB_BUSY_TIMEOUT_MS = int(_storage.get("busy_timeout_ms", 5_000))

LOCK_CONFIG = build_lock_config(_CONFIG.get("locks", {}))
RETRY_CONFIG = build_retry_config(_CONFIG.get("retry", {}))
BREAKER_CONFIG = build_breaker_config(_CONFIG.get("circuit_breaker", {}))

_pipeline = _CONFIG.get("pipeline", {})
PIPELINE_CONFIG = build_pipeline_config(_pipeline)
# Page size of the JSON evidence collector used by the CLI.
EVIDENCE_PAGE_SIZE = int(_pipeline.get("page_size", 50))

DETECTION_CONFIG = build_detection_config(_CONFIG.get("detection", {}))

# Per-signal keyword/regex overrides for the evidence classifier.
SIGNALS_CONFIG = _CONFIG.get("signals", {})

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})

# Environment variable names whose values are masked in log output.
REDACT = _CONFIG.get("redact", {})
