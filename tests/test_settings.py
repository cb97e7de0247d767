from __future__ import annotations

import json

import pytest

from core.config import CadenceWindow, DetectionConfig
from settings import (
    build_breaker_config,
    build_detection_config,
    build_lock_config,
    build_pipeline_config,
    load_json_config,
)


def test_missing_config_file_means_defaults(tmp_path) -> None:
    assert load_json_config(str(tmp_path / "config.json")) == {}


def test_config_file_must_hold_an_object(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(["not", "an", "object"]), encoding="utf-8")

    with pytest.raises(ValueError):
        load_json_config(str(path))


def test_section_builders_fall_back_to_defaults() -> None:
    lock = build_lock_config({"timeout_ms": 60_000})
    breaker = build_breaker_config({})
    pipeline = build_pipeline_config({"max_pages_per_run": "3"})

    assert (lock.timeout_ms, lock.renew_ratio) == (60_000, 0.5)
    assert (breaker.threshold, breaker.cooldown_seconds) == (5, 60.0)
    assert pipeline.max_pages_per_run == 3
    assert pipeline.max_parse_batches_per_run is None
    assert pipeline.parse_batch_size == 40


def test_detection_overrides_apply_on_top_of_defaults() -> None:
    config = build_detection_config(
        {
            "windows": {"monthly": {"recent_days": 40}},
            "usd_rates": {"chf": 1.1},
            "extra_blocklist": ["Shop"],
            "trusted_merchants": ["Acme Cloud"],
            "aliases": {"Prime Video (UK)": "Amazon Prime"},
            "cancellation_grace_days": "5",
        }
    )
    defaults = DetectionConfig()

    assert config.windows["monthly"] == CadenceWindow(recent_days=40, stale_days=180, middle_confidence=0.75)
    assert config.windows["yearly"] == defaults.windows["yearly"]
    assert config.usd_rates["CHF"] == 1.1
    assert config.usd_rates["EUR"] == defaults.usd_rates["EUR"]
    assert "shop" in config.blocklist
    assert "paypal" in config.blocklist
    assert config.trusted_merchants == frozenset({"acme cloud"})
    assert config.aliases == {"prime video": "amazon prime"}
    assert config.cancellation_grace_days == 5
    assert config.recent_multi_confidence == defaults.recent_multi_confidence


def test_detection_config_rejects_unknown_window() -> None:
    with pytest.raises(ValueError):
        build_detection_config({"windows": {"daily": {"recent_days": 1}}})


def test_blocklist_can_be_replaced() -> None:
    config = build_detection_config({"blocklist": ["PayPal"]})

    assert config.blocklist == frozenset({"paypal"})
