"""Telemetry sink that writes pipeline events to the log."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from core.errors import ErrorMetadata
from core.states import ScanState

LOGGER = logging.getLogger(__name__)


class LoggingTelemetrySink:
    """TelemetrySink backed by stdlib logging, with running totals for the CLI."""

    def __init__(self) -> None:
        self.counters: Counter[str] = Counter()
        self.total_cost = 0.0

    def stage_completed(self, session_id: str, stage: ScanState, duration_ms: int, details: dict[str, Any]) -> None:
        self.counters[f"stage.{stage.value}"] += 1
        LOGGER.info("Session %s finished %s in %sms %s", session_id, stage.value, duration_ms, details)

    def retry_scheduled(
        self, session_id: str, operation: str, attempt: int, delay_ms: int, metadata: ErrorMetadata
    ) -> None:
        self.counters["retries"] += 1
        LOGGER.warning(
            "Session %s retrying %s (attempt %s) in %sms after %s",
            session_id,
            operation,
            attempt,
            delay_ms,
            metadata.code,
        )

    def error_recorded(self, session_id: str, metadata: ErrorMetadata) -> None:
        self.counters[f"errors.{metadata.type.value}"] += 1
        LOGGER.error("Session %s error [%s] %s", session_id, metadata.code, metadata.message)

    def cost_recorded(self, session_id: str, tokens_used: int, cost: float) -> None:
        self.counters["tokens"] += tokens_used
        self.total_cost += cost
        LOGGER.info("Session %s parser usage: %s tokens, cost %.4f", session_id, tokens_used, cost)
