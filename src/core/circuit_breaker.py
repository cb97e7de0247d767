"""Per-dependency circuit breakers (core domain).

A breaker opens after a run of consecutive failures and stays open for a
cooldown; the reset is evaluated lazily when someone checks it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from core.errors import CircuitOpenError
from core.models import utc_now

LOGGER = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_COOLDOWN_SECONDS = 60


@dataclass(frozen=True)
class CircuitBreakerState:
    name: str
    failures: int = 0
    is_open: bool = False
    last_failure_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None


class CircuitBreakerRegistry:
    """Holds breaker state for every named dependency of one host."""

    def __init__(
        self,
        threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self._threshold = threshold
        self._cooldown = timedelta(seconds=cooldown_seconds)
        self._clock = clock
        self._states: dict[str, CircuitBreakerState] = {}

    def state(self, name: str) -> CircuitBreakerState:
        return self._states.get(name, CircuitBreakerState(name=name))

    def is_open(self, name: str) -> bool:
        state = self._states.get(name)
        if state is None or not state.is_open:
            return False

        if state.next_retry_at is not None and self._clock() >= state.next_retry_at:
            LOGGER.info("Circuit %s cooled down, closing", name)
            self._states[name] = CircuitBreakerState(name=name)
            return False
        return True

    def record_success(self, name: str) -> None:
        state = self._states.get(name)
        if state is None:
            return
        if state.failures or state.is_open:
            self._states[name] = CircuitBreakerState(name=name)

    def record_failure(self, name: str) -> CircuitBreakerState:
        now = self._clock()
        state = self.state(name)
        failures = state.failures + 1
        updated = replace(state, failures=failures, last_failure_at=now)
        if failures >= self._threshold and not state.is_open:
            updated = replace(updated, is_open=True, next_retry_at=now + self._cooldown)
            LOGGER.warning(
                "Circuit %s opened after %s consecutive failures (retry after %s)",
                name,
                failures,
                updated.next_retry_at.isoformat(),
            )
        self._states[name] = updated
        return updated

    def reset(self, name: Optional[str] = None) -> None:
        if name is None:
            self._states.clear()
        else:
            self._states.pop(name, None)

    async def call(
        self,
        name: str,
        fn: Callable[[], Awaitable[Any]],
        fallback: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> Any:
        """Run ``fn`` behind the named breaker.

        While the breaker is open the call short-circuits to ``fallback`` or
        raises CircuitOpenError. Failures of ``fn`` are recorded and re-raised.
        """

        if self.is_open(name):
            if fallback is not None:
                return await fallback()
            state = self.state(name)
            retry_at = state.next_retry_at.isoformat() if state.next_retry_at else "later"
            raise CircuitOpenError(f"Circuit breaker open for {name}; retry after {retry_at}")

        try:
            result = await fn()
        except Exception:
            self.record_failure(name)
            raise
        self.record_success(name)
        return result
