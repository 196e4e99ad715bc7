"""
Circuit Breaker — stops calling a failing path until a cool-down elapses.

  closed     calls pass; each failure counts, `threshold` failures open it
  open       calls rejected with CircuitOpenError until `reset_timeout`
             has passed since the last failure
  half_open  a single trial call; success closes, failure re-opens
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

log = logging.getLogger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised without attempting the call while the circuit is open."""

    def __init__(self, name: str, remaining: float, failure_count: int):
        self.name = name
        self.remaining = max(remaining, 0.0)
        self.failure_count = failure_count
        super().__init__(
            f"Circuit breaker '{name}' is open: {failure_count} failures, "
            f"retry in {self.remaining:.1f}s"
        )


@dataclass
class CircuitBreakerState:
    failure_count: int = 0
    last_failure_time: float | None = None
    state: BreakerState = BreakerState.CLOSED


class CircuitBreaker:
    """Guards one external call path. Not shared across unrelated paths."""

    def __init__(
        self,
        name: str = "default",
        threshold: int = 5,
        timeout: float | None = None,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.threshold = threshold
        self.timeout = timeout
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._state = CircuitBreakerState()
        self._trial_in_flight = False

    @property
    def state(self) -> BreakerState:
        return self._state.state

    @property
    def failure_count(self) -> int:
        return self._state.failure_count

    def remaining_cooldown(self) -> float:
        if self._state.state != BreakerState.OPEN or self._state.last_failure_time is None:
            return 0.0
        elapsed = self._clock() - self._state.last_failure_time
        return max(self.reset_timeout - elapsed, 0.0)

    def _before_call(self) -> None:
        st = self._state
        if st.state == BreakerState.OPEN:
            remaining = self.remaining_cooldown()
            if remaining > 0:
                raise CircuitOpenError(self.name, remaining, st.failure_count)
            st.state = BreakerState.HALF_OPEN
            log.info("[BREAKER] %s half-open — allowing one trial call", self.name)

        if st.state == BreakerState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0.0, st.failure_count)
            self._trial_in_flight = True

    async def call(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Run `operation` through the breaker."""
        self._before_call()
        try:
            if self.timeout:
                result = await asyncio.wait_for(operation(), timeout=self.timeout)
            else:
                result = await operation()
        except asyncio.CancelledError:
            # An interrupted call says nothing about the guarded path
            self._trial_in_flight = False
            raise
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        if self._state.state != BreakerState.CLOSED:
            log.info("[BREAKER] %s closed after successful trial", self.name)
        self._state = CircuitBreakerState()
        self._trial_in_flight = False

    def _on_failure(self) -> None:
        st = self._state
        was_trial = st.state == BreakerState.HALF_OPEN
        self._trial_in_flight = False
        st.failure_count += 1
        st.last_failure_time = self._clock()
        if was_trial or st.failure_count >= self.threshold:
            if st.state != BreakerState.OPEN:
                log.warning(
                    "[BREAKER] %s opened after %d failures (cool-down %.1fs)",
                    self.name, st.failure_count, self.reset_timeout,
                )
            st.state = BreakerState.OPEN

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "state": self._state.state.value,
            "failure_count": self._state.failure_count,
            "last_failure_time": self._state.last_failure_time,
            "remaining_cooldown": round(self.remaining_cooldown(), 3),
            "threshold": self.threshold,
            "reset_timeout": self.reset_timeout,
        }

    def reset(self) -> None:
        self._state = CircuitBreakerState()
        self._trial_in_flight = False
