"""
Retry Policy - bounded retries + consecutive-failure circuit breaker

Shared by every collaborator adapter:
  Layer 1: per-call retries with exponential backoff (1s, 2s, 4s ... capped)
  Layer 2: circuit breaker: N consecutive failed calls open the circuit,
           calls fail fast with CircuitOpenError until reset_after elapses,
           then one trial call is let through (half-open)

Errors listed in `give_up_on` (e.g. NoRouteError) are final answers, not
outages: they are re-raised immediately and do not count against the circuit.
"""

import time
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .errors import CircuitOpenError

logger = logging.getLogger("deadhand.retry")


class CircuitBreaker:
    """Opens after `failure_threshold` consecutive failures."""

    def __init__(self, name: str, failure_threshold: int = 5, reset_after: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_after = reset_after
        self._clock = clock
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._opened_at = 0.0

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._is_open_locked()

    def _is_open_locked(self) -> bool:
        if self._consecutive_failures < self.failure_threshold:
            return False
        return (self._clock() - self._opened_at) < self.reset_after

    def before_call(self):
        with self._lock:
            if self._is_open_locked():
                raise CircuitOpenError(
                    f"{self.name}: circuit open after {self._consecutive_failures} consecutive failures"
                )

    def record_success(self):
        with self._lock:
            if self._consecutive_failures >= self.failure_threshold:
                logger.info(f"{self.name}: circuit closed")
            self._consecutive_failures = 0

    def record_failure(self):
        with self._lock:
            self._consecutive_failures += 1
            if self._consecutive_failures >= self.failure_threshold:
                self._opened_at = self._clock()
                logger.warning(
                    f"{self.name}: circuit OPEN ({self._consecutive_failures} consecutive failures), "
                    f"cooling down {self.reset_after:.0f}s"
                )

    def get_status(self) -> dict:
        with self._lock:
            return {
                "name": self.name,
                "open": self._is_open_locked(),
                "consecutive_failures": self._consecutive_failures,
            }


@dataclass
class RetryPolicy:
    """
    Usage:
        policy = RetryPolicy(max_attempts=3, breaker=CircuitBreaker("lifi"))
        quote = await policy.call(self._fetch_quote, params)
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    retry_on: tuple = (Exception,)
    give_up_on: tuple = ()
    breaker: Optional[CircuitBreaker] = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def call(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        if self.breaker:
            self.breaker.before_call()

        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await fn(*args, **kwargs)
            except self.give_up_on:
                if self.breaker:
                    self.breaker.record_success()
                raise
            except self.retry_on as e:
                last_error = e
                if attempt < self.max_attempts:
                    wait = self.delay_for(attempt)
                    logger.warning(
                        f"{getattr(fn, '__name__', 'call')} failed "
                        f"(attempt {attempt}/{self.max_attempts}), retrying in {wait:.1f}s: {e}"
                    )
                    await self.sleep(wait)
                    continue
                break
            else:
                if self.breaker:
                    self.breaker.record_success()
                return result

        if self.breaker:
            self.breaker.record_failure()
        raise last_error
