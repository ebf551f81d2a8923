"""Per-provider circuit breaker for LLM calls.

After `failure_threshold` consecutive failures the circuit opens and stays
open for `cooldown_seconds`; callers skip the provider while it is open.
The first call after the cooldown is let through, and a success resets the
failure count.

Breaker state is owned by the categorization engine instance and guarded by
a lock, so concurrent classify calls in worker threads see consistent counts.
"""

import threading
import time
from collections.abc import Callable

from sweeper.core.errors import CircuitOpen
from sweeper.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_COOLDOWN_SECONDS = 60.0


class CircuitBreaker:
    """Consecutive-failure circuit breaker for one provider."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._open_until = 0.0

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    def is_open(self) -> bool:
        with self._lock:
            return self._clock() < self._open_until

    def check(self) -> None:
        """Raise CircuitOpen while the provider is in its cooldown window."""
        with self._lock:
            remaining = self._open_until - self._clock()
        if remaining > 0:
            raise CircuitOpen(self.name, remaining)

    def record_success(self) -> None:
        with self._lock:
            if self._consecutive_failures:
                logger.info("llm_circuit_reset", provider=self.name)
            self._consecutive_failures = 0
            self._open_until = 0.0

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            if self._consecutive_failures >= self.failure_threshold:
                self._open_until = self._clock() + self.cooldown_seconds
                logger.warning(
                    "llm_circuit_opened",
                    provider=self.name,
                    consecutive_failures=self._consecutive_failures,
                    cooldown_seconds=self.cooldown_seconds,
                )
