"""Token bucket rate limiting for outbound API requests.

Tokens are added at a fixed rate and each request consumes one. The Gmail
adapter consumes a token before every HTTP call so bursts during large scans
stay under the provider's per-user quota instead of tripping 429 responses.

Standard Rate Limits by Service:
- gmail: 10 requests per second (well under Gmail's per-user quota units)
"""

import threading
import time

from sweeper.core.errors import RateLimitExceeded
from sweeper.core.logging import get_logger

logger = get_logger(__name__)

# Waits longer than this are treated as a stuck limiter rather than blocking
MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter.

    Example:
        limiter = TokenBucket(rate=10.0, capacity=10)

        def call_api():
            limiter.consume_sync()
            ...
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: int | None = None,
    ):
        """Initialize a token bucket rate limiter.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens in the bucket (defaults to capacity)
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens: float = capacity if initial_tokens is None else initial_tokens
        self.last_refill = time.monotonic()
        self.sync_lock = threading.Lock()

    def _check_capacity(self, tokens: int) -> None:
        if tokens > self.capacity:
            logger.error("rate_limit_over_capacity", tokens=tokens, capacity=self.capacity)
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})"
            )

    def consume_sync(self, tokens: int = 1) -> bool:
        """Consume tokens, sleeping until they are available.

        Thread-safe: the Gmail REST client calls this from worker threads.
        Each caller reserves its tokens under the lock (the balance may go
        negative) and then sleeps for its own share of the deficit, so
        concurrent waiters queue behind each other instead of racing for
        the same refill.

        Raises:
            RateLimitExceeded: If the caller would have to wait longer than
                MAX_WAIT_SECONDS; nothing is reserved in that case
        """
        self._check_capacity(tokens)

        with self.sync_lock:
            self._refill()
            self.tokens -= tokens
            if self.tokens >= 0:
                return True
            wait_time = -self.tokens / self.rate
            if wait_time > MAX_WAIT_SECONDS:
                self.tokens += tokens
                logger.warning("rate_limit_excessive_wait", wait_time=wait_time)
                raise RateLimitExceeded(
                    f"Rate limit exceeded, would require {wait_time:.2f}s wait"
                )

        logger.debug("rate_limit_waiting", wait_time=wait_time)
        time.sleep(wait_time)
        return True

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now


# Shared buckets keyed by service name
_buckets: dict[str, TokenBucket] = {}
_buckets_lock = threading.Lock()


def get_bucket(name: str = "default", rate: float = 1.0, capacity: int = 1) -> TokenBucket:
    """Get or create the token bucket for a service.

    Args:
        name: Bucket name/identifier
        rate: Token refill rate if creating a new bucket
        capacity: Token capacity if creating a new bucket
    """
    with _buckets_lock:
        if name not in _buckets:
            _buckets[name] = TokenBucket(rate=rate, capacity=capacity)
        return _buckets[name]
