"""Generic retry helper built on tenacity.

One helper serves both the Gmail adapter and the LLM providers. Callers
supply a classifier that decides which exceptions are transient; anything
the classifier rejects is re-raised immediately.

Usage:
    from sweeper.core.retry import call_with_retry

    result = call_with_retry(
        lambda: client.post("/messages/batchModify", json=body),
        is_retryable=lambda exc: isinstance(exc, MailboxAPIError) and exc.retryable,
        operation="gmail_batch_modify",
    )
"""

from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from sweeper.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0


def call_with_retry(
    fn: Callable[[], T],
    *,
    is_retryable: Callable[[BaseException], bool],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    operation: str = "call",
) -> T:
    """Call `fn` until it succeeds, a permanent error occurs, or attempts run out.

    Delays grow exponentially from `base_delay` (1s, 2s, 4s, ...) capped at
    `max_delay`. The last exception is re-raised unchanged.

    Args:
        fn: Zero-argument callable to invoke
        is_retryable: Returns True for transient exceptions
        max_attempts: Total attempts including the first (1 disables retry)
        base_delay: First backoff delay in seconds
        max_delay: Upper bound on any single delay
        operation: Name used in retry log events
    """

    def _log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "retrying_operation",
            operation=operation,
            attempt=state.attempt_number,
            max_attempts=max_attempts,
            delay=round(state.next_action.sleep, 2) if state.next_action else None,
            error_type=type(exc).__name__ if exc else None,
            error=str(exc)[:200] if exc else None,
        )

    retrying = Retrying(
        retry=retry_if_exception(is_retryable),
        wait=wait_exponential(multiplier=base_delay, min=base_delay, max=max_delay),
        stop=stop_after_attempt(max_attempts),
        before_sleep=_log_retry,
        reraise=True,
    )
    return retrying(fn)
