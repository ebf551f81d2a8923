"""Custom exception types for Mail Sweeper.

All exceptions carry messages that say what failed, where, why, and how to
fix it when a fix is actionable by the caller.

Taxonomy as seen by callers of the control surface:
- ValidationError: malformed or out-of-range input, rejected before side effects
- NotFoundError: scan, action, or batch missing or not owned by the caller
- ProviderUnavailable: mailbox or LLM call failed after retries
- CircuitOpen: LLM layer degraded (handled internally, never surfaced)
- UndoExpired: undo attempted past the undo window
- ConflictError: a concurrent writer won an optimistic update
"""


class SweeperError(Exception):
    """Base exception for all Mail Sweeper errors."""

    pass


class ConfigValidationError(SweeperError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(SweeperError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class ValidationError(SweeperError):
    """Raised when caller input is malformed or out of range.

    Attributes:
        field: Name of the offending input field (if known)
    """

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class NotFoundError(SweeperError):
    """Raised when a scan, action, or batch does not exist for the caller.

    Ownership mismatches raise this too, so callers cannot discover ids
    belonging to other users.
    """

    def __init__(self, message: str, resource: str | None = None, resource_id: str | None = None):
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class ProviderUnavailable(SweeperError):
    """Raised when an external provider (mailbox or LLM) fails after retries."""

    pass


class MailboxAPIError(ProviderUnavailable):
    """Raised when the mailbox REST API returns an error.

    Attributes:
        status_code: HTTP status code from the API (None for network errors)
        error_code: Provider error reason (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code

    @property
    def retryable(self) -> bool:
        """Network errors, 429 and 5xx are transient; other 4xx are not."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class LLMProviderError(ProviderUnavailable):
    """Raised when an LLM provider call fails.

    Attributes:
        provider: Provider name ('primary', 'fallback' or a kind like 'anthropic')
        permanent: True for errors that retrying cannot fix (bad credentials,
            malformed request). Permanent errors are never retried.
    """

    def __init__(self, message: str, provider: str | None = None, permanent: bool = False):
        super().__init__(message)
        self.provider = provider
        self.permanent = permanent


class CircuitOpen(SweeperError):
    """Raised when a provider's circuit breaker is open.

    Handled inside the categorization engine, which degrades to the
    fallback provider or the unknown/keep default.

    Attributes:
        provider: Name of the provider whose circuit is open
        retry_after: Seconds until the circuit closes again
    """

    def __init__(self, provider: str, retry_after: float):
        super().__init__(
            f"Circuit open for LLM provider '{provider}', retry in {retry_after:.0f}s"
        )
        self.provider = provider
        self.retry_after = retry_after


class UndoExpired(SweeperError):
    """Raised when undo is requested after the undo window has elapsed.

    Attributes:
        batch_id: The action batch that can no longer be undone
        window_seconds: Configured undo window
    """

    def __init__(self, batch_id: str, window_seconds: int):
        super().__init__(
            f"Undo window expired for batch {batch_id}: actions can only be undone "
            f"within {window_seconds // 60} minutes of execution."
        )
        self.batch_id = batch_id
        self.window_seconds = window_seconds


class ConflictError(SweeperError):
    """Raised when an optimistic update loses to a concurrent writer.

    Also used for state conflicts such as undoing a batch twice.

    Attributes:
        resource_id: The record whose precondition failed
    """

    def __init__(self, message: str, resource_id: str | None = None):
        super().__init__(message)
        self.resource_id = resource_id


class RateLimitExceeded(ProviderUnavailable):
    """Raised when API rate limits are exceeded and cannot be recovered.

    This is raised when the rate limiter would require an excessive wait time
    (>20 seconds) rather than blocking indefinitely. It is a provider outage
    for the caller: scans fail the batch and execution fails the item.
    """

    pass


class DatabaseError(SweeperError):
    """Raised when SQLite operations fail."""

    pass
