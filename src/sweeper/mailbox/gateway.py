"""Mailbox capability interface.

The scan orchestrator and action executor depend only on this protocol.
Each mailbox provider is one adapter class implementing it (see
sweeper.mailbox.gmail for Gmail).

Raw messages are provider-shaped dicts; MetadataExtractor is the only code
that looks inside them.
"""

from typing import Any, Protocol, runtime_checkable

RawMessage = dict[str, Any]


@runtime_checkable
class MailboxGateway(Protocol):
    """Capabilities the pipeline needs from a mailbox provider.

    Implementations raise MailboxAPIError (a ProviderUnavailable) once their
    own retries are exhausted. Callers chunk mutations to `max_modify_batch`.
    """

    max_modify_batch: int

    async def list_message_ids(self, query: str, max_results: int) -> list[str]:
        """Return up to `max_results` message ids matching `query`, newest first."""
        ...

    async def batch_get_messages(self, ids: list[str]) -> list[RawMessage]:
        """Fetch metadata for `ids`. Messages that fail to fetch are omitted."""
        ...

    async def batch_modify_labels(
        self, ids: list[str], add: list[str], remove: list[str]
    ) -> None:
        """Add and remove labels on every message in `ids` in one request."""
        ...

    async def trash_message(self, message_id: str) -> None:
        """Move one message to the trash."""
        ...

    async def untrash_message(self, message_id: str) -> None:
        """Restore one message from the trash."""
        ...
