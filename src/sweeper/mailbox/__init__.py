"""Mailbox access: the gateway protocol, the Gmail adapter, and metadata extraction.

Usage:
    from sweeper.mailbox import GmailClient, GmailGateway, MetadataExtractor

    gateway = GmailGateway(GmailClient(token_provider))
    raw = await gateway.batch_get_messages(ids)
    records = [r for r in map(MetadataExtractor().extract, raw) if r is not None]
"""

from sweeper.mailbox.extractor import EmailRecord, MetadataExtractor, SenderInfo, sanitize_text
from sweeper.mailbox.gateway import MailboxGateway, RawMessage
from sweeper.mailbox.gmail import METADATA_HEADERS, GmailClient, GmailGateway, env_token_provider

__all__ = [
    # Gateway
    "MailboxGateway",
    "RawMessage",
    # Gmail
    "METADATA_HEADERS",
    "GmailClient",
    "GmailGateway",
    "env_token_provider",
    # Extraction
    "EmailRecord",
    "MetadataExtractor",
    "SenderInfo",
    "sanitize_text",
]
