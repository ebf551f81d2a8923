"""Metadata extraction from raw Gmail messages.

Converts a metadata-format Gmail message into an immutable EmailRecord used
by every later stage. Subjects and snippets are sanitized here, once, so no
raw PII reaches the LLM prompt, the database, or the logs.

CRITICAL SECURITY NOTE:
All regex substitutions use the `regex` library with a timeout to prevent
ReDoS from hostile header values.

Usage:
    from sweeper.mailbox.extractor import MetadataExtractor

    extractor = MetadataExtractor()
    record = extractor.extract(raw_message)  # None when From is missing
"""

import html
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

import regex

from sweeper.core.logging import get_logger
from sweeper.mailbox.gateway import RawMessage

logger = get_logger(__name__)

SUBJECT_MAX_LENGTH = 200
SNIPPET_MAX_LENGTH = 100

REGEX_TIMEOUT = 1.0

# =============================================================================
# Compiled Regex Patterns
# =============================================================================

HTML_TAG_PATTERN = regex.compile(r"<[^>]+>")
WHITESPACE_PATTERN = regex.compile(r"\s+")

# Card-like numbers (13-19 digits with optional separators) and US SSNs
CARD_NUMBER_PATTERN = regex.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{1,7}\b")
SSN_PATTERN = regex.compile(r"\b\d{3}-\d{2}-\d{4}\b")
# Long hex strings are usually reset links, session ids or API keys
HEX_TOKEN_PATTERN = regex.compile(r"\b[0-9a-fA-F]{32,}\b")

NAMED_FROM_PATTERN = regex.compile(r'^"?([^"<]*?)"?\s*<([^\s<>]+@[^\s<>]+)>$')
BARE_FROM_PATTERN = regex.compile(r"^()([^\s<>]+@[^\s<>]+)$")
RETURN_PATH_DOMAIN_PATTERN = regex.compile(r"@([^\s>]+)")
NOREPLY_PATTERN = regex.compile(
    r"^(no-?reply|do-?not-?reply|notifications?|alerts?|mailer-?daemon|postmaster)@",
    regex.IGNORECASE,
)


@dataclass(frozen=True, slots=True)
class SenderInfo:
    """Parsed From header."""

    address: str
    name: str
    domain: str


@dataclass(frozen=True, slots=True)
class EmailRecord:
    """Canonical, immutable snapshot of one message's metadata.

    Attributes:
        id: Provider message id
        thread_id: Provider thread id
        sender: Parsed sender (address lower-cased)
        subject: Sanitized subject, at most 200 chars
        snippet: Sanitized snippet, at most 100 chars
        date: Message date (timezone-aware, UTC)
        is_read: False while the UNREAD label is present
        labels: Provider label ids
        has_list_unsubscribe: List-Unsubscribe header present
        has_precedence_bulk: Precedence is bulk or list
        has_campaign_id: X-Campaign header present
        is_noreply: Sender local part looks automated (noreply@, alerts@, ...)
        has_return_path_mismatch: Return-Path domain differs from sender domain
        x_mailer: Raw X-Mailer header value (empty when absent)
        body_length: Provider size estimate in bytes
        link_count: Links in the body (0 for metadata-only fetches)
        image_count: Images in the body (0 for metadata-only fetches)
        has_unsubscribe_text: Unsubscribe affordance detected
    """

    id: str
    thread_id: str
    sender: SenderInfo
    subject: str
    snippet: str
    date: datetime
    is_read: bool
    labels: frozenset[str]
    has_list_unsubscribe: bool = False
    has_precedence_bulk: bool = False
    has_campaign_id: bool = False
    is_noreply: bool = False
    has_return_path_mismatch: bool = False
    x_mailer: str = ""
    body_length: int = 0
    link_count: int = 0
    image_count: int = 0
    has_unsubscribe_text: bool = False


def _safe_sub(pattern: regex.Pattern, repl: str, text: str) -> str:
    """Regex substitution with timeout; on timeout the text is dropped entirely."""
    try:
        return pattern.sub(repl, text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("extractor_regex_timeout", pattern=pattern.pattern[:50])
        # Unsanitized text must not leak downstream
        return ""


def sanitize_text(text: str, max_length: int) -> str:
    """Strip HTML, redact PII and tokens, collapse whitespace, truncate."""
    if not text:
        return ""
    text = _safe_sub(HTML_TAG_PATTERN, " ", text)
    text = html.unescape(text)
    text = _safe_sub(CARD_NUMBER_PATTERN, "[REDACTED]", text)
    text = _safe_sub(SSN_PATTERN, "[REDACTED]", text)
    text = _safe_sub(HEX_TOKEN_PATTERN, "[TOKEN]", text)
    text = _safe_sub(WHITESPACE_PATTERN, " ", text).strip()
    return text[:max_length]


def parse_from_header(raw: str) -> SenderInfo:
    """Parse a From header into structured sender info.

    Handles "Name <user@domain>", "user@domain" and "<user@domain>".
    Unparseable values keep the raw text as the address with no domain.
    """
    raw = raw.strip()
    try:
        pattern = NAMED_FROM_PATTERN if "<" in raw else BARE_FROM_PATTERN
        match = pattern.match(raw, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        match = None
    if not match:
        return SenderInfo(address=raw.lower(), name="", domain="")

    name = (match.group(1) or "").strip()
    address = match.group(2).strip().lower()
    domain = address.rsplit("@", 1)[1] if "@" in address else ""
    return SenderInfo(address=address, name=name, domain=domain)


def _parse_date(raw: str | None, fallback: datetime) -> datetime:
    if not raw:
        return fallback
    try:
        parsed = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return fallback
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


class MetadataExtractor:
    """Normalizes raw Gmail messages into EmailRecords.

    Attributes:
        clock: Returns "now"; used when a message has no parseable Date header
    """

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._clock = clock or (lambda: datetime.now(UTC))

    def extract(self, raw: RawMessage) -> EmailRecord | None:
        """Build an EmailRecord, or None when the message has no From header."""
        headers: dict[str, str] = {}
        for header in raw.get("payload", {}).get("headers", []):
            # First occurrence wins, matching how mail clients display headers
            headers.setdefault(header.get("name", "").lower(), header.get("value", ""))

        from_raw = headers.get("from")
        if not from_raw:
            return None

        sender = parse_from_header(from_raw)
        labels = frozenset(raw.get("labelIds") or [])

        list_unsubscribe = headers.get("list-unsubscribe")
        precedence = (headers.get("precedence") or "").strip().lower()
        return_path = headers.get("return-path")

        return_path_domain = ""
        if return_path:
            try:
                match = RETURN_PATH_DOMAIN_PATTERN.search(return_path, timeout=REGEX_TIMEOUT)
            except TimeoutError:
                logger.warning("extractor_regex_timeout", pattern="return_path")
                match = None
            if match:
                return_path_domain = match.group(1).lower()

        return EmailRecord(
            id=raw["id"],
            thread_id=raw.get("threadId", raw["id"]),
            sender=sender,
            subject=sanitize_text(headers.get("subject", ""), SUBJECT_MAX_LENGTH),
            snippet=sanitize_text(raw.get("snippet", ""), SNIPPET_MAX_LENGTH),
            date=_parse_date(headers.get("date"), self._clock()),
            is_read="UNREAD" not in labels,
            labels=labels,
            has_list_unsubscribe=bool(list_unsubscribe),
            has_precedence_bulk=precedence in ("bulk", "list"),
            has_campaign_id=bool(headers.get("x-campaign")),
            is_noreply=bool(NOREPLY_PATTERN.search(sender.address)),
            has_return_path_mismatch=bool(return_path_domain)
            and return_path_domain != sender.domain,
            x_mailer=headers.get("x-mailer", ""),
            body_length=int(raw.get("sizeEstimate") or 0),
            link_count=0,
            image_count=0,
            has_unsubscribe_text=bool(list_unsubscribe),
        )
