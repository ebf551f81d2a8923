"""Gmail REST adapter for the MailboxGateway protocol.

This module provides:
- GmailClient: synchronous requests-based client with retry, rate limiting
  and one token refresh on 401
- GmailGateway: async MailboxGateway implementation that runs GmailClient
  calls in worker threads

OAuth token lifecycle is outside this module. Callers inject an access-token
provider: `token_provider(force_refresh)` returns a bearer token and must
fetch a fresh one when `force_refresh` is True.

Usage:
    from sweeper.mailbox.gmail import GmailClient, GmailGateway

    client = GmailClient(token_provider=lambda force_refresh: get_token(user_id))
    gateway = GmailGateway(client)

    ids = await gateway.list_message_ids("in:inbox", max_results=500)
"""

import asyncio
import os
from collections.abc import Callable
from typing import Any

import requests

from sweeper.core.errors import MailboxAPIError, RateLimitExceeded
from sweeper.core.logging import get_logger
from sweeper.core.rate_limiter import get_bucket
from sweeper.core.retry import call_with_retry
from sweeper.mailbox.gateway import RawMessage

logger = get_logger(__name__)

GMAIL_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"

# Headers requested with format=metadata; the extractor reads only these
METADATA_HEADERS = [
    "From",
    "Subject",
    "Date",
    "List-Unsubscribe",
    "List-Unsubscribe-Post",
    "Precedence",
    "X-Campaign",
    "X-Mailer",
    "Return-Path",
]

# Gmail limits
MAX_BATCH_MODIFY = 1000
MAX_LIST_PAGE = 500

# Parallel metadata fetches per batch_get_messages call
FETCH_CONCURRENCY = 10

GMAIL_RATE = 10.0

TokenProvider = Callable[[bool], str]


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, MailboxAPIError) and exc.retryable


def env_token_provider(env_var: str) -> TokenProvider:
    """Token provider reading a pre-issued access token from the environment.

    The token cannot be refreshed here; on a forced refresh the variable is
    simply read again, so an external process may rotate it.
    """

    def provide(force_refresh: bool) -> str:
        token = os.environ.get(env_var)
        if not token:
            raise MailboxAPIError(
                f"Environment variable {env_var} is not set. "
                "Export a Gmail OAuth access token or inject a token provider.",
                status_code=401,
            )
        return token

    return provide


class GmailClient:
    """Gmail REST API client.

    Attributes:
        base_url: Gmail API user root
        timeout: Per-request timeout in seconds
        max_retries: Retries for 429/5xx/network errors
        page_size: Ids requested per list page
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: str = GMAIL_BASE_URL,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        requests_per_second: float = GMAIL_RATE,
        page_size: int = MAX_LIST_PAGE,
        session: requests.Session | None = None,
    ):
        self._token_provider = token_provider
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.page_size = max(1, min(page_size, MAX_LIST_PAGE))
        self.session = session or requests.Session()
        self._rate_bucket = get_bucket(
            name="gmail",
            rate=requests_per_second,
            capacity=max(1, int(requests_per_second)),
        )

    def _headers(self, force_refresh: bool = False) -> dict[str, str]:
        token = self._token_provider(force_refresh)
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _raise_for_response(self, response: requests.Response, method: str, path: str) -> None:
        try:
            error_info = response.json().get("error", {})
            error_code = None
            errors = error_info.get("errors") or []
            if errors:
                error_code = errors[0].get("reason")
            error_message = error_info.get("message", response.text)
        except ValueError:
            error_code = None
            error_message = response.text or f"HTTP {response.status_code}"

        logger.error(
            "gmail_api_error",
            method=method,
            path=path.split("?")[0][:80],
            status_code=response.status_code,
            error_code=error_code,
            error_message=str(error_message)[:200],
        )

        if response.status_code == 401:
            hint = "The access token was rejected after a refresh. Reconnect the Gmail account."
        elif response.status_code == 403:
            hint = "Check that the Gmail modify scope was granted."
        elif response.status_code == 404:
            hint = "The message may have been deleted."
        elif response.status_code == 429:
            hint = "Gmail rate limit hit. Lower gmail.requests_per_second."
        else:
            hint = ""

        raise MailboxAPIError(
            f"Gmail API error ({response.status_code}) on {method} {path.split('?')[0]}: "
            f"{error_message}. {hint}".strip(),
            status_code=response.status_code,
            error_code=error_code,
        )

    def _send_once(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | list[tuple[str, str]] | None,
        json: dict[str, Any] | None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        refreshed = False

        while True:
            try:
                self._rate_bucket.consume_sync()
            except RateLimitExceeded as e:
                # Backlog too deep to wait out locally; back off like a 429
                raise MailboxAPIError(
                    f"Local Gmail rate limit exhausted: {e}",
                    status_code=429,
                    error_code="rateLimitExceeded",
                ) from e
            try:
                response = self.session.request(
                    method=method,
                    url=url,
                    headers=self._headers(force_refresh=refreshed),
                    params=params,
                    json=json,
                    timeout=self.timeout,
                )
            except requests.exceptions.Timeout:
                raise MailboxAPIError(
                    f"Gmail request {method} {path} timed out after {self.timeout}s",
                    status_code=None,
                ) from None
            except requests.exceptions.ConnectionError as e:
                raise MailboxAPIError(
                    f"Connection to Gmail failed: {e}. Check network connectivity.",
                    status_code=None,
                ) from e

            # Token may have expired between issue and use; refresh once
            if response.status_code == 401 and not refreshed:
                logger.warning("gmail_token_rejected_refreshing", path=path.split("?")[0][:80])
                refreshed = True
                continue

            if response.status_code >= 400:
                self._raise_for_response(response, method, path)

            if response.status_code == 204 or not response.content:
                return {}
            return response.json()

    def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | list[tuple[str, str]] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make a Gmail API request with retry on transient failures.

        Raises:
            MailboxAPIError: For API errors once retries are exhausted
        """
        return call_with_retry(
            lambda: self._send_once(method, path, params, json),
            is_retryable=_is_transient,
            max_attempts=self.max_retries + 1,
            base_delay=self.retry_base_delay,
            operation=f"gmail_{method.lower()}",
        )

    # ------------------------------------------------------------------
    # Gmail operations
    # ------------------------------------------------------------------

    def list_message_ids(self, query: str, max_results: int) -> list[str]:
        """List message ids matching a Gmail search query, following pagination."""
        ids: list[str] = []
        page_token: str | None = None

        while len(ids) < max_results:
            params: dict[str, Any] = {
                "q": query,
                "maxResults": min(self.page_size, max_results - len(ids)),
            }
            if page_token:
                params["pageToken"] = page_token

            data = self.request("GET", "messages", params=params)
            ids.extend(m["id"] for m in data.get("messages", []))

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        return ids[:max_results]

    def get_message_metadata(self, message_id: str) -> RawMessage:
        """Fetch one message in metadata format."""
        params: list[tuple[str, str]] = [("format", "metadata")]
        params.extend(("metadataHeaders", h) for h in METADATA_HEADERS)
        return self.request("GET", f"messages/{message_id}", params=params)

    def batch_modify(self, ids: list[str], add: list[str], remove: list[str]) -> None:
        """Modify labels on up to MAX_BATCH_MODIFY messages."""
        if len(ids) > MAX_BATCH_MODIFY:
            raise ValueError(f"batchModify accepts at most {MAX_BATCH_MODIFY} ids, got {len(ids)}")
        self.request(
            "POST",
            "messages/batchModify",
            json={"ids": ids, "addLabelIds": add, "removeLabelIds": remove},
        )

    def trash(self, message_id: str) -> None:
        self.request("POST", f"messages/{message_id}/trash")

    def untrash(self, message_id: str) -> None:
        self.request("POST", f"messages/{message_id}/untrash")


class GmailGateway:
    """Async MailboxGateway backed by GmailClient.

    The requests client is synchronous; each call runs in a worker thread so
    the event loop keeps serving other requests during mailbox I/O.
    """

    max_modify_batch = MAX_BATCH_MODIFY

    def __init__(self, client: GmailClient, fetch_concurrency: int = FETCH_CONCURRENCY):
        self._client = client
        self._fetch_concurrency = fetch_concurrency

    async def list_message_ids(self, query: str, max_results: int) -> list[str]:
        logger.info("gmail_listing_messages", max_results=max_results)
        ids = await asyncio.to_thread(self._client.list_message_ids, query, max_results)
        logger.info("gmail_listed_messages", count=len(ids))
        return ids

    async def batch_get_messages(self, ids: list[str]) -> list[RawMessage]:
        """Fetch metadata for each id; individual failures are logged and omitted.

        Raises:
            MailboxAPIError: If every fetch failed with an outage-type error
        """
        semaphore = asyncio.Semaphore(self._fetch_concurrency)
        errors: list[MailboxAPIError] = []

        async def fetch(message_id: str) -> RawMessage | None:
            async with semaphore:
                try:
                    return await asyncio.to_thread(self._client.get_message_metadata, message_id)
                except MailboxAPIError as e:
                    logger.warning(
                        "gmail_message_fetch_failed",
                        message_id=message_id[:16],
                        status_code=e.status_code,
                    )
                    errors.append(e)
                    return None

        fetched = await asyncio.gather(*(fetch(message_id) for message_id in ids))
        messages = [msg for msg in fetched if msg is not None]
        outages = [e for e in errors if e.retryable or e.status_code in (401, 403)]
        if ids and not messages and outages:
            raise outages[-1]
        return messages

    async def batch_modify_labels(self, ids: list[str], add: list[str], remove: list[str]) -> None:
        for start in range(0, len(ids), MAX_BATCH_MODIFY):
            chunk = ids[start : start + MAX_BATCH_MODIFY]
            await asyncio.to_thread(self._client.batch_modify, chunk, add, remove)

    async def trash_message(self, message_id: str) -> None:
        await asyncio.to_thread(self._client.trash, message_id)

    async def untrash_message(self, message_id: str) -> None:
        await asyncio.to_thread(self._client.untrash, message_id)
