"""Tests for the Gmail REST client and async gateway."""

from unittest.mock import MagicMock

import pytest
import requests

from sweeper.core.errors import MailboxAPIError, RateLimitExceeded
from sweeper.core.rate_limiter import TokenBucket
from sweeper.mailbox.gateway import MailboxGateway
from sweeper.mailbox.gmail import (
    GMAIL_BASE_URL,
    MAX_BATCH_MODIFY,
    GmailClient,
    GmailGateway,
    env_token_provider,
)

from conftest import raw_message


def _response(status_code: int = 200, body: dict | None = None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {}
    response.content = b"{}" if body is not None else b""
    response.text = ""
    return response


@pytest.fixture
def session() -> MagicMock:
    return MagicMock()


@pytest.fixture
def token_provider() -> MagicMock:
    return MagicMock(return_value="token-123")


@pytest.fixture
def client(session, token_provider) -> GmailClient:
    client = GmailClient(
        token_provider=token_provider,
        session=session,
        max_retries=2,
        retry_base_delay=0.0,
        page_size=2,
    )
    # The shared "gmail" bucket is process-wide; tests get their own
    client._rate_bucket = TokenBucket(rate=1000, capacity=1000)
    return client


# ---------------------------------------------------------------------------
# GmailClient
# ---------------------------------------------------------------------------


class TestGmailClient:
    def test_list_follows_pagination(self, client, session):
        session.request.side_effect = [
            _response(body={"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "p2"}),
            _response(body={"messages": [{"id": "c"}], "nextPageToken": "p3"}),
        ]

        ids = client.list_message_ids("in:inbox", 3)

        assert ids == ["a", "b", "c"]
        first, second = session.request.call_args_list
        assert first.kwargs["url"] == f"{GMAIL_BASE_URL}/messages"
        assert first.kwargs["params"] == {"q": "in:inbox", "maxResults": 2}
        assert second.kwargs["params"] == {"q": "in:inbox", "maxResults": 1, "pageToken": "p2"}
        assert first.kwargs["headers"]["Authorization"] == "Bearer token-123"

    def test_list_stops_without_next_page(self, client, session):
        session.request.return_value = _response(body={"messages": [{"id": "a"}]})
        assert client.list_message_ids("in:inbox", 100) == ["a"]
        assert session.request.call_count == 1

    def test_empty_mailbox(self, client, session):
        session.request.return_value = _response(body={"resultSizeEstimate": 0})
        assert client.list_message_ids("in:inbox", 100) == []

    def test_401_refreshes_token_once(self, client, session, token_provider):
        session.request.side_effect = [_response(401), _response(body={"messages": []})]

        client.list_message_ids("in:inbox", 10)

        assert [c.args[0] for c in token_provider.call_args_list] == [False, True]

    def test_second_401_is_permanent(self, client, session):
        session.request.return_value = _response(401, {"error": {"message": "Invalid Credentials"}})

        with pytest.raises(MailboxAPIError) as exc_info:
            client.list_message_ids("in:inbox", 10)

        assert exc_info.value.status_code == 401
        assert not exc_info.value.retryable
        assert session.request.call_count == 2

    def test_server_errors_are_retried(self, client, session):
        session.request.side_effect = [
            _response(503, {"error": {"message": "Backend Error"}}),
            _response(
                429,
                {"error": {"message": "Rate Limit", "errors": [{"reason": "rateLimitExceeded"}]}},
            ),
            _response(body={"messages": [{"id": "a"}]}),
        ]
        assert client.list_message_ids("in:inbox", 10) == ["a"]
        assert session.request.call_count == 3

    def test_retries_are_bounded(self, client, session):
        session.request.return_value = _response(500, {"error": {"message": "boom"}})
        with pytest.raises(MailboxAPIError) as exc_info:
            client.list_message_ids("in:inbox", 10)
        assert exc_info.value.status_code == 500
        assert session.request.call_count == 3

    def test_not_found_is_not_retried(self, client, session):
        session.request.return_value = _response(
            404, {"error": {"message": "Not Found", "errors": [{"reason": "notFound"}]}}
        )
        with pytest.raises(MailboxAPIError) as exc_info:
            client.trash("gone")
        assert exc_info.value.error_code == "notFound"
        assert session.request.call_count == 1

    def test_network_errors_are_transient(self, client, session):
        session.request.side_effect = requests.exceptions.ConnectionError("reset")
        with pytest.raises(MailboxAPIError) as exc_info:
            client.untrash("m1")
        assert exc_info.value.status_code is None
        assert session.request.call_count == 3

    def test_local_rate_limit_exhaustion_is_retryable(self, client, session):
        bucket = MagicMock()
        bucket.consume_sync.side_effect = [
            RateLimitExceeded("Rate limit exceeded, would require 25.00s wait"),
            True,
        ]
        client._rate_bucket = bucket
        session.request.return_value = _response(body={"messages": [{"id": "a"}]})

        assert client.list_message_ids("in:inbox", 10) == ["a"]
        assert bucket.consume_sync.call_count == 2
        assert session.request.call_count == 1

    def test_local_rate_limit_surfaces_as_mailbox_error(self, client, session):
        bucket = MagicMock()
        bucket.consume_sync.side_effect = RateLimitExceeded("would require 25.00s wait")
        client._rate_bucket = bucket

        with pytest.raises(MailboxAPIError) as exc_info:
            client.trash("m1")

        assert exc_info.value.status_code == 429
        assert exc_info.value.retryable
        session.request.assert_not_called()

    def test_metadata_request_names_headers(self, client, session):
        session.request.return_value = _response(body=raw_message(msg_id="m1"))

        message = client.get_message_metadata("m1")

        assert message["id"] == "m1"
        params = session.request.call_args.kwargs["params"]
        assert ("format", "metadata") in params
        assert ("metadataHeaders", "List-Unsubscribe") in params

    def test_batch_modify_body_and_limit(self, client, session):
        session.request.return_value = _response(204)
        client.batch_modify(["a", "b"], [], ["INBOX"])
        assert session.request.call_args.kwargs["json"] == {
            "ids": ["a", "b"],
            "addLabelIds": [],
            "removeLabelIds": ["INBOX"],
        }

        with pytest.raises(ValueError):
            client.batch_modify([str(i) for i in range(MAX_BATCH_MODIFY + 1)], [], ["INBOX"])


# ---------------------------------------------------------------------------
# GmailGateway
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_client() -> MagicMock:
    return MagicMock(spec=GmailClient)


class TestGmailGateway:
    def test_implements_protocol(self, mock_client):
        assert isinstance(GmailGateway(mock_client), MailboxGateway)

    @pytest.mark.asyncio
    async def test_list_delegates(self, mock_client):
        mock_client.list_message_ids.return_value = ["a", "b"]
        assert await GmailGateway(mock_client).list_message_ids("in:inbox", 5) == ["a", "b"]
        mock_client.list_message_ids.assert_called_once_with("in:inbox", 5)

    @pytest.mark.asyncio
    async def test_individual_fetch_failures_are_omitted(self, mock_client):
        def fetch(message_id):
            if message_id == "b":
                raise MailboxAPIError("Not Found", status_code=404)
            return raw_message(msg_id=message_id)

        mock_client.get_message_metadata.side_effect = fetch

        messages = await GmailGateway(mock_client, fetch_concurrency=2).batch_get_messages(
            ["a", "b", "c"]
        )

        assert sorted(m["id"] for m in messages) == ["a", "c"]

    @pytest.mark.asyncio
    async def test_concurrent_fetches_share_the_rate_limit(self, session, token_provider):
        client = GmailClient(token_provider=token_provider, session=session, retry_base_delay=0.0)
        # Drained bucket: every fetch has to queue for a token
        client._rate_bucket = TokenBucket(rate=1000, capacity=1, initial_tokens=0)
        session.request.side_effect = lambda **kwargs: _response(
            body=raw_message(msg_id=kwargs["url"].rsplit("/", 1)[1])
        )
        ids = [f"m{i}" for i in range(30)]

        messages = await GmailGateway(client, fetch_concurrency=10).batch_get_messages(ids)

        assert sorted(m["id"] for m in messages) == sorted(ids)
        assert session.request.call_count == 30

    @pytest.mark.asyncio
    async def test_total_outage_raises(self, mock_client):
        mock_client.get_message_metadata.side_effect = MailboxAPIError("down", status_code=503)
        with pytest.raises(MailboxAPIError):
            await GmailGateway(mock_client).batch_get_messages(["a", "b"])

    @pytest.mark.asyncio
    async def test_all_messages_deleted_is_not_an_outage(self, mock_client):
        mock_client.get_message_metadata.side_effect = MailboxAPIError("gone", status_code=404)
        assert await GmailGateway(mock_client).batch_get_messages(["a", "b"]) == []

    @pytest.mark.asyncio
    async def test_modify_labels_respects_provider_limit(self, mock_client):
        ids = [f"m{i}" for i in range(MAX_BATCH_MODIFY + 500)]

        await GmailGateway(mock_client).batch_modify_labels(ids, ["INBOX"], [])

        sizes = [len(c.args[0]) for c in mock_client.batch_modify.call_args_list]
        assert sizes == [MAX_BATCH_MODIFY, 500]

    @pytest.mark.asyncio
    async def test_trash_and_untrash(self, mock_client):
        gateway = GmailGateway(mock_client)
        await gateway.trash_message("m1")
        await gateway.untrash_message("m1")
        mock_client.trash.assert_called_once_with("m1")
        mock_client.untrash.assert_called_once_with("m1")


# ---------------------------------------------------------------------------
# Token provider
# ---------------------------------------------------------------------------


def test_env_token_provider(monkeypatch):
    provider = env_token_provider("SWEEPER_TEST_GMAIL_TOKEN")

    monkeypatch.delenv("SWEEPER_TEST_GMAIL_TOKEN", raising=False)
    with pytest.raises(MailboxAPIError) as exc_info:
        provider(False)
    assert exc_info.value.status_code == 401

    monkeypatch.setenv("SWEEPER_TEST_GMAIL_TOKEN", "abc")
    assert provider(True) == "abc"
