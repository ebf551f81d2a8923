"""Tests for LLM providers: output repair, validation and error mapping."""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import anthropic
import httpx
import pytest
import requests

from sweeper.classifier.prompts import CLASSIFY_EMAILS_TOOL, build_user_message
from sweeper.classifier.providers import (
    MAX_REASONING_LENGTH,
    AnthropicProvider,
    OllamaProvider,
    build_provider,
    parse_llm_output,
    validate_items,
)
from sweeper.config_schema import LLMProviderConfig
from sweeper.core.errors import LLMProviderError

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"


# ---------------------------------------------------------------------------
# Output repair
# ---------------------------------------------------------------------------


class TestParseLLMOutput:
    def test_plain_json(self):
        assert parse_llm_output('{"results": []}') == {"results": []}

    def test_markdown_fences(self):
        raw = '```json\n{"results": [{"email_id": "m1"}]}\n```'
        assert parse_llm_output(raw) == {"results": [{"email_id": "m1"}]}

    def test_surrounding_prose(self):
        raw = 'Here are the results: {"results": [{"email_id": "m1"}]} Hope this helps!'
        assert parse_llm_output(raw) == {"results": [{"email_id": "m1"}]}

    def test_single_quotes_and_unquoted_keys(self):
        raw = "{results: [{email_id: 'm1', category: spam, confidence: 0.8}]}"
        parsed = parse_llm_output(raw)
        assert parsed["results"][0] == {"email_id": "m1", "category": "spam", "confidence": 0.8}

    @pytest.mark.parametrize("raw", ["", "   ", "no structure here", "{results: [unclosed"])
    def test_unrepairable(self, raw):
        with pytest.raises(ValueError):
            parse_llm_output(raw)


class TestValidateItems:
    def test_results_wrapper_and_bare_list(self):
        item = {"email_id": "m1", "category": "spam", "confidence": 0.8, "reasoning": "x"}
        assert validate_items({"results": [item]}) == validate_items([item])

    def test_alternate_id_keys(self):
        items = validate_items([{"emailId": "a"}, {"id": "b"}])
        assert [i.email_id for i in items] == ["a", "b"]

    def test_items_without_id_are_dropped(self):
        assert validate_items([{"category": "spam"}, "junk", {"email_id": "m1"}])[0].email_id == "m1"
        assert len(validate_items([{"category": "spam"}, "junk"])) == 0

    def test_unknown_category_and_clamped_confidence(self):
        (high,) = validate_items([{"email_id": "a", "category": "Promotions", "confidence": 7}])
        (bad,) = validate_items([{"email_id": "b", "category": " SPAM ", "confidence": "n/a"}])
        assert high.category == "unknown"
        assert high.confidence == 1.0
        assert bad.category == "spam"
        assert bad.confidence == 0.0

    def test_reasoning_is_truncated(self):
        (item,) = validate_items([{"email_id": "a", "reasoning": "r" * 500}])
        assert len(item.reasoning) == MAX_REASONING_LENGTH

    def test_wrong_shape(self):
        with pytest.raises(ValueError):
            validate_items({"answer": "spam"})


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


def _anthropic_message(content: list[SimpleNamespace]) -> SimpleNamespace:
    return SimpleNamespace(
        content=content, usage=SimpleNamespace(input_tokens=1200, output_tokens=300)
    )


def _tool_block(results: list[dict]) -> SimpleNamespace:
    return SimpleNamespace(
        type="tool_use", name=CLASSIFY_EMAILS_TOOL["name"], input={"results": results}
    )


def _status_error(cls: type[anthropic.APIStatusError], status: int) -> anthropic.APIStatusError:
    response = httpx.Response(status, request=httpx.Request("POST", ANTHROPIC_URL))
    return cls("error", response=response, body=None)


@pytest.fixture
def anthropic_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def anthropic_provider(anthropic_client) -> AnthropicProvider:
    return AnthropicProvider(anthropic_client, model="claude-test", name="primary")


class TestAnthropicProvider:
    def test_forced_tool_use(self, anthropic_provider, anthropic_client, make_record):
        records = [make_record(msg_id="m1"), make_record(msg_id="m2")]
        anthropic_client.messages.create.return_value = _anthropic_message(
            [
                _tool_block(
                    [
                        {"email_id": "m1", "category": "newsletter", "confidence": 0.9},
                        {"email_id": "m2", "category": "personal", "confidence": 0.8},
                    ]
                )
            ]
        )

        response = anthropic_provider.classify(records)

        kwargs = anthropic_client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert kwargs["tool_choice"] == {"type": "tool", "name": "classify_emails"}
        assert kwargs["messages"][0]["content"] == build_user_message(records)
        assert [(i.email_id, i.category) for i in response.items] == [
            ("m1", "newsletter"),
            ("m2", "personal"),
        ]
        assert response.input_tokens == 1200
        assert response.output_tokens == 300

    def test_text_fallback_when_no_tool_call(self, anthropic_provider, anthropic_client, make_record):
        text = '```json\n{"results": [{"email_id": "m1", "category": "spam", "confidence": 0.7}]}\n```'
        anthropic_client.messages.create.return_value = _anthropic_message(
            [SimpleNamespace(type="text", text=text)]
        )
        response = anthropic_provider.classify([make_record(msg_id="m1")])
        assert response.items[0].category == "spam"

    def test_unusable_output_is_transient(self, anthropic_provider, anthropic_client, make_record):
        anthropic_client.messages.create.return_value = _anthropic_message(
            [SimpleNamespace(type="text", text="I cannot help with that.")]
        )
        with pytest.raises(LLMProviderError) as exc_info:
            anthropic_provider.classify([make_record()])
        assert exc_info.value.permanent is False
        assert exc_info.value.provider == "primary"

    @pytest.mark.parametrize(
        ("cls", "status"),
        [
            (anthropic.AuthenticationError, 401),
            (anthropic.PermissionDeniedError, 403),
            (anthropic.BadRequestError, 400),
            (anthropic.NotFoundError, 404),
        ],
    )
    def test_client_errors_are_permanent(
        self, anthropic_provider, anthropic_client, make_record, cls, status
    ):
        anthropic_client.messages.create.side_effect = _status_error(cls, status)
        with pytest.raises(LLMProviderError) as exc_info:
            anthropic_provider.classify([make_record()])
        assert exc_info.value.permanent is True

    @pytest.mark.parametrize(
        ("cls", "status"),
        [(anthropic.RateLimitError, 429), (anthropic.InternalServerError, 529)],
    )
    def test_server_errors_are_transient(
        self, anthropic_provider, anthropic_client, make_record, cls, status
    ):
        anthropic_client.messages.create.side_effect = _status_error(cls, status)
        with pytest.raises(LLMProviderError) as exc_info:
            anthropic_provider.classify([make_record()])
        assert exc_info.value.permanent is False

    def test_connection_error_is_transient(self, anthropic_provider, anthropic_client, make_record):
        anthropic_client.messages.create.side_effect = anthropic.APIConnectionError(
            request=httpx.Request("POST", ANTHROPIC_URL)
        )
        with pytest.raises(LLMProviderError) as exc_info:
            anthropic_provider.classify([make_record()])
        assert exc_info.value.permanent is False


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------


def _ollama_response(status_code: int = 200, body: dict | None = None, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body or {}
    response.text = text
    return response


@pytest.fixture
def ollama_session() -> MagicMock:
    return MagicMock()


@pytest.fixture
def ollama_provider(ollama_session) -> OllamaProvider:
    return OllamaProvider(
        "http://localhost:11434/", model="llama3", name="fallback", session=ollama_session
    )


class TestOllamaProvider:
    def test_classify(self, ollama_provider, ollama_session, make_record):
        content = json.dumps(
            {"results": [{"email_id": "m1", "category": "social", "confidence": 0.75}]}
        )
        ollama_session.post.return_value = _ollama_response(
            body={"message": {"content": content}, "prompt_eval_count": 800, "eval_count": 90}
        )

        response = ollama_provider.classify([make_record(msg_id="m1")])

        url = ollama_session.post.call_args.args[0]
        payload = ollama_session.post.call_args.kwargs["json"]
        assert url == "http://localhost:11434/api/chat"
        assert payload["stream"] is False
        assert payload["format"] == "json"
        assert response.items[0].category == "social"
        assert response.input_tokens == 800
        assert response.output_tokens == 90

    def test_network_error_is_transient(self, ollama_provider, ollama_session, make_record):
        ollama_session.post.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(LLMProviderError) as exc_info:
            ollama_provider.classify([make_record()])
        assert exc_info.value.permanent is False

    @pytest.mark.parametrize(("status", "permanent"), [(404, True), (429, False), (500, False)])
    def test_http_errors(self, ollama_provider, ollama_session, make_record, status, permanent):
        ollama_session.post.return_value = _ollama_response(status_code=status, text="nope")
        with pytest.raises(LLMProviderError) as exc_info:
            ollama_provider.classify([make_record()])
        assert exc_info.value.permanent is permanent

    def test_garbage_content_is_transient(self, ollama_provider, ollama_session, make_record):
        ollama_session.post.return_value = _ollama_response(body={"message": {"content": ""}})
        with pytest.raises(LLMProviderError) as exc_info:
            ollama_provider.classify([make_record()])
        assert exc_info.value.permanent is False


# ---------------------------------------------------------------------------
# build_provider
# ---------------------------------------------------------------------------


class TestBuildProvider:
    def test_missing_api_key_is_permanent(self, monkeypatch):
        monkeypatch.delenv("SWEEPER_TEST_KEY", raising=False)
        config = LLMProviderConfig(api_key_env="SWEEPER_TEST_KEY")
        with pytest.raises(LLMProviderError) as exc_info:
            build_provider(config, "primary")
        assert exc_info.value.permanent is True
        assert "SWEEPER_TEST_KEY" in str(exc_info.value)

    def test_anthropic_from_env(self, monkeypatch):
        monkeypatch.setenv("SWEEPER_TEST_KEY", "sk-test")
        provider = build_provider(
            LLMProviderConfig(api_key_env="SWEEPER_TEST_KEY", model="claude-x"), "primary"
        )
        assert isinstance(provider, AnthropicProvider)
        assert provider.name == "primary"
        assert provider.model == "claude-x"

    def test_ollama(self):
        provider = build_provider(
            LLMProviderConfig(kind="ollama", model="llama3", base_url="http://localhost:11434"),
            "fallback",
        )
        assert isinstance(provider, OllamaProvider)
        assert provider.base_url == "http://localhost:11434"

    def test_ollama_requires_base_url(self):
        with pytest.raises(ValueError):
            LLMProviderConfig(kind="ollama", model="llama3")
