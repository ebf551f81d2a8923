"""LLM providers for batch email classification.

Two implementations of the LLMProvider protocol:
- AnthropicProvider: Claude with forced tool use, so output is structured
- OllamaProvider: local model over HTTP, asked for plain JSON

Providers make exactly one attempt per call. Retries, circuit breaking and
failover live in the categorization engine. Every failure is raised as
LLMProviderError with `permanent=True` when retrying cannot help (bad
credentials, malformed request).

Output handling (both providers):
1. Parse as JSON; if that fails, strip markdown fences, cut to the outermost
   {...} and retry, then fall back to YAML, which accepts single quotes and
   unquoted keys
2. Validate item shape; categories outside the closed set become "unknown",
   confidence is clamped to [0, 1]

Usage:
    from sweeper.classifier.providers import build_provider

    provider = build_provider(config.llm.primary, name="primary")
    response = provider.classify(records)
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Protocol

import anthropic
import requests
import yaml

from sweeper.classifier.categories import VALID_CATEGORIES
from sweeper.classifier.prompts import CLASSIFY_EMAILS_TOOL, SYSTEM_PROMPT, build_user_message
from sweeper.config_schema import LLMProviderConfig
from sweeper.core.errors import LLMProviderError
from sweeper.core.logging import get_logger
from sweeper.mailbox.extractor import EmailRecord

logger = get_logger(__name__)

MAX_REASONING_LENGTH = 200


@dataclass(frozen=True, slots=True)
class LLMItem:
    """One validated classification from a provider."""

    email_id: str
    category: str
    confidence: float
    reasoning: str = ""


@dataclass(frozen=True, slots=True)
class LLMResponse:
    """Validated provider output plus token usage."""

    items: list[LLMItem] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""


class LLMProvider(Protocol):
    """A model endpoint that classifies a batch of emails in one call."""

    name: str
    input_cost_per_mtok: float
    output_cost_per_mtok: float

    def classify(self, records: list[EmailRecord]) -> LLMResponse: ...


# ---------------------------------------------------------------------------
# Output parsing and validation
# ---------------------------------------------------------------------------


def _strip_markdown_fences(text: str) -> str:
    """Strip ```json / ``` code fences."""
    stripped = text.strip()
    if stripped.startswith("```"):
        first_newline = stripped.find("\n")
        if first_newline != -1:
            stripped = stripped[first_newline + 1 :]
    if stripped.endswith("```"):
        stripped = stripped[: -len("```")]
    return stripped.strip()


def parse_llm_output(raw_text: str) -> Any:
    """Parse model output as JSON, repairing common damage.

    Raises:
        ValueError: If nothing parseable remains after repair
    """
    if not raw_text or not raw_text.strip():
        raise ValueError("Empty LLM response")

    try:
        return json.loads(raw_text)
    except json.JSONDecodeError:
        pass

    cleaned = _strip_markdown_fences(raw_text)
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start : end + 1]

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    try:
        parsed = yaml.safe_load(cleaned)
    except yaml.YAMLError as e:
        raise ValueError(
            f"Malformed LLM response after repair: {e}. Preview: {cleaned[:200]!r}"
        ) from e
    if not isinstance(parsed, dict | list):
        raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


def validate_items(data: Any) -> list[LLMItem]:
    """Turn parsed output into LLMItems.

    Accepts {"results": [...]} or a bare list. Items without an id are
    dropped; the engine fills their emails with the unknown default.

    Raises:
        ValueError: If the top-level shape is wrong
    """
    if isinstance(data, dict):
        data = data.get("results")
    if not isinstance(data, list):
        raise ValueError("LLM response has no 'results' list")

    items: list[LLMItem] = []
    for raw in data:
        if not isinstance(raw, dict):
            continue
        email_id = raw.get("email_id") or raw.get("emailId") or raw.get("id")
        if not email_id:
            continue

        category = str(raw.get("category", "unknown")).strip().lower()
        if category not in VALID_CATEGORIES:
            category = "unknown"

        try:
            confidence = float(raw.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        confidence = max(0.0, min(1.0, confidence))

        items.append(
            LLMItem(
                email_id=str(email_id),
                category=category,
                confidence=confidence,
                reasoning=str(raw.get("reasoning") or "")[:MAX_REASONING_LENGTH],
            )
        )
    return items


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


def _extract_tool_call(response: anthropic.types.Message) -> dict[str, Any] | None:
    for block in response.content:
        if block.type == "tool_use" and block.name == CLASSIFY_EMAILS_TOOL["name"]:
            return block.input
    return None


def _extract_text(response: anthropic.types.Message) -> str:
    return "".join(block.text for block in response.content if block.type == "text")


class AnthropicProvider:
    """Claude classification with forced tool use."""

    def __init__(
        self,
        client: anthropic.Anthropic,
        model: str,
        name: str = "anthropic",
        max_tokens: int = 4096,
        input_cost_per_mtok: float = 0.0,
        output_cost_per_mtok: float = 0.0,
    ):
        self._client = client
        self.model = model
        self.name = name
        self.max_tokens = max_tokens
        self.input_cost_per_mtok = input_cost_per_mtok
        self.output_cost_per_mtok = output_cost_per_mtok

    def classify(self, records: list[EmailRecord]) -> LLMResponse:
        try:
            response = self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": build_user_message(records)}],
                tools=[CLASSIFY_EMAILS_TOOL],
                tool_choice={"type": "tool", "name": CLASSIFY_EMAILS_TOOL["name"]},
            )
        except (
            anthropic.AuthenticationError,
            anthropic.PermissionDeniedError,
            anthropic.BadRequestError,
            anthropic.NotFoundError,
        ) as e:
            raise LLMProviderError(
                f"Anthropic rejected the request ({e.status_code}): {e.message}. "
                "Check the API key and model name.",
                provider=self.name,
                permanent=True,
            ) from e
        except anthropic.APIStatusError as e:
            raise LLMProviderError(
                f"Anthropic API error {e.status_code}: {e.message}", provider=self.name
            ) from e
        except anthropic.APIConnectionError as e:
            raise LLMProviderError(
                f"Anthropic connection error: {e}", provider=self.name
            ) from e

        tool_call = _extract_tool_call(response)
        try:
            data = tool_call if tool_call is not None else parse_llm_output(_extract_text(response))
            items = validate_items(data)
        except ValueError as e:
            raise LLMProviderError(
                f"Unusable Anthropic response: {e}", provider=self.name
            ) from e

        return LLMResponse(
            items=items,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=self.model,
        )


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------


class OllamaProvider:
    """Local model served by Ollama's /api/chat endpoint."""

    def __init__(
        self,
        base_url: str,
        model: str,
        name: str = "ollama",
        timeout: float = 30.0,
        max_tokens: int = 4096,
        input_cost_per_mtok: float = 0.0,
        output_cost_per_mtok: float = 0.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.name = name
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.input_cost_per_mtok = input_cost_per_mtok
        self.output_cost_per_mtok = output_cost_per_mtok
        self.session = session or requests.Session()

    def classify(self, records: list[EmailRecord]) -> LLMResponse:
        payload = {
            "model": self.model,
            "stream": False,
            "format": "json",
            "options": {"num_predict": self.max_tokens},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_user_message(records, json_instructions=True)},
            ],
        }
        try:
            response = self.session.post(
                f"{self.base_url}/api/chat", json=payload, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise LLMProviderError(f"Ollama request failed: {e}", provider=self.name) from e

        if response.status_code >= 400:
            permanent = response.status_code < 500 and response.status_code != 429
            raise LLMProviderError(
                f"Ollama error {response.status_code}: {response.text[:200]}",
                provider=self.name,
                permanent=permanent,
            )

        try:
            body = response.json()
            content = body.get("message", {}).get("content", "")
            items = validate_items(parse_llm_output(content))
        except ValueError as e:
            raise LLMProviderError(f"Unusable Ollama response: {e}", provider=self.name) from e

        return LLMResponse(
            items=items,
            input_tokens=int(body.get("prompt_eval_count") or 0),
            output_tokens=int(body.get("eval_count") or 0),
            model=self.model,
        )


def build_provider(config: LLMProviderConfig, name: str) -> LLMProvider:
    """Create a provider from config.

    Raises:
        LLMProviderError: If the Anthropic API key variable is not set
    """
    if config.kind == "ollama":
        return OllamaProvider(
            base_url=config.base_url or "",
            model=config.model,
            name=name,
            timeout=config.timeout_seconds,
            max_tokens=config.max_tokens,
            input_cost_per_mtok=config.input_cost_per_mtok,
            output_cost_per_mtok=config.output_cost_per_mtok,
        )

    api_key = os.environ.get(config.api_key_env)
    if not api_key:
        raise LLMProviderError(
            f"Environment variable {config.api_key_env} is not set. "
            "Add it to .env or the environment.",
            provider=name,
            permanent=True,
        )
    # Retries are owned by the engine's retry helper
    client = anthropic.Anthropic(
        api_key=api_key,
        base_url=config.base_url,
        timeout=config.timeout_seconds,
        max_retries=0,
    )
    return AnthropicProvider(
        client=client,
        model=config.model,
        name=name,
        max_tokens=config.max_tokens,
        input_cost_per_mtok=config.input_cost_per_mtok,
        output_cost_per_mtok=config.output_cost_per_mtok,
    )
