"""Layered categorization engine.

Resolves every record through three layers, cheapest first. A sender the
user has corrected (a `user_override` cache entry) skips all of them and
keeps the corrected category.

    Layer 0: heuristic rules (sender domains, headers, subject patterns)
    Layer 1: sender reputation cache (decayed confidence >= 0.85)
    Layer 2: LLM in batches, primary provider then fallback

Degradation never drops a record. When both providers are failing or
circuit-open, the remaining records get the unknown/keep default.

Each provider has its own circuit breaker owned by this engine instance.
Provider calls run in worker threads (`asyncio.to_thread`) and go through
the shared retry helper; a call that still fails after retries counts as one
breaker failure.

Write-back: sender-level heuristic matches and non-unknown LLM results
overwrite the sender's cache entry. Cache hits and message-level heuristic
matches are never written back.

Usage:
    from sweeper.classifier.engine import build_engine

    engine = build_engine(config, store)
    results, stats = await engine.classify("user-1", records)
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sweeper.classifier.categories import CategorizationResult, Source
from sweeper.classifier.circuit_breaker import CircuitBreaker
from sweeper.classifier.heuristics import HeuristicClassifier
from sweeper.classifier.planner import ActionPlanner
from sweeper.classifier.providers import LLMItem, LLMProvider, LLMResponse, build_provider
from sweeper.classifier.sender_cache import SenderReputationCache, build_sender_cache
from sweeper.config_schema import AppConfig, LLMProviderConfig
from sweeper.core.errors import CircuitOpen, LLMProviderError
from sweeper.core.logging import get_logger
from sweeper.core.retry import call_with_retry
from sweeper.db.store import DatabaseStore
from sweeper.mailbox.extractor import EmailRecord

logger = get_logger(__name__)

# Cached reputations below this decayed confidence are re-classified
CACHE_REUSE_THRESHOLD = 0.85

DEFAULT_LLM_BATCH_SIZE = 20
DEFAULT_REASONING = "Classification unavailable; kept for manual review"


@dataclass
class ClassificationStats:
    """Per-call counters, merged into the scan's aggregates by the orchestrator."""

    source_counts: dict[str, int] = field(default_factory=dict)
    category_counts: dict[str, int] = field(default_factory=dict)
    defaulted: int = 0
    llm_calls: int = 0
    llm_input_tokens: int = 0
    llm_output_tokens: int = 0
    llm_cost_usd: float = 0.0

    def count(self, result: CategorizationResult) -> None:
        self.source_counts[result.source] = self.source_counts.get(result.source, 0) + 1
        self.category_counts[result.category] = self.category_counts.get(result.category, 0) + 1


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, LLMProviderError) and not exc.permanent


def estimate_cost(provider: LLMProvider, input_tokens: int, output_tokens: int) -> float:
    """Estimated USD cost of one call from the provider's per-million-token rates."""
    return (
        input_tokens * provider.input_cost_per_mtok
        + output_tokens * provider.output_cost_per_mtok
    ) / 1_000_000


class CategorizationEngine:
    """Classifies records through heuristics, cache and LLM layers.

    Attributes:
        cache: Sender reputation cache (layer 1 and write-back target)
        planner: Derives suggested actions for every result
    """

    def __init__(
        self,
        cache: SenderReputationCache,
        primary: LLMProvider | None = None,
        fallback: LLMProvider | None = None,
        heuristics: HeuristicClassifier | None = None,
        planner: ActionPlanner | None = None,
        llm_batch_size: int = DEFAULT_LLM_BATCH_SIZE,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        failure_threshold: int = 3,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], datetime] | None = None,
        breaker_clock: Callable[[], float] | None = None,
    ):
        self.cache = cache
        self.heuristics = heuristics
        self.planner = planner or ActionPlanner()
        self.llm_batch_size = llm_batch_size
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self._clock = clock or (lambda: datetime.now(UTC))

        self._providers: list[tuple[LLMProvider, CircuitBreaker]] = []
        for provider in (primary, fallback):
            if provider is None:
                continue
            breaker = CircuitBreaker(
                provider.name,
                failure_threshold=failure_threshold,
                cooldown_seconds=cooldown_seconds,
                clock=breaker_clock or time.monotonic,
            )
            self._providers.append((provider, breaker))

    def breaker(self, provider_name: str) -> CircuitBreaker | None:
        for provider, breaker in self._providers:
            if provider.name == provider_name:
                return breaker
        return None

    async def classify(
        self, user_id: str, records: list[EmailRecord]
    ) -> tuple[list[CategorizationResult], ClassificationStats]:
        """Classify records, returning exactly one result per record in input order."""
        now = self._clock()
        stats = ClassificationStats()
        resolved: dict[str, CategorizationResult] = {}
        pending: list[EmailRecord] = []
        seen: set[str] = set()

        for record in records:
            if record.id in seen:
                continue
            seen.add(record.id)
            result = await self._resolve_locally(user_id, record, now)
            if result is not None:
                resolved[record.id] = result
            else:
                pending.append(record)

        for start in range(0, len(pending), self.llm_batch_size):
            chunk = pending[start : start + self.llm_batch_size]
            for result in await self._classify_chunk(user_id, chunk, now, stats):
                resolved[result.email_id] = result

        results = [resolved[record.id] for record in records]
        for result in results:
            stats.count(result)

        logger.info(
            "classification_complete",
            total=len(results),
            sources=stats.source_counts,
            defaulted=stats.defaulted,
            llm_calls=stats.llm_calls,
        )
        return results, stats

    # -------------------------------------------------------------------------
    # Layers 0 and 1
    # -------------------------------------------------------------------------

    async def _resolve_locally(
        self, user_id: str, record: EmailRecord, now: datetime
    ) -> CategorizationResult | None:
        cached = await self.cache.lookup(user_id, record.sender.address)
        # A user correction outranks every rule and is never overwritten here
        if cached is not None and cached.source == "user_override":
            return self._result(
                record,
                cached.category,
                cached.confidence,
                "user_override",
                f"Sender corrected by user to {cached.category}",
                now,
            )

        if self.heuristics is not None:
            match = self.heuristics.match(record)
            if match is not None:
                if match.sender_level:
                    await self.cache.store(
                        user_id,
                        record.sender.address,
                        match.category,
                        match.confidence,
                        "heuristic",
                    )
                return self._result(
                    record, match.category, match.confidence, "heuristic", f"Rule: {match.rule}", now
                )

        if cached is not None and cached.confidence >= CACHE_REUSE_THRESHOLD:
            return self._result(
                record,
                cached.category,
                cached.confidence,
                "cache",
                f"Sender previously classified as {cached.category} ({cached.source})",
                now,
            )
        return None

    # -------------------------------------------------------------------------
    # Layer 2
    # -------------------------------------------------------------------------

    def _call_provider(
        self, provider: LLMProvider, breaker: CircuitBreaker, records: list[EmailRecord]
    ) -> LLMResponse:
        """Blocking provider call with retry, recorded on the provider's breaker."""
        breaker.check()
        try:
            response = call_with_retry(
                lambda: provider.classify(records),
                is_retryable=_is_transient,
                max_attempts=self.max_attempts,
                base_delay=self.retry_base_delay,
                operation=f"llm_classify_{provider.name}",
            )
        except LLMProviderError:
            breaker.record_failure()
            raise
        breaker.record_success()
        return response

    async def _classify_chunk(
        self,
        user_id: str,
        records: list[EmailRecord],
        now: datetime,
        stats: ClassificationStats,
    ) -> list[CategorizationResult]:
        for provider, breaker in self._providers:
            try:
                response = await asyncio.to_thread(self._call_provider, provider, breaker, records)
            except CircuitOpen as e:
                logger.info(
                    "llm_provider_skipped", provider=provider.name, retry_after=round(e.retry_after)
                )
                continue
            except LLMProviderError as e:
                logger.warning(
                    "llm_provider_failed",
                    provider=provider.name,
                    permanent=e.permanent,
                    error=str(e)[:200],
                    batch_size=len(records),
                )
                continue

            stats.llm_calls += 1
            stats.llm_input_tokens += response.input_tokens
            stats.llm_output_tokens += response.output_tokens
            stats.llm_cost_usd += estimate_cost(
                provider, response.input_tokens, response.output_tokens
            )
            return await self._apply_response(user_id, records, response, now, stats)

        logger.warning("llm_layer_degraded", batch_size=len(records))
        stats.defaulted += len(records)
        return [self._default(record, now) for record in records]

    async def _apply_response(
        self,
        user_id: str,
        records: list[EmailRecord],
        response: LLMResponse,
        now: datetime,
        stats: ClassificationStats,
    ) -> list[CategorizationResult]:
        by_id: dict[str, LLMItem] = {}
        for item in response.items:
            by_id.setdefault(item.email_id, item)

        results: list[CategorizationResult] = []
        for record in records:
            item = by_id.get(record.id)
            if item is None:
                stats.defaulted += 1
                results.append(self._default(record, now))
                continue

            results.append(
                self._result(record, item.category, item.confidence, "llm", item.reasoning, now)
            )
            if item.category != "unknown":
                await self.cache.store(
                    user_id, record.sender.address, item.category, item.confidence, "llm"
                )

        missing = len(records) - sum(1 for r in records if r.id in by_id)
        if missing:
            logger.warning("llm_response_incomplete", missing=missing, batch_size=len(records))
        return results

    # -------------------------------------------------------------------------
    # Result construction
    # -------------------------------------------------------------------------

    def _result(
        self,
        record: EmailRecord,
        category: str,
        confidence: float,
        source: Source,
        reasoning: str,
        now: datetime,
    ) -> CategorizationResult:
        return CategorizationResult(
            email_id=record.id,
            category=category,  # type: ignore[arg-type]
            confidence=max(0.0, min(1.0, confidence)),
            source=source,
            reasoning=reasoning,
            suggested_actions=tuple(self.planner.plan(category, record, now)),
        )

    def _default(self, record: EmailRecord, now: datetime) -> CategorizationResult:
        return self._result(record, "unknown", 0.0, "llm", DEFAULT_REASONING, now)


def _build_optional_provider(config: LLMProviderConfig | None, name: str) -> LLMProvider | None:
    if config is None:
        return None
    try:
        return build_provider(config, name=name)
    except LLMProviderError as e:
        logger.warning("llm_provider_disabled", provider=name, error=str(e))
        return None


def build_engine(
    config: AppConfig,
    store: DatabaseStore,
    primary: LLMProvider | None = None,
    fallback: LLMProvider | None = None,
) -> CategorizationEngine:
    """Create an engine from config.

    Providers that cannot be built (missing API key) are left out and
    logged; the engine then degrades to the unknown/keep default for records
    the first two layers do not resolve.
    """
    cat = config.categorization
    if primary is None:
        primary = _build_optional_provider(config.llm.primary, "primary")
    if fallback is None:
        fallback = _build_optional_provider(config.llm.fallback, "fallback")

    return CategorizationEngine(
        cache=build_sender_cache(config.cache, store),
        primary=primary,
        fallback=fallback,
        heuristics=(
            HeuristicClassifier(min_confidence=cat.heuristic_min_confidence)
            if cat.heuristics_enabled
            else None
        ),
        planner=ActionPlanner(archive_after_days=config.actions.archive_after_days),
        llm_batch_size=cat.llm_batch_size,
        max_attempts=config.llm.max_attempts,
        retry_base_delay=config.llm.retry_base_delay,
        failure_threshold=cat.breaker_failure_threshold,
        cooldown_seconds=cat.breaker_cooldown_seconds,
    )
