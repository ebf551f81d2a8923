"""Email classification components.

This package provides the categorization pipeline:
- Heuristic rules for deterministic, high-confidence routing
- Sender reputation cache with TTL and confidence decay
- LLM providers (Anthropic tool use, Ollama JSON) with output repair
- Per-provider circuit breaker
- Categorization engine layering heuristics, cache and LLM
- Action planner mapping categories to suggested cleanup actions
"""

from sweeper.classifier.categories import (
    DESTRUCTIVE_ACTIONS,
    PROTECTED_CATEGORIES,
    VALID_ACTION_TYPES,
    VALID_CATEGORIES,
    CategorizationResult,
    SuggestedAction,
    is_protected,
)
from sweeper.classifier.circuit_breaker import CircuitBreaker
from sweeper.classifier.engine import (
    CACHE_REUSE_THRESHOLD,
    CategorizationEngine,
    ClassificationStats,
    build_engine,
)
from sweeper.classifier.heuristics import HeuristicClassifier, HeuristicMatch
from sweeper.classifier.planner import ActionPlanner
from sweeper.classifier.providers import (
    AnthropicProvider,
    LLMItem,
    LLMProvider,
    LLMResponse,
    OllamaProvider,
    build_provider,
    parse_llm_output,
)
from sweeper.classifier.sender_cache import (
    InMemorySenderCacheBackend,
    SenderReputationCache,
    SqliteSenderCacheBackend,
    build_sender_cache,
    decayed_confidence,
)

__all__ = [
    # Categories
    "DESTRUCTIVE_ACTIONS",
    "PROTECTED_CATEGORIES",
    "VALID_ACTION_TYPES",
    "VALID_CATEGORIES",
    "CategorizationResult",
    "SuggestedAction",
    "is_protected",
    # Engine
    "CACHE_REUSE_THRESHOLD",
    "CategorizationEngine",
    "ClassificationStats",
    "CircuitBreaker",
    "build_engine",
    # Heuristics
    "HeuristicClassifier",
    "HeuristicMatch",
    # Planner
    "ActionPlanner",
    # Providers
    "AnthropicProvider",
    "LLMItem",
    "LLMProvider",
    "LLMResponse",
    "OllamaProvider",
    "build_provider",
    "parse_llm_output",
    # Sender cache
    "InMemorySenderCacheBackend",
    "SenderReputationCache",
    "SqliteSenderCacheBackend",
    "build_sender_cache",
    "decayed_confidence",
]
