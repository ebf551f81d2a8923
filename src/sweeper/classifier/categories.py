"""Category, action and result types shared by the classifier and engines.

Usage:
    from sweeper.classifier.categories import (
        PROTECTED_CATEGORIES,
        CategorizationResult,
        SuggestedAction,
    )
"""

from dataclasses import dataclass, field
from typing import Literal, get_args

Category = Literal[
    "newsletter",
    "marketing",
    "transactional",
    "social",
    "notification",
    "spam",
    "personal",
    "important",
    "unknown",
]

Source = Literal["heuristic", "cache", "llm", "user_override"]

ActionType = Literal["archive", "move_to_trash", "mark_read", "keep", "unsubscribe"]

VALID_CATEGORIES: frozenset[str] = frozenset(get_args(Category))
VALID_SOURCES: frozenset[str] = frozenset(get_args(Source))
VALID_ACTION_TYPES: frozenset[str] = frozenset(get_args(ActionType))

# Destructive automated actions are never applied to these
PROTECTED_CATEGORIES: frozenset[str] = frozenset({"personal", "important"})

# Actions that remove a message from the user's view
DESTRUCTIVE_ACTIONS: frozenset[str] = frozenset({"archive", "move_to_trash"})


def is_protected(category: str) -> bool:
    return category in PROTECTED_CATEGORIES


@dataclass(frozen=True, slots=True)
class SuggestedAction:
    """One candidate cleanup action. Higher priority wins."""

    type: ActionType
    reason: str
    priority: int


@dataclass(frozen=True, slots=True)
class CategorizationResult:
    """Classification of one email.

    Attributes:
        email_id: Provider message id
        category: One of VALID_CATEGORIES
        confidence: In [0.0, 1.0]
        source: Which layer produced the result
        reasoning: Short human-readable explanation
        suggested_actions: Ordered by priority, highest first
    """

    email_id: str
    category: Category
    confidence: float
    source: Source
    reasoning: str = ""
    suggested_actions: tuple[SuggestedAction, ...] = field(default_factory=tuple)

    @property
    def primary_action(self) -> SuggestedAction | None:
        return self.suggested_actions[0] if self.suggested_actions else None
