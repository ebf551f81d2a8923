"""Maps a category to suggested cleanup actions.

The planner is pure: no I/O, no configuration lookups at call time, and no
exceptions. Personal and important mail always gets a single "keep" action
no matter what else is true about the message.

Usage:
    from sweeper.classifier.planner import ActionPlanner

    planner = ActionPlanner()
    actions = planner.plan("newsletter", record, now=datetime.now(UTC))
    primary = actions[0]
"""

from datetime import datetime, timedelta

from sweeper.classifier.categories import PROTECTED_CATEGORIES, SuggestedAction
from sweeper.mailbox.extractor import EmailRecord

DEFAULT_ARCHIVE_AFTER_DAYS = 30

KEEP_DEFAULT = SuggestedAction(type="keep", reason="No cleanup action suggested", priority=1)


class ActionPlanner:
    """Deterministic category -> actions mapping.

    Attributes:
        archive_after_days: Transactional mail older than this is archived
    """

    def __init__(self, archive_after_days: int = DEFAULT_ARCHIVE_AFTER_DAYS):
        self.archive_after_days = archive_after_days

    def plan(self, category: str, record: EmailRecord, now: datetime) -> list[SuggestedAction]:
        """Return suggested actions, highest priority first."""
        if category in PROTECTED_CATEGORIES:
            return [
                SuggestedAction(
                    type="keep",
                    reason=f"{category.capitalize()} mail is never cleaned up automatically",
                    priority=1,
                )
            ]

        actions: list[SuggestedAction]
        match category:
            case "newsletter":
                actions = [
                    SuggestedAction(
                        type="move_to_trash",
                        reason="Unread newsletter" if not record.is_read else "Newsletter already read",
                        priority=5 if not record.is_read else 3,
                    )
                ]
            case "marketing":
                actions = [SuggestedAction("move_to_trash", "Promotional email", 4)]
            case "spam":
                actions = [SuggestedAction("move_to_trash", "Likely spam", 5)]
            case "social":
                actions = [SuggestedAction("move_to_trash", "Social network notification", 3)]
            case "notification":
                actions = [SuggestedAction("move_to_trash", "Automated notification", 2)]
            case "transactional":
                if now - record.date > timedelta(days=self.archive_after_days):
                    actions = [
                        SuggestedAction(
                            "archive",
                            f"Transactional email older than {self.archive_after_days} days",
                            3,
                        )
                    ]
                else:
                    actions = [SuggestedAction("keep", "Recent transactional email", 1)]
            case _:
                actions = [KEEP_DEFAULT]

        return sorted(actions, key=lambda a: a.priority, reverse=True)
