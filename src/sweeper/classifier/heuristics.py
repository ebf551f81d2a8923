"""Rule layer: deterministic categorization from sender and header signals.

Rules are evaluated in a fixed order and the first match wins. The order is
part of the contract:

1. Safety tier. Starred mail, Gmail's important/personal signals and
   human-looking reply threads resolve to a protected category before any
   bulk-mail rule gets a chance to fire.
2. Known sending domains (marketing platforms, social networks, developer
   tools), matched on the domain or any parent domain.
3. Subject patterns (receipts and orders, promotions with unsubscribe).
4. Marketing headers (X-Campaign, marketing X-Mailer, Return-Path mismatch).
5. Generic bulk-mail catch-alls.

Rules that key only on the sender (`sender_level=True`) describe the sender
as a whole, so their results may be written to the sender reputation cache.
Message-level rules (starred, reply threads, subjects) describe one message
and are never cached.

All subject regexes run with a timeout via the `regex` library.

Usage:
    from sweeper.classifier.heuristics import HeuristicClassifier

    classifier = HeuristicClassifier()
    match = classifier.match(record)
    if match:
        print(match.rule, match.category, match.confidence)
"""

from collections.abc import Callable
from dataclasses import dataclass

import regex

from sweeper.classifier.categories import Category
from sweeper.core.logging import get_logger
from sweeper.mailbox.extractor import EmailRecord

logger = get_logger(__name__)

DEFAULT_MIN_CONFIDENCE = 0.70
REGEX_TIMEOUT = 1.0

# Bodies larger than this are almost never hand-written
PERSONAL_MAX_BODY_LENGTH = 20000

# ---------------------------------------------------------------------------
# Known domain lists
# ---------------------------------------------------------------------------

MARKETING_SENDING_DOMAINS = frozenset(
    {
        "mailchimp.com",
        "sendgrid.net",
        "sendgrid.com",
        "mailgun.org",
        "mailgun.com",
        "constantcontact.com",
        "campaign-archive.com",
        "list-manage.com",
        "hubspot.com",
        "hubspotemail.net",
        "hubspot.net",
        "klaviyo.com",
        "brevo.com",
        "sendinblue.com",
        "mailerlite.com",
        "convertkit.com",
        "kit.com",
        "drip.com",
        "aweber.com",
        "getresponse.com",
        "activecampaign.com",
        "customer.io",
        "intercom-mail.com",
        "intercom.io",
        "mandrillapp.com",
        "amazonses.com",
        "postmarkapp.com",
        "sparkpostmail.com",
        "email.mg",
        "mailjet.com",
        "moosend.com",
        "omnisend.com",
        "sailthru.com",
        "iterable.com",
        "sendpulse.com",
        "benchmark.email",
        "campaignmonitor.com",
        "createsend.com",
        "emarsys.net",
    }
)

SOCIAL_DOMAINS = frozenset(
    {
        "facebookmail.com",
        "facebook.com",
        "twitter.com",
        "x.com",
        "linkedin.com",
        "linkedinmail.com",
        "instagram.com",
        "tiktok.com",
        "pinterest.com",
        "reddit.com",
        "redditmail.com",
        "tumblr.com",
        "snapchat.com",
        "discord.com",
        "discordapp.com",
        "medium.com",
        "quora.com",
        "mastodon.social",
        "threads.net",
        "bsky.app",
        "youtube.com",
        "whatsapp.com",
        "telegram.org",
        "nextdoor.com",
        "meetup.com",
        "twitch.tv",
        "strava.com",
    }
)

DEV_NOTIFICATION_DOMAINS = frozenset(
    {
        "github.com",
        "gitlab.com",
        "bitbucket.org",
        "circleci.com",
        "travis-ci.com",
        "atlassian.com",
        "atlassian.net",
        "slack.com",
        "notion.so",
        "linear.app",
        "asana.com",
        "trello.com",
        "clickup.com",
        "monday.com",
        "figma.com",
        "vercel.com",
        "netlify.com",
        "heroku.com",
        "render.com",
        "fly.io",
        "sentry.io",
        "datadog.com",
        "pagerduty.com",
        "opsgenie.com",
        "statuspage.io",
        "newrelic.com",
        "npmjs.com",
        "pypi.org",
        "docker.com",
        "supabase.com",
        "cloudflare.com",
        "digitalocean.com",
        "stripe.com",
        "twilio.com",
        "auth0.com",
    }
)

# Marketing tool names found in X-Mailer headers
MARKETING_MAILER_NAMES = (
    "mailchimp",
    "sendgrid",
    "hubspot",
    "klaviyo",
    "brevo",
    "sendinblue",
    "mailerlite",
    "convertkit",
    "activecampaign",
    "campaign monitor",
    "constant contact",
    "mailgun",
    "mandrill",
    "mailjet",
    "omnisend",
    "emarsys",
    "iterable",
    "sailthru",
    "marketo",
    "pardot",
    "eloqua",
)

# Local-part prefixes of addresses that are not read by a person
AUTOMATED_LOCAL_PREFIXES = (
    "noreply",
    "no-reply",
    "donotreply",
    "do-not-reply",
    "notification",
    "alert",
    "mailer-daemon",
    "postmaster",
    "support",
    "info",
    "hello",
    "team",
    "news",
    "updates",
    "service",
    "billing",
)

# =============================================================================
# Compiled Regex Patterns
# =============================================================================

TRANSACTIONAL_SUBJECT_PATTERNS = [
    regex.compile(
        r"\b(receipt|invoice|order\s*(confirmation|#|number)|payment\s*(confirmation|received)"
        r"|shipping\s*(confirmation|update|notification)|delivery\s*(confirmation|update)"
        r"|tracking\s*(number|#|update))\b",
        regex.IGNORECASE,
    ),
    regex.compile(
        r"\b(your\s+order|order\s+shipped|out\s+for\s+delivery|has\s+been\s+delivered)\b",
        regex.IGNORECASE,
    ),
    regex.compile(
        r"\b(subscription\s+(renewed|confirmed|activated)|billing\s+statement|charge\s+of)\b",
        regex.IGNORECASE,
    ),
    regex.compile(
        r"\b(password\s+reset|verify\s+your|confirm\s+your\s+(email|account)|two-factor|2fa"
        r"|security\s+code)\b",
        regex.IGNORECASE,
    ),
]

PROMOTIONAL_SUBJECT_PATTERNS = [
    regex.compile(r"\b\d+%\s*(off|discount)\b", regex.IGNORECASE),
    regex.compile(r"\b(sale|promo|coupon|deals?)\b", regex.IGNORECASE),
    regex.compile(r"\bfree\s+shipping\b", regex.IGNORECASE),
    regex.compile(r"\b(last\s+chance|flash\s+sale|limited\s+time)\b", regex.IGNORECASE),
    regex.compile(r"\b(shop\s+now|save\s+up\s+to|cashback)\b", regex.IGNORECASE),
    regex.compile(r"\b(win|winner|prize|reward|bonus|unlock|claim)\b", regex.IGNORECASE),
]

REPLY_FORWARD_PATTERN = regex.compile(r"^(re|fwd|fw)\s*:", regex.IGNORECASE)


def _search(pattern: regex.Pattern, text: str) -> bool:
    try:
        return pattern.search(text, timeout=REGEX_TIMEOUT) is not None
    except TimeoutError:
        logger.warning("heuristic_regex_timeout", pattern=pattern.pattern[:50])
        return False


# ---------------------------------------------------------------------------
# Signal helpers
# ---------------------------------------------------------------------------


def domain_matches(domain: str, domains: frozenset[str]) -> bool:
    """True when `domain` or any parent domain is in `domains`."""
    parts = domain.lower().split(".")
    return any(".".join(parts[i:]) in domains for i in range(len(parts) - 1))


def is_automated_sender(address: str) -> bool:
    local = address.split("@", 1)[0].lower()
    return local.startswith(AUTOMATED_LOCAL_PREFIXES)


def has_marketing_mailer(x_mailer: str) -> bool:
    lower = x_mailer.lower()
    return any(name in lower for name in MARKETING_MAILER_NAMES)


def has_promotional_subject(subject: str) -> bool:
    return any(_search(p, subject) for p in PROMOTIONAL_SUBJECT_PATTERNS)


def has_transactional_subject(subject: str) -> bool:
    return any(_search(p, subject) for p in TRANSACTIONAL_SUBJECT_PATTERNS)


def is_reply_or_forward(subject: str) -> bool:
    return _search(REPLY_FORWARD_PATTERN, subject.strip())


def looks_personal(record: EmailRecord) -> bool:
    """No bulk-mail signal at all: probably written by a person."""
    domain = record.sender.domain
    return not (
        record.is_noreply
        or is_automated_sender(record.sender.address)
        or record.has_list_unsubscribe
        or record.has_precedence_bulk
        or record.has_campaign_id
        or record.body_length >= PERSONAL_MAX_BODY_LENGTH
        or domain_matches(domain, MARKETING_SENDING_DOMAINS)
        or domain_matches(domain, SOCIAL_DOMAINS)
        or domain_matches(domain, DEV_NOTIFICATION_DOMAINS)
    )


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class HeuristicRule:
    """One ordered rule."""

    name: str
    test: Callable[[EmailRecord], bool]
    category: Category
    confidence: float
    sender_level: bool = False


@dataclass(frozen=True, slots=True)
class HeuristicMatch:
    """Result of the first rule that matched."""

    rule: str
    category: Category
    confidence: float
    sender_level: bool


RULES: tuple[HeuristicRule, ...] = (
    # Safety tier: protected categories first
    HeuristicRule(
        "starred-email",
        lambda r: "STARRED" in r.labels,
        "important",
        0.92,
    ),
    HeuristicRule(
        "gmail-important-personal",
        lambda r: "IMPORTANT" in r.labels and looks_personal(r),
        "important",
        0.90,
    ),
    HeuristicRule(
        "gmail-category-personal",
        lambda r: "CATEGORY_PERSONAL" in r.labels and not is_automated_sender(r.sender.address),
        "personal",
        0.88,
    ),
    HeuristicRule(
        "reply-forward-personal",
        lambda r: is_reply_or_forward(r.subject) and looks_personal(r),
        "personal",
        0.85,
    ),
    # Known sending domains
    HeuristicRule(
        "known-marketing-domain",
        lambda r: domain_matches(r.sender.domain, MARKETING_SENDING_DOMAINS),
        "marketing",
        0.95,
        sender_level=True,
    ),
    HeuristicRule(
        "known-social-domain",
        lambda r: domain_matches(r.sender.domain, SOCIAL_DOMAINS),
        "social",
        0.93,
        sender_level=True,
    ),
    HeuristicRule(
        "known-dev-tool-domain",
        lambda r: domain_matches(r.sender.domain, DEV_NOTIFICATION_DOMAINS),
        "notification",
        0.92,
        sender_level=True,
    ),
    # Subjects
    HeuristicRule(
        "transactional-subject",
        lambda r: has_transactional_subject(r.subject),
        "transactional",
        0.88,
    ),
    HeuristicRule(
        "promotional-subject-with-unsubscribe",
        lambda r: r.has_list_unsubscribe and has_promotional_subject(r.subject),
        "marketing",
        0.88,
    ),
    # Marketing headers
    HeuristicRule(
        "x-campaign-or-marketing-mailer",
        lambda r: r.has_campaign_id or (bool(r.x_mailer) and has_marketing_mailer(r.x_mailer)),
        "marketing",
        0.85,
        sender_level=True,
    ),
    HeuristicRule(
        "return-path-mismatch-unsubscribe",
        lambda r: r.has_return_path_mismatch and r.has_list_unsubscribe,
        "marketing",
        0.82,
        sender_level=True,
    ),
    # Catch-alls
    HeuristicRule(
        "noreply-with-unsubscribe",
        lambda r: r.is_noreply and r.has_list_unsubscribe,
        "newsletter",
        0.80,
        sender_level=True,
    ),
    HeuristicRule(
        "list-unsubscribe-header",
        lambda r: r.has_list_unsubscribe,
        "newsletter",
        0.78,
        sender_level=True,
    ),
    HeuristicRule(
        "precedence-bulk",
        lambda r: r.has_precedence_bulk,
        "newsletter",
        0.75,
        sender_level=True,
    ),
    HeuristicRule(
        "noreply-no-unsubscribe",
        lambda r: r.is_noreply and not r.has_list_unsubscribe,
        "transactional",
        0.72,
    ),
)


class HeuristicClassifier:
    """Applies RULES in order and returns the first confident match."""

    def __init__(
        self,
        rules: tuple[HeuristicRule, ...] = RULES,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    ):
        self._rules = rules
        self._min_confidence = min_confidence

    def match(self, record: EmailRecord) -> HeuristicMatch | None:
        for rule in self._rules:
            if rule.confidence < self._min_confidence:
                continue
            if rule.test(record):
                return HeuristicMatch(
                    rule=rule.name,
                    category=rule.category,
                    confidence=rule.confidence,
                    sender_level=rule.sender_level,
                )
        return None
