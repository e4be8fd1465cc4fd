from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from .policy import AutoResponse, GroupPolicy, WhitelistEntry

# scheme-prefixed, www.-prefixed, or a bare label.tld
LINK_RE = re.compile(r"(https?://[^\s]+|www\.[^\s]+|\b[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}\b)", re.I)

RULE_ADMIN_ONLY = "admin-only"
RULE_ANTI_LINK = "anti-link"
RULE_ANTI_PROFANITY = "anti-profanity"
RULE_ANTI_FLOOD = "anti-flood"
RULE_AUTO_RESPONSE = "auto-response"


@dataclass(frozen=True)
class RuleHit:
    rule: str
    action: str
    reason: str


def contains_link(text: str) -> bool:
    return bool(LINK_RE.search(text))


def _leading_label(pattern: str) -> str:
    host = re.sub(r"^[a-z]+://", "", pattern.strip().lower())
    if host.startswith("www."):
        host = host[4:]
    return host.split(".", 1)[0]


def whitelist_matches(text: str, entry: WhitelistEntry) -> bool:
    if entry.match_mode == "exact":
        return entry.pattern in text
    if entry.match_mode == "substring":
        return entry.pattern.lower() in text.lower()
    if entry.match_mode == "token":
        label = _leading_label(entry.pattern)
        return bool(label) and label in text.lower()
    return False


def is_link_whitelisted(text: str, whitelist: Iterable[WhitelistEntry]) -> bool:
    return any(whitelist_matches(text, entry) for entry in whitelist)


def find_prohibited_word(text: str, words: Iterable[str]) -> Optional[str]:
    lowered = text.lower()
    for word in words:
        if word and word.lower() in lowered:
            return word
    return None


def match_auto_response(text: str, responses: Iterable[AutoResponse]) -> Optional[AutoResponse]:
    lowered = text.lower()
    for item in responses:
        if item.keyword and item.keyword.lower() in lowered:
            return item
    return None


def evaluate_content(policy: GroupPolicy, text: str) -> Optional[RuleHit]:
    """Anti-link then anti-profanity; the first hit wins.

    Sender-dependent rules (admin-only gate, flood) are evaluated by the
    pipeline around this.
    """

    if policy.anti_link_active and contains_link(text) and not is_link_whitelisted(text, policy.whitelist):
        return RuleHit(RULE_ANTI_LINK, policy.anti_link_action, "anti-link violation")

    if policy.anti_profanity_active:
        word = find_prohibited_word(text, policy.prohibited_words)
        if word is not None:
            return RuleHit(RULE_ANTI_PROFANITY, policy.anti_profanity_action, "profanity detected")

    return None
