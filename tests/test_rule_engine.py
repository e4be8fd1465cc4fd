from __future__ import annotations

import pytest

from groupguard.moderation.policy import AutoResponse, GroupPolicy, WhitelistEntry
from groupguard.moderation.rule_engine import (
    RULE_ANTI_LINK,
    RULE_ANTI_PROFANITY,
    contains_link,
    evaluate_content,
    find_prohibited_word,
    match_auto_response,
    whitelist_matches,
)


@pytest.mark.parametrize(
    "text",
    ["see https://example.com/x", "go to www.example.org", "visit example.com now", "HTTP://EXAMPLE.COM"],
)
def test_contains_link(text):
    assert contains_link(text)


@pytest.mark.parametrize("text", ["hello there", "version 2.0 released", "a.b"])
def test_no_link(text):
    assert not contains_link(text)


class TestWhitelist:
    def test_exact_is_case_sensitive(self):
        entry = WhitelistEntry("Example.com", "exact")
        assert whitelist_matches("see Example.com/page", entry)
        assert not whitelist_matches("see example.com/page", entry)

    def test_substring_ignores_case(self):
        entry = WhitelistEntry("YouTube.com", "substring")
        assert whitelist_matches("https://www.youtube.com/watch?v=1", entry)

    def test_token_matches_leading_label(self):
        entry = WhitelistEntry("https://www.github.com", "token")
        assert whitelist_matches("clone from gist.GITHUB.io", entry)
        assert not whitelist_matches("gitlab.com", entry)


class TestEvaluateContent:
    def test_link_blocked_unless_whitelisted(self):
        policy = GroupPolicy(
            group_id="g",
            session_id="s",
            anti_link_active=True,
            anti_link_action="warn",
            whitelist=(WhitelistEntry("docs.python.org"),),
        )
        hit = evaluate_content(policy, "spam at bad.example.com")
        assert hit is not None
        assert (hit.rule, hit.action) == (RULE_ANTI_LINK, "warn")
        assert evaluate_content(policy, "read https://docs.python.org/3/") is None

    def test_link_rule_precedes_profanity(self):
        policy = GroupPolicy(
            group_id="g",
            session_id="s",
            anti_link_active=True,
            anti_profanity_active=True,
            anti_profanity_action="ban",
            prohibited_words=("darn",),
        )
        hit = evaluate_content(policy, "darn, look at spam.com")
        assert hit is not None and hit.rule == RULE_ANTI_LINK

    def test_profanity_is_case_insensitive_substring(self):
        policy = GroupPolicy(group_id="g", session_id="s", anti_profanity_active=True, prohibited_words=("darn",))
        hit = evaluate_content(policy, "DARNIT all")
        assert hit is not None and hit.rule == RULE_ANTI_PROFANITY
        assert find_prohibited_word("clean text", ("darn",)) is None

    def test_inactive_rules_do_nothing(self):
        policy = GroupPolicy(group_id="g", session_id="s", prohibited_words=("darn",))
        assert evaluate_content(policy, "darn spam.com") is None


def test_first_auto_response_wins():
    responses = (AutoResponse("hello", "Hi!"), AutoResponse("hell", "Second"))
    match = match_auto_response("well HELLO there", responses)
    assert match is not None and match.response == "Hi!"
    assert match_auto_response("nothing", responses) is None
