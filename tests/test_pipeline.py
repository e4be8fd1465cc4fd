"""Tests for the moderation pipeline: precedence, one action per message, failures."""

from __future__ import annotations

import pytest

from groupguard.context import MessageContext
from groupguard.errors import ActionFailed, ProviderError
from groupguard.models import Identity, TenantSession
from groupguard.moderation.action_engine import ActionExecutor
from groupguard.moderation.flood import FloodWindowTracker
from groupguard.moderation.pipeline import ModerationPipeline
from groupguard.moderation.policy import GroupPolicy, apply_patch
from groupguard.services.audit import AuditLog
from groupguard.services.metadata_cache import GroupMetadataCache
from groupguard.services.stats import RuntimeStats
from groupguard.testing.fakes import FakeConnection, FakeLogRepository, make_group, make_message

GROUP = "g1@g.us"
ADMIN = "1@s.whatsapp.net"
MEMBER = "2@s.whatsapp.net"
OWNER = "9@s.whatsapp.net"


@pytest.fixture
def logs():
    return FakeLogRepository()


@pytest.fixture
def conn():
    return FakeConnection("s1", {GROUP: make_group(GROUP, admins=[ADMIN], members=[MEMBER])})


@pytest.fixture
def stats():
    return RuntimeStats()


@pytest.fixture
def pipeline(logs, stats):
    audit = AuditLog(logs)
    return ModerationPipeline(
        executor=ActionExecutor(audit=audit, stats=stats, retry_attempts=2, retry_base_delay=0),
        flood=FloodWindowTracker(),
        metadata=GroupMetadataCache(ttl_seconds=30),
        audit=audit,
        owner_account_ids=(OWNER,),
    )


def _ctx(conn, policy, text, sender=MEMBER):
    session = TenantSession(tenant_id="t1", session_id="s1", identity=Identity("bot@s.whatsapp.net"))
    return MessageContext(session=session, connection=conn, message=make_message(GROUP, sender, text), policy=policy)


def _policy(**patch) -> GroupPolicy:
    return apply_patch(GroupPolicy(group_id=GROUP, session_id="s1"), patch)


class TestPrecedence:
    async def test_admin_only_gate_drops_member_message(self, pipeline, conn, logs):
        policy = _policy(adminOnlyMode=True, antiLinkActive=True, antiLinkAction="ban")
        ctx = _ctx(conn, policy, "buy at spam.com")
        verdict = await pipeline.evaluate(ctx)
        await pipeline.audit.drain()

        assert verdict.hit is not None and verdict.hit.rule == "admin-only"
        assert conn.deleted == [(GROUP, ctx.message.id)]
        assert conn.participant_updates == []
        assert conn.sent == []
        assert logs.kinds() == ["message_deleted"]

    async def test_admin_and_owner_pass_the_gate(self, pipeline, conn):
        policy = _policy(adminOnlyMode=True)
        assert not (await pipeline.evaluate(_ctx(conn, policy, "hi", sender=ADMIN))).acted
        assert not (await pipeline.evaluate(_ctx(conn, policy, "hi", sender=OWNER))).acted
        assert conn.deleted == []

    async def test_gate_fails_open_without_metadata(self, pipeline, conn):
        conn.fail["fetch_group_metadata"] = ProviderError("offline")
        verdict = await pipeline.evaluate(_ctx(conn, _policy(adminOnlyMode=True), "hi"))
        assert not verdict.acted
        assert conn.deleted == []

    async def test_link_wins_over_profanity_and_flood(self, pipeline, conn, logs):
        policy = _policy(
            antiLinkActive=True,
            antiLinkAction="warn",
            antiProfanityActive=True,
            antiProfanityAction="ban",
            prohibitedWords=["darn"],
            antiFloodActive=True,
            limit=1,
        )
        verdict = await pipeline.evaluate(_ctx(conn, policy, "darn spam.com"))
        await pipeline.audit.drain()

        assert verdict.hit.rule == "anti-link"
        assert len(conn.deleted) == 1
        assert conn.texts() == ["⚠️ Warning: 2 - anti-link violation"]
        assert conn.participant_updates == []
        assert logs.kinds() == ["action_warn"]
        assert "[anti-link]" in logs.entries[0].details

    async def test_ban_removes_sender(self, pipeline, conn):
        policy = _policy(antiProfanityActive=True, antiProfanityAction="ban", prohibitedWords=["darn"])
        await pipeline.evaluate(_ctx(conn, policy, "oh DARN"))
        assert conn.participant_updates == [(GROUP, (MEMBER,), "remove")]

    async def test_flood_triggers_above_limit(self, pipeline, conn, stats):
        policy = _policy(antiFloodActive=True, antiFloodAction="mute", limit=2, timeframeSeconds=60)
        verdicts = [await pipeline.evaluate(_ctx(conn, policy, f"msg {i}")) for i in range(3)]
        assert [v.acted for v in verdicts] == [False, False, True]
        assert verdicts[-1].hit.rule == "anti-flood"
        assert conn.texts() == ["🔇 2 has been muted - flood detected"]
        assert stats.actions_executed == 1


class TestAutoResponse:
    async def test_sent_when_nothing_acted(self, pipeline, conn, logs):
        policy = _policy(autoResponses=[{"keyword": "price", "response": "See the pinned list."}])
        verdict = await pipeline.evaluate(_ctx(conn, policy, "What is the PRICE?"))
        await pipeline.audit.drain()
        assert verdict.auto_response == "See the pinned list."
        assert conn.texts() == ["See the pinned list."]
        assert logs.kinds() == ["auto_response"]

    async def test_suppressed_when_an_action_ran(self, pipeline, conn):
        policy = _policy(
            antiProfanityActive=True,
            prohibitedWords=["darn"],
            autoResponses=[{"keyword": "darn", "response": "Language!"}],
        )
        verdict = await pipeline.evaluate(_ctx(conn, policy, "darn"))
        assert verdict.acted
        assert verdict.auto_response is None
        assert conn.texts() == []


class TestFailures:
    async def test_action_failure_raises_and_is_audited(self, pipeline, conn, logs, stats):
        conn.fail["delete_message"] = ProviderError("not admin")
        policy = _policy(antiProfanityActive=True, prohibitedWords=["darn"])
        with pytest.raises(ActionFailed) as exc:
            await pipeline.evaluate(_ctx(conn, policy, "darn"))
        await pipeline.audit.drain()
        assert exc.value.action == "delete"
        assert exc.value.rule == "anti-profanity"
        assert stats.actions_failed == 1
        assert logs.kinds() == ["action_failed"]

    async def test_transient_failure_is_retried(self, pipeline, conn, stats):
        attempts = []
        original = conn.delete_message

        async def flaky(conversation_id, message_ref):
            attempts.append(message_ref)
            if len(attempts) == 1:
                raise ProviderError("busy")
            await original(conversation_id, message_ref)

        conn.delete_message = flaky
        policy = _policy(antiProfanityActive=True, prohibitedWords=["darn"])
        verdict = await pipeline.evaluate(_ctx(conn, policy, "darn"))
        assert verdict.acted
        assert len(attempts) == 2
        assert len(conn.deleted) == 1
        assert stats.actions_failed == 0

    async def test_audit_failure_does_not_block(self, pipeline, conn, logs):
        logs.fail = RuntimeError("disk full")
        policy = _policy(antiProfanityActive=True, prohibitedWords=["darn"])
        verdict = await pipeline.evaluate(_ctx(conn, policy, "darn"))
        await pipeline.audit.drain()
        assert verdict.acted
        assert pipeline.audit.failures == 1
