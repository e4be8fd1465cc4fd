from __future__ import annotations

import pytest
from aiohttp.test_utils import TestClient, TestServer
from conftest import ADMIN, GROUP, MEMBER, connect, say, wait_until

from groupguard.app import GroupGuardApp
from groupguard.commands.builtin import unmute_job_key
from groupguard.errors import NotFoundError, ValidationError
from groupguard.testing.fakes import FakeChannel


class TestPolicies:
    async def test_set_policy_validates(self, app, provider):
        await connect(app, provider)
        with pytest.raises(ValidationError) as exc:
            await app.set_policy(GROUP, {"antiLinkAction": "nuke"})
        assert exc.value.issues[0].path == "$.antiLinkAction"
        assert (await app.get_policy(GROUP)).anti_link_action == "delete"

    async def test_set_policy_publishes_group_update(self, app, provider):
        await connect(app, provider)
        channel = FakeChannel()
        app.hub.register("operator", channel)
        await app.set_policy(GROUP, {"rulesMessage": "Be nice"})
        await wait_until(lambda: "group_update" in channel.types())
        update = next(m for m in channel.messages if m["type"] == "group_update")
        assert update["group_id"] == GROUP
        assert update["data"]["rulesMessage"] == "Be nice"

    async def test_delete_group_cancels_jobs_and_resets_flood(self, app, provider):
        conn = await connect(app, provider)
        await app.set_policy(GROUP, {"antiFloodActive": True, "limit": 10})
        await say(app, conn, "one", sender=MEMBER)
        await say(app, conn, "!mute 10", sender=ADMIN)
        assert app.flood.count(GROUP, MEMBER) == 1
        assert app.scheduler.pending(unmute_job_key(GROUP))

        await app.delete_group(GROUP)
        assert not app.scheduler.pending(unmute_job_key(GROUP))
        assert app.flood.count(GROUP, MEMBER) == 0
        with pytest.raises(NotFoundError):
            await app.get_policy(GROUP)
        with pytest.raises(NotFoundError):
            await app.delete_group(GROUP)


async def test_health_endpoint(settings, provider):
    guard = GroupGuardApp(settings, provider)
    client = TestClient(TestServer(guard.build_web_app()))
    await client.start_server()
    try:
        resp = await client.get("/healthz")
        body = await resp.json()
        assert resp.status == 200
        assert body["ok"] is True
        assert body["sessions"] == 0
    finally:
        await client.close()


def test_rejects_non_provider(settings):
    with pytest.raises(TypeError):
        GroupGuardApp(settings, object())


class TestGroupActivity:
    async def test_inactive_group_is_left_alone(self, app, provider, logs):
        conn = await connect(app, provider)
        await app.set_policy(
            GROUP,
            {"isActive": False, "autoResponses": [{"keyword": "hello", "response": "Hi"}]},
        )
        await say(app, conn, "hello")
        await say(app, conn, "!info")
        assert conn.sent == []
        assert "message_received" not in logs.kinds()
        updated = [e for e in logs.entries if e.kind == "group_updated"]
        assert "deactivated" in updated[0].details
        assert updated[0].tenant_id == "tenant-1"

        await app.set_policy(GROUP, {"isActive": True})
        await say(app, conn, "hello")
        assert conn.texts(GROUP) == ["Hi"]

    async def test_policy_updates_without_activity_change_are_not_audited(self, app, provider, logs):
        conn = await connect(app, provider)
        await app.set_policy(GROUP, {"rulesMessage": "Be nice"})
        await say(app, conn, "hi")
        assert "group_updated" not in logs.kinds()
