"""End-to-end command handling through a connected session."""

from __future__ import annotations

from conftest import ADMIN, GROUP, MEMBER, OWNER, connect, say, settle

from groupguard.commands.builtin import unmute_job_key
from groupguard.commands.dispatcher import DENIED_NOTICE, parse_command
from groupguard.errors import ProviderError
from groupguard.models import GroupMetadataChanged


class TestParse:
    def test_name_lowercased_and_args_split(self):
        parsed = parse_command("!BAN  @123   spamming hard", "!")
        assert parsed.name == "ban"
        assert parsed.args == ("@123", "spamming", "hard")
        assert parsed.rest == "@123   spamming hard"

    def test_multi_char_prefix(self):
        assert parse_command("..menu", "..").name == "menu"

    def test_not_a_command(self):
        assert parse_command("hello !menu", "!") is None
        assert parse_command("!", "!") is None


class TestPublicCommands:
    async def test_menu_lists_commands_by_tier(self, app, provider):
        conn = await connect(app, provider)
        await say(app, conn, "!menu")
        text = conn.texts(GROUP)[-1]
        assert "!menu - Show available commands" in text
        assert "*👑 Admin Commands:*" in text
        assert "!groups - List all groups" in text

    async def test_info_reports_version(self, app, provider, logs):
        conn = await connect(app, provider)
        await say(app, conn, "!info")
        assert "Version: 9.9.9" in conn.texts(GROUP)[-1]
        assert "command_executed" in logs.kinds()

    async def test_group_info(self, app, provider):
        conn = await connect(app, provider)
        await say(app, conn, "!group")
        text = conn.texts(GROUP)[-1]
        assert "Name: Test Group" in text
        assert "Members: 2" in text
        assert "Admins: 1" in text


class TestTiers:
    async def test_member_denied_admin_command(self, app, provider, logs):
        conn = await connect(app, provider)
        await say(app, conn, "!ban @300", sender=MEMBER)
        assert conn.participant_updates == []
        assert conn.texts(GROUP) == [DENIED_NOTICE]
        assert "command_denied" in logs.kinds()

    async def test_admin_bans(self, app, provider, logs):
        conn = await connect(app, provider)
        await say(app, conn, "!ban @300", sender=ADMIN)
        assert conn.participant_updates == [(GROUP, ("300@s.whatsapp.net",), "remove")]
        assert conn.texts(GROUP) == ["✅ User 300 has been removed from the group."]
        assert "participant_remove" in logs.kinds()
        assert "command_executed" in logs.kinds()

    async def test_owner_only_groups(self, app, provider):
        conn = await connect(app, provider)
        await say(app, conn, "!groups", sender=ADMIN)
        assert conn.texts(GROUP) == [DENIED_NOTICE]
        await say(app, conn, "!groups", sender=OWNER)
        assert "Test Group" in conn.texts(GROUP)[-1]

    async def test_elevated_tenant_account_is_owner(self, app, provider):
        conn = await connect(app, provider, account_id="777@s.whatsapp.net", elevated=True)
        await say(app, conn, "!groups", sender="777@s.whatsapp.net")
        assert conn.texts(GROUP)[-1].startswith("📋 *All Groups (1)*")

    async def test_admin_command_fails_closed_without_metadata(self, app, provider):
        conn = await connect(app, provider)
        conn.fail["fetch_group_metadata"] = ProviderError("offline")
        app.metadata.clear()
        await say(app, conn, "!kick @300", sender=ADMIN)
        assert conn.participant_updates == []
        assert conn.texts(GROUP) == [DENIED_NOTICE]


class TestFallthrough:
    async def test_disabled_command_goes_to_moderation(self, app, provider):
        conn = await connect(app, provider)
        await app.set_policy(
            GROUP,
            {
                "activeCommands": {"menu": {"enabled": False}},
                "autoResponses": [{"keyword": "menu", "response": "Menu is off today."}],
            },
        )
        await say(app, conn, "!menu")
        assert conn.texts(GROUP) == ["Menu is off today."]

    async def test_unknown_command_is_moderated(self, app, provider):
        conn = await connect(app, provider)
        await app.set_policy(GROUP, {"antiProfanityActive": True, "prohibitedWords": ["frobnicate"]})
        message = await say(app, conn, "!frobnicate now")
        assert conn.deleted == [(GROUP, message.id)]


class TestFailures:
    async def test_provider_failure_answered_in_channel(self, app, provider, logs):
        conn = await connect(app, provider)
        conn.fail["update_participants"] = ProviderError("not an admin")
        await say(app, conn, "!promote @300", sender=ADMIN)
        assert conn.texts(GROUP) == ["❌ Failed to promote user."]
        assert "command_failed" in logs.kinds()
        assert app.stats.commands_failed == 1

    async def test_usage_message_for_missing_user(self, app, provider):
        conn = await connect(app, provider)
        await say(app, conn, "!add", sender=ADMIN)
        assert conn.texts(GROUP) == ["❌ Please provide a phone number to add."]
        assert conn.participant_updates == []


class TestPolicyCommands:
    async def test_mute_schedules_and_unmute_cancels(self, app, provider):
        conn = await connect(app, provider)
        await say(app, conn, "!mute 5", sender=ADMIN)
        assert (await app.get_policy(GROUP)).admin_only_mode is True
        assert app.scheduler.pending(unmute_job_key(GROUP))
        assert "Duration: 5 minutes" in conn.texts(GROUP)[-1]

        await say(app, conn, "!unmute", sender=ADMIN)
        assert (await app.get_policy(GROUP)).admin_only_mode is False
        assert not app.scheduler.pending(unmute_job_key(GROUP))

    async def test_set_policy_admin_only_cancels_auto_unmute(self, app, provider):
        conn = await connect(app, provider)
        await say(app, conn, "!mute 5", sender=ADMIN)
        await app.set_policy(GROUP, {"adminOnlyMode": True})
        assert not app.scheduler.pending(unmute_job_key(GROUP))

    async def test_muted_group_drops_member_messages(self, app, provider):
        conn = await connect(app, provider)
        await say(app, conn, "!mute", sender=ADMIN)
        message = await say(app, conn, "can I talk?", sender=MEMBER)
        assert (GROUP, message.id) in conn.deleted
        assert not app.scheduler.pending(unmute_job_key(GROUP))

    async def test_setrules_then_rules(self, app, provider):
        conn = await connect(app, provider)
        await say(app, conn, "!setrules Be kind.\nNo spam.", sender=ADMIN)
        await say(app, conn, "!rules")
        assert conn.texts(GROUP)[-1] == "📜 *Group Rules*\n\nBe kind.\nNo spam."

    async def test_antilink_toggle_and_whitelist(self, app, provider):
        conn = await connect(app, provider)
        await say(app, conn, "!antilink on", sender=ADMIN)
        await say(app, conn, "!antilink whitelist add docs.python.org", sender=ADMIN)
        policy = await app.get_policy(GROUP)
        assert policy.anti_link_active is True
        assert [w.pattern for w in policy.whitelist] == ["docs.python.org"]

        kept = await say(app, conn, "read https://docs.python.org/3/")
        dropped = await say(app, conn, "spam at bad.example.com")
        deleted_ids = [ref for _, ref in conn.deleted]
        assert kept.id not in deleted_ids
        assert dropped.id in deleted_ids

    async def test_welcome_on_join(self, app, provider):
        conn = await connect(app, provider)
        await say(app, conn, "!setwelcome Welcome aboard!", sender=ADMIN)
        conn.emit(GroupMetadataChanged(GROUP, added=("300@s.whatsapp.net",)))
        await settle(app)
        assert conn.texts(GROUP)[-1] == "Welcome aboard!\n\n👋 @300"
