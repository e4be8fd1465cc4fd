from __future__ import annotations

import logging
import re

from ..models import SessionState
from ..moderation.action_engine import display_account
from ..moderation.policy import DEFAULT_COMMANDS, TIERS
from ..services.stats import format_uptime
from .dispatcher import CommandContext, CommandRegistry

log = logging.getLogger("groupguard.commands.builtin")

registry = CommandRegistry()

MAX_CLEAR = 100
TIER_HEADINGS = {
    "public": "*👥 Public Commands:*",
    "admin": "*👑 Admin Commands:*",
    "owner": "*🔧 Owner Commands:*",
}


class UsageError(Exception):
    """Bad command arguments; the message is sent back as is."""


def account_arg(ctx: CommandContext, raw: str, *, digits_only: bool = False) -> str:
    value = raw.strip().lstrip("@")
    if digits_only:
        value = re.sub(r"[^0-9]", "", value)
    if not value:
        raise UsageError("❌ Please mention a user.")
    suffix = ctx.services.settings.account_id_suffix
    if suffix and "@" not in value:
        value += suffix
    return value


def unmute_job_key(group_id: str) -> tuple[str, str]:
    return ("unmute", group_id)


# ---------------------------------------------------------------------------
# Public


@registry.command("menu")
async def menu(ctx: CommandContext) -> None:
    prefix = ctx.policy.prefix
    lines = ["📋 *Available Commands*", ""]
    for tier in TIERS:
        names = [
            name for name, setting in ctx.policy.active_commands.items()
            if setting.enabled and setting.tier == tier and name in DEFAULT_COMMANDS
        ]
        if not names:
            continue
        lines.append(TIER_HEADINGS[tier])
        lines.extend(f"{prefix}{name} - {DEFAULT_COMMANDS[name].description}" for name in names)
        lines.append("")
    await ctx.reply("\n".join(lines).strip())


@registry.command("rules")
async def rules(ctx: CommandContext) -> None:
    text = ctx.policy.rules_message or "No rules have been set for this group."
    await ctx.reply(f"📜 *Group Rules*\n\n{text}")


@registry.command("info")
async def info(ctx: CommandContext) -> None:
    settings = ctx.services.settings
    await ctx.reply(
        "🤖 *Bot Information*\n\n"
        f"Name: {settings.bot_name}\n"
        f"Version: {settings.bot_version}\n"
        f"Uptime: {format_uptime(ctx.services.stats.uptime_seconds())}\n"
        "Status: Online ✅\n"
        f"Session: {ctx.msg.session.session_id}"
    )


@registry.command("group", failure="❌ Failed to get group information.")
async def group(ctx: CommandContext) -> None:
    meta = await ctx.services.metadata.fetch(ctx.connection, ctx.msg.conversation_id)
    created = meta.created_at.strftime("%Y-%m-%d") if meta.created_at else "Unknown"
    await ctx.reply(
        "👥 *Group Information*\n\n"
        f"Name: {meta.subject}\n"
        f"Members: {len(meta.participants)}\n"
        f"Admins: {meta.admin_count}\n"
        f"Created: {created}\n"
        f"Description: {meta.description or 'No description'}"
    )


# ---------------------------------------------------------------------------
# Admin: participants


async def _participants(
    ctx: CommandContext,
    op: str,
    done: str,
    *,
    missing: str = "❌ Please mention a user.",
    digits_only: bool = False,
) -> None:
    if not ctx.args:
        await ctx.reply(missing)
        return
    try:
        target = account_arg(ctx, ctx.args[0], digits_only=digits_only)
    except UsageError as e:
        await ctx.reply(str(e))
        return
    await ctx.connection.update_participants(ctx.msg.conversation_id, [target], op)  # type: ignore[arg-type]
    if op in ("promote", "demote"):
        ctx.services.metadata.invalidate(ctx.msg.conversation_id)
    ctx.services.audit.record(ctx.msg.entry(f"participant_{op}", f"{op} {target}", with_message=False))
    await ctx.reply(done.format(user=display_account(target)))


@registry.command("ban", failure="❌ Failed to ban user. Make sure the bot is an admin.")
async def ban(ctx: CommandContext) -> None:
    await _participants(ctx, "remove", "✅ User {user} has been removed from the group.")


@registry.command("kick", failure="❌ Failed to remove user. Make sure the bot is an admin.")
async def kick(ctx: CommandContext) -> None:
    await _participants(ctx, "remove", "✅ User {user} has been removed from the group.")


@registry.command("add", failure="❌ Failed to add user. They might have privacy settings preventing this.")
async def add(ctx: CommandContext) -> None:
    await _participants(
        ctx,
        "add",
        "✅ User +{user} has been added to the group.",
        missing="❌ Please provide a phone number to add.",
        digits_only=True,
    )


@registry.command("promote", failure="❌ Failed to promote user.")
async def promote(ctx: CommandContext) -> None:
    await _participants(ctx, "promote", "✅ User {user} has been promoted to admin.")


@registry.command("demote", failure="❌ Failed to demote user.")
async def demote(ctx: CommandContext) -> None:
    await _participants(ctx, "demote", "✅ User {user} has been demoted from admin.")


@registry.command("warn")
async def warn(ctx: CommandContext) -> None:
    if not ctx.args:
        await ctx.reply("❌ Please mention a user to warn.")
        return
    reason = " ".join(ctx.args[1:]) or "No reason provided"
    await ctx.reply(f"⚠️ *Warning*\n\nUser: {ctx.args[0]}\nReason: {reason}\n\nPlease follow the group rules.")


@registry.command("clear")
async def clear(ctx: CommandContext) -> None:
    try:
        count = int(ctx.args[0]) if ctx.args else 1
    except ValueError:
        count = 1
    if count > MAX_CLEAR:
        await ctx.reply(f"❌ Cannot delete more than {MAX_CLEAR} messages at once.")
        return
    await ctx.reply(f"🗑️ Attempting to clear {max(1, count)} message(s). Note: Only recent messages can be deleted.")


# ---------------------------------------------------------------------------
# Admin: policy


@registry.command("mute", failure="❌ Failed to mute group.")
async def mute(ctx: CommandContext) -> None:
    services = ctx.services
    group_id = ctx.policy.group_id
    await services.policies.update(group_id, {"adminOnlyMode": True})
    services.scheduler.cancel(unmute_job_key(group_id))

    text = "🔇 Group has been muted. Only admins can send messages."
    minutes = 0
    if ctx.args:
        try:
            minutes = int(ctx.args[0])
        except ValueError:
            minutes = 0
    if minutes > 0:
        text += f" Duration: {minutes} minutes."
        session_id = ctx.msg.session.session_id
        conversation_id = ctx.msg.conversation_id

        async def _auto_unmute() -> None:
            await services.policies.update(group_id, {"adminOnlyMode": False})
            conn = services.connection_for(session_id)
            if conn is not None:
                await conn.send(conversation_id, "🔊 Group has been automatically unmuted.")
            log.info("Auto-unmuted group %s", group_id)

        services.scheduler.schedule(unmute_job_key(group_id), minutes * 60, _auto_unmute)
    await ctx.reply(text)


@registry.command("unmute", failure="❌ Failed to unmute group.")
async def unmute(ctx: CommandContext) -> None:
    group_id = ctx.policy.group_id
    ctx.services.scheduler.cancel(unmute_job_key(group_id))
    await ctx.services.policies.update(group_id, {"adminOnlyMode": False})
    await ctx.reply("🔊 Group has been unmuted. All members can send messages.")


@registry.command("setwelcome", failure="❌ Failed to set welcome message.")
async def setwelcome(ctx: CommandContext) -> None:
    text = ctx.command.rest.strip()
    if not text:
        await ctx.reply("❌ Please provide a welcome message.")
        return
    await ctx.services.policies.update(ctx.policy.group_id, {"welcomeMessage": text})
    await ctx.reply(f"✅ Welcome message has been updated:\n\n{text}")


@registry.command("setrules", failure="❌ Failed to set rules message.")
async def setrules(ctx: CommandContext) -> None:
    text = ctx.command.rest.strip()
    if not text:
        await ctx.reply("❌ Please provide the group rules.")
        return
    await ctx.services.policies.update(ctx.policy.group_id, {"rulesMessage": text})
    await ctx.reply(f"✅ Group rules have been updated:\n\n{text}")


@registry.command("antilink", failure="❌ Failed to update anti-link settings.")
async def antilink(ctx: CommandContext) -> None:
    policy = ctx.policy
    prefix = policy.prefix
    if not ctx.args:
        status = "enabled" if policy.anti_link_active else "disabled"
        await ctx.reply(
            f"🔗 Anti-link protection is currently {status}.\n\n"
            f"Usage:\n{prefix}antilink on/off\n{prefix}antilink whitelist add/remove <link>"
        )
        return

    action = ctx.args[0].lower()
    if action in ("on", "enable"):
        await ctx.services.policies.update(policy.group_id, {"antiLinkActive": True})
        await ctx.reply("✅ Anti-link protection enabled.")
    elif action in ("off", "disable"):
        await ctx.services.policies.update(policy.group_id, {"antiLinkActive": False})
        await ctx.reply("❌ Anti-link protection disabled.")
    elif action == "whitelist":
        await _whitelist(ctx, ctx.args[1:])
    else:
        await ctx.reply(f"❌ Usage: {prefix}antilink on/off")


async def _whitelist(ctx: CommandContext, args: tuple[str, ...]) -> None:
    policy = ctx.policy
    if len(args) < 2 or args[0].lower() not in ("add", "remove"):
        await ctx.reply(f"❌ Usage: {policy.prefix}antilink whitelist add/remove <link>")
        return
    op, link = args[0].lower(), args[1]
    entries = [{"pattern": w.pattern, "matchMode": w.match_mode} for w in policy.whitelist]
    if op == "add":
        if not any(e["pattern"] == link for e in entries):
            entries.append({"pattern": link, "matchMode": "substring"})
        await ctx.services.policies.update(policy.group_id, {"whitelist": entries})
        await ctx.reply(f"✅ Added {link} to whitelist.")
    else:
        entries = [e for e in entries if e["pattern"] != link]
        await ctx.services.policies.update(policy.group_id, {"whitelist": entries})
        await ctx.reply(f"✅ Removed {link} from whitelist.")


# ---------------------------------------------------------------------------
# Owner


@registry.command("groups", failure="❌ Failed to get groups list.")
async def groups(ctx: CommandContext) -> None:
    session = ctx.msg.session
    policies = await ctx.services.policies.list_for_session(session.session_id)
    lines = [f"📋 *All Groups ({len(policies)})*", ""]
    status = "🟢" if session.state is SessionState.CONNECTED else "🔴"
    for index, p in enumerate(policies, start=1):
        lines.append(f"{index}. {status} {p.group_name or p.group_id}")
        lines.append(f"   ID: {p.group_id}")
        lines.append(f"   Session: {p.session_id}")
        lines.append("")
    await ctx.reply("\n".join(lines).strip())
