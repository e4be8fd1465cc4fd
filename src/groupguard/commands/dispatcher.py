from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

from ..config import Settings
from ..context import MessageContext
from ..errors import PermissionDenied
from ..interfaces import ProviderConnection
from ..moderation.policy import CommandSetting
from ..permissions import PermissionTier, require_tier
from ..services.audit import AuditLog
from ..services.jobs import JobScheduler
from ..services.metadata_cache import GroupMetadataCache
from ..services.policy_store import PolicyStore
from ..services.stats import RuntimeStats

log = logging.getLogger("groupguard.commands")

DENIED_NOTICE = "❌ You don't have permission to use this command."
DEFAULT_FAILURE_NOTICE = "❌ Something went wrong running that command."


@dataclass(frozen=True)
class ParsedCommand:
    name: str
    args: tuple[str, ...]
    # Everything after the command name, whitespace preserved
    rest: str


def parse_command(text: str, prefix: str) -> Optional[ParsedCommand]:
    if not prefix or not text.startswith(prefix):
        return None
    body = text[len(prefix):].strip()
    if not body:
        return None
    parts = body.split(maxsplit=1)
    rest = parts[1] if len(parts) > 1 else ""
    return ParsedCommand(name=parts[0].lower(), args=tuple(rest.split()), rest=rest)


class CommandOutcome(str, Enum):
    IGNORED = "ignored"
    EXECUTED = "executed"
    DENIED = "denied"
    FAILED = "failed"


@dataclass
class CommandServices:
    """Shared collaborators handed to every command handler."""

    policies: PolicyStore
    scheduler: JobScheduler
    metadata: GroupMetadataCache
    audit: AuditLog
    stats: RuntimeStats
    settings: Settings
    # Current connection of a session; None once it is gone
    connection_for: Callable[[str], Optional[ProviderConnection]]


@dataclass
class CommandContext:
    msg: MessageContext
    command: ParsedCommand
    services: CommandServices

    @property
    def args(self) -> tuple[str, ...]:
        return self.command.args

    @property
    def policy(self):
        return self.msg.policy

    @property
    def connection(self) -> ProviderConnection:
        return self.msg.connection

    async def reply(self, text: str) -> None:
        await self.msg.connection.send(self.msg.conversation_id, text)


Handler = Callable[[CommandContext], Awaitable[None]]


@dataclass(frozen=True)
class CommandSpec:
    name: str
    handler: Handler
    failure_notice: str = DEFAULT_FAILURE_NOTICE


class CommandRegistry:
    def __init__(self) -> None:
        self._commands: dict[str, CommandSpec] = {}

    def command(self, name: str, *, failure: str = DEFAULT_FAILURE_NOTICE) -> Callable[[Handler], Handler]:
        def decorator(fn: Handler) -> Handler:
            self._commands[name] = CommandSpec(name=name, handler=fn, failure_notice=failure)
            return fn
        return decorator

    def get(self, name: str) -> Optional[CommandSpec]:
        return self._commands.get(name)

    def names(self) -> Iterable[str]:
        return self._commands.keys()


class CommandDispatcher:
    """Recognizes prefixed commands and runs them under tier checks.

    A recognized command runs one bounded side effect and is always audited.
    Handler and provider failures are answered in-channel and swallowed.
    """

    def __init__(self, registry: CommandRegistry, services: CommandServices) -> None:
        self.registry = registry
        self.services = services

    def recognize(self, ctx: MessageContext) -> Optional[tuple[ParsedCommand, CommandSpec, CommandSetting]]:
        parsed = parse_command(ctx.text, ctx.policy.prefix)
        if parsed is None:
            return None
        setting = ctx.policy.command(parsed.name)
        if setting is None or not setting.enabled:
            return None
        spec = self.registry.get(parsed.name)
        if spec is None:
            return None
        return parsed, spec, setting

    async def dispatch(self, ctx: MessageContext) -> CommandOutcome:
        found = self.recognize(ctx)
        if found is None:
            return CommandOutcome.IGNORED
        parsed, spec, setting = found
        audit = self.services.audit
        stats = self.services.stats

        try:
            await require_tier(
                PermissionTier.from_name(setting.tier),
                ctx,
                self.services.metadata,
                self.services.settings.owner_account_ids,
            )
        except PermissionDenied as e:
            stats.commands_denied += 1
            audit.record(ctx.entry("command_denied", f"Command: {parsed.name} ({e})"))
            await self._notify(ctx, DENIED_NOTICE)
            return CommandOutcome.DENIED

        started = time.perf_counter()
        try:
            await spec.handler(CommandContext(msg=ctx, command=parsed, services=self.services))
        except Exception as e:
            stats.commands_failed += 1
            log.warning("Command %s failed in %s: %s", parsed.name, ctx.conversation_id, e, exc_info=e)
            audit.record(ctx.entry("command_failed", f"Command: {parsed.name}, Args: {parsed.rest} - {e!r}"))
            await self._notify(ctx, spec.failure_notice)
            return CommandOutcome.FAILED

        stats.commands_executed += 1
        log.debug("Command %s executed in %.1fms", parsed.name, (time.perf_counter() - started) * 1000)
        audit.record(ctx.entry("command_executed", f"Command: {parsed.name}, Args: {parsed.rest}"))
        return CommandOutcome.EXECUTED

    async def _notify(self, ctx: MessageContext, text: str) -> None:
        try:
            await ctx.connection.send(ctx.conversation_id, text)
        except Exception:
            log.warning("Could not deliver notice to %s", ctx.conversation_id, exc_info=True)
