from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Mapping, Optional, Sequence, TypeVar

from ..commands.dispatcher import CommandDispatcher, CommandOutcome
from ..config import Settings
from ..context import MessageContext
from ..errors import ActionFailed, ProviderError
from ..interfaces import ProviderConnection
from ..models import ChatMessage, GroupMetadata, ParticipantOp, ProviderEvent, TenantSession
from ..moderation.action_engine import display_account
from ..moderation.pipeline import ModerationPipeline, Verdict
from ..services.audit import AuditLog
from ..services.policy_store import PolicyStore
from ..services.stats import RuntimeStats

log = logging.getLogger("groupguard.router")

ACTION_FAILED_NOTICE = "⚠️ Could not apply the moderation action ({action}). Make sure the bot is an admin."

T = TypeVar("T")


class BoundedConnection:
    """ProviderConnection view whose calls give up after ``timeout`` seconds.

    Lane jobs talk to the provider through this, so a hung call surfaces as
    a ProviderError instead of stalling the conversation.
    """

    def __init__(self, inner: ProviderConnection, timeout: float) -> None:
        self.inner = inner
        self.timeout = timeout

    async def _call(self, op: str, aw: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(aw, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ProviderError(f"{op} timed out after {self.timeout:g}s") from e

    def events(self) -> AsyncIterator[ProviderEvent]:
        return self.inner.events()

    async def send(self, conversation_id: str, content: str) -> None:
        await self._call("send", self.inner.send(conversation_id, content))

    async def delete_message(self, conversation_id: str, message_ref: str) -> None:
        await self._call("delete_message", self.inner.delete_message(conversation_id, message_ref))

    async def update_participants(self, conversation_id: str, ids: Sequence[str], op: ParticipantOp) -> None:
        await self._call("update_participants", self.inner.update_participants(conversation_id, ids, op))

    async def fetch_group_metadata(self, conversation_id: str) -> GroupMetadata:
        return await self._call("fetch_group_metadata", self.inner.fetch_group_metadata(conversation_id))

    async def fetch_all_groups(self) -> Mapping[str, GroupMetadata]:
        return await self._call("fetch_all_groups", self.inner.fetch_all_groups())

    async def logout(self) -> None:
        await self._call("logout", self.inner.logout())

    async def close(self) -> None:
        await self._call("close", self.inner.close())


class MessageRouter:
    """Lane-side handling of one inbound group message.

    Messages in inactive groups are dropped. Every other message is audited;
    a recognized command goes to the dispatcher and everything else goes
    through the moderation pipeline. Failures stop here.
    """

    def __init__(
        self,
        *,
        policies: PolicyStore,
        dispatcher: CommandDispatcher,
        pipeline: ModerationPipeline,
        audit: AuditLog,
        stats: RuntimeStats,
        settings: Settings,
    ) -> None:
        self.policies = policies
        self.dispatcher = dispatcher
        self.pipeline = pipeline
        self.audit = audit
        self.stats = stats
        self.settings = settings

    def _bounded(self, connection: ProviderConnection) -> BoundedConnection:
        return BoundedConnection(connection, self.settings.provider_call_timeout_seconds)

    async def route(
        self, session: TenantSession, connection: ProviderConnection, message: ChatMessage
    ) -> Optional[CommandOutcome | Verdict]:
        try:
            policy = await self.policies.ensure(message.conversation_id, session.session_id)
        except Exception:
            log.exception("Could not load policy for %s", message.conversation_id)
            return None

        if not policy.active:
            log.debug("Skipping message in inactive group %s", message.conversation_id)
            return None
        self.stats.messages_processed += 1

        connection = self._bounded(connection)
        ctx = MessageContext(session=session, connection=connection, message=message, policy=policy)
        self.audit.record(ctx.entry("message_received", f"Message from {message.sender_id}: {message.text}"))
        try:
            outcome = await self.dispatcher.dispatch(ctx)
            if outcome is not CommandOutcome.IGNORED:
                return outcome
            return await self.pipeline.evaluate(ctx)
        except ActionFailed as e:
            log.warning("Moderation action failed in %s: %s", message.conversation_id, e)
            try:
                await connection.send(message.conversation_id, ACTION_FAILED_NOTICE.format(action=e.action))
            except Exception:
                log.debug("Failure notice not delivered to %s", message.conversation_id, exc_info=True)
        except Exception:
            log.exception("Error applying group rules in %s", message.conversation_id)
        return None

    async def welcome(
        self,
        session: TenantSession,
        connection: ProviderConnection,
        conversation_id: str,
        added: Sequence[str],
    ) -> bool:
        """Greet participants that just joined. Returns True when sent."""
        if not added or not self.settings.welcome_enabled:
            return False
        policy = await self.policies.ensure(conversation_id, session.session_id)
        if not policy.active or not policy.welcome_message:
            return False
        connection = self._bounded(connection)
        names = ", ".join(f"@{display_account(a)}" for a in added)
        try:
            await connection.send(conversation_id, f"{policy.welcome_message}\n\n👋 {names}")
        except Exception as e:
            log.warning("Welcome message failed in %s: %s", conversation_id, e)
            return False
        return True
