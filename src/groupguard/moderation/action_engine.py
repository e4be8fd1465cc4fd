from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from ..context import MessageContext
from ..errors import ActionFailed
from ..services.audit import AuditLog
from ..services.stats import RuntimeStats

log = logging.getLogger("groupguard.action_engine")

T = TypeVar("T")


def display_account(account_id: str) -> str:
    return account_id.split("@", 1)[0]


class ActionExecutor:
    """Executes a moderation action through the session's connection.

    Provider calls are retried a bounded number of times; what still fails is
    raised as ActionFailed for the lane boundary to report.
    """

    def __init__(
        self,
        *,
        audit: AuditLog,
        stats: Optional[RuntimeStats] = None,
        retry_attempts: int = 2,
        retry_base_delay: float = 0.5,
    ) -> None:
        self.audit = audit
        self.stats = stats or RuntimeStats()
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_base_delay = max(0.0, float(retry_base_delay))

    async def _retry(self, coro_fn: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await coro_fn()
            except asyncio.CancelledError:
                raise
            except Exception:
                attempt += 1
                if attempt >= self.retry_attempts:
                    raise
                await asyncio.sleep(self.retry_base_delay * (2 ** (attempt - 1)))

    async def execute(self, ctx: MessageContext, action: str, *, rule: str, reason: str) -> None:
        conn = ctx.connection
        conversation = ctx.conversation_id
        sender = ctx.sender_id
        who = display_account(sender)

        async def _delete() -> None:
            await conn.delete_message(conversation, ctx.message.id)

        try:
            if action == "delete":
                await self._retry(_delete)

            elif action == "warn":
                await self._retry(_delete)
                await self._retry(lambda: conn.send(conversation, f"⚠️ Warning: {who} - {reason}"))

            elif action == "mute":
                await self._retry(_delete)
                await self._retry(lambda: conn.send(conversation, f"🔇 {who} has been muted - {reason}"))

            elif action == "ban":
                await self._retry(_delete)
                await self._retry(lambda: conn.update_participants(conversation, [sender], "remove"))

            else:
                # Policies are validated, so this only happens with a stale document
                log.warning("Ignoring unknown action %r for rule %s", action, rule)
                return
        except Exception as e:
            self.stats.actions_failed += 1
            self.audit.record(ctx.entry("action_failed", f"{action} failed for {sender} - {reason}: {e!r}"))
            raise ActionFailed(action, rule, e) from e

        self.stats.actions_executed += 1
        self.audit.record(ctx.entry(f"action_{action}", f"[{rule}] {action} executed for {sender} - {reason}"))

    async def drop(self, ctx: MessageContext, *, rule: str, reason: str) -> None:
        """Delete the message without any further sanction."""
        try:
            await self._retry(lambda: ctx.connection.delete_message(ctx.conversation_id, ctx.message.id))
        except Exception as e:
            self.stats.actions_failed += 1
            raise ActionFailed("delete", rule, e) from e
        self.stats.actions_executed += 1
        self.audit.record(ctx.entry("message_deleted", f"Message deleted due to {reason}"))
