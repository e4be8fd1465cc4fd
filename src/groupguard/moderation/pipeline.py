from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from ..context import MessageContext
from ..permissions import is_group_admin, is_owner
from ..services.audit import AuditLog
from ..services.metadata_cache import GroupMetadataCache
from .action_engine import ActionExecutor
from .flood import FloodWindowTracker
from .rule_engine import (
    RULE_ADMIN_ONLY,
    RULE_ANTI_FLOOD,
    RULE_AUTO_RESPONSE,
    RuleHit,
    evaluate_content,
    match_auto_response,
)

log = logging.getLogger("groupguard.pipeline")


@dataclass(frozen=True)
class Verdict:
    """Outcome of evaluating one message."""

    hit: Optional[RuleHit] = None
    auto_response: Optional[str] = None

    @property
    def acted(self) -> bool:
        return self.hit is not None


class ModerationPipeline:
    """Ordered, short-circuiting evaluation of a group's policy.

    admin-only gate -> anti-link -> anti-profanity -> anti-flood, stopping at
    the first rule that triggers; the auto-response only runs when nothing
    acted. At most one action is executed per message.
    """

    def __init__(
        self,
        *,
        executor: ActionExecutor,
        flood: FloodWindowTracker,
        metadata: GroupMetadataCache,
        audit: AuditLog,
        owner_account_ids: Iterable[str] = (),
    ) -> None:
        self.executor = executor
        self.flood = flood
        self.metadata = metadata
        self.audit = audit
        self.owner_account_ids = tuple(owner_account_ids)

    async def evaluate(self, ctx: MessageContext) -> Verdict:
        policy = ctx.policy
        text = ctx.text

        if policy.admin_only_mode and not await self._sender_exempt(ctx):
            await self.executor.drop(ctx, rule=RULE_ADMIN_ONLY, reason="admin-only mode")
            return Verdict(hit=RuleHit(RULE_ADMIN_ONLY, "delete", "admin-only mode"))

        hit = evaluate_content(policy, text)
        if hit is None and policy.anti_flood_active:
            if self.flood.hit(policy.group_id, ctx.sender_id, policy.limit, policy.timeframe_seconds):
                hit = RuleHit(RULE_ANTI_FLOOD, policy.anti_flood_action, "flood detected")

        if hit is not None:
            log.info(
                "Rule %s triggered in %s by %s -> %s",
                hit.rule, policy.group_id, ctx.sender_id, hit.action,
            )
            await self.executor.execute(ctx, hit.action, rule=hit.rule, reason=hit.reason)
            return Verdict(hit=hit)

        response = match_auto_response(text, policy.auto_responses)
        if response is not None:
            await ctx.connection.send(ctx.conversation_id, response.response)
            self.audit.record(ctx.entry("auto_response", f"[{RULE_AUTO_RESPONSE}] keyword {response.keyword!r}"))
            return Verdict(auto_response=response.response)

        return Verdict()

    async def _sender_exempt(self, ctx: MessageContext) -> bool:
        if is_owner(ctx, self.owner_account_ids):
            return True
        # When admin status is unknown the message is kept
        return await is_group_admin(ctx, self.metadata, default=True)
