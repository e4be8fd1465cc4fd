from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .interfaces import ProviderConnection
from .models import ChatMessage, LogEntry, TenantSession
from .moderation.policy import GroupPolicy


@dataclass(frozen=True)
class MessageContext:
    """Everything a lane needs to process one inbound group message."""

    session: TenantSession
    connection: ProviderConnection
    message: ChatMessage
    policy: GroupPolicy

    @property
    def conversation_id(self) -> str:
        return self.message.conversation_id

    @property
    def sender_id(self) -> str:
        return self.message.sender_id

    @property
    def text(self) -> str:
        return self.message.text

    def entry(self, kind: str, details: str = "", *, actor_ref: Optional[str] = None, with_message: bool = True) -> LogEntry:
        return LogEntry(
            tenant_id=self.session.tenant_id,
            session_id=self.session.session_id,
            group_id=self.policy.group_id,
            kind=kind,
            details=details,
            actor_ref=actor_ref if actor_ref is not None else self.sender_id,
            message_ref=self.message.id if with_message else None,
        )
