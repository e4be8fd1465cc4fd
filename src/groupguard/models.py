from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    AWAITING_SCAN = "awaiting_scan"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is SessionState.FAILED


@dataclass(frozen=True)
class Identity:
    """Account the session is paired with on the network."""

    account_id: str
    display_name: str = ""


@dataclass
class TenantSession:
    tenant_id: str
    session_id: str
    state: SessionState = SessionState.INITIALIZING
    elevated: bool = False
    # Set by an explicit operator disconnect; suppresses reconnects
    stopped: bool = False
    identity: Optional[Identity] = None
    pairing_artifact: Optional[str] = None
    last_activity: float = field(default_factory=time.time)
    history: list[SessionState] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append(self.state)

    @property
    def live(self) -> bool:
        """Holds the tenant's session slot."""
        return not self.state.terminal and not self.stopped

    def snapshot(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "tenant_id": self.tenant_id,
            "status": self.state.value,
            "qr_code": self.pairing_artifact,
            "account_id": self.identity.account_id if self.identity else None,
            "profile_name": self.identity.display_name if self.identity else None,
            "last_activity": self.last_activity,
        }


# ---------------------------------------------------------------------------
# Network objects

ParticipantOp = Literal["add", "remove", "promote", "demote"]


@dataclass(frozen=True)
class Participant:
    id: str
    # "admin" | "superadmin" | None
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role in ("admin", "superadmin")


@dataclass(frozen=True)
class GroupMetadata:
    conversation_id: str
    subject: str = ""
    participants: tuple[Participant, ...] = ()
    created_at: Optional[datetime] = None
    description: str = ""

    def participant(self, account_id: str) -> Optional[Participant]:
        for p in self.participants:
            if p.id == account_id:
                return p
        return None

    @property
    def admin_count(self) -> int:
        return sum(1 for p in self.participants if p.is_admin)


@dataclass(frozen=True)
class ChatMessage:
    id: str
    conversation_id: str
    sender_id: str
    text: str = ""
    from_me: bool = False
    is_group: bool = True
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Provider events (tagged variant consumed by the per-session worker)


@dataclass(frozen=True)
class QrReady:
    payload: str


@dataclass(frozen=True)
class StateChanged:
    state: SessionState
    identity: Optional[Identity] = None
    # True when the network reports the account logged out (no reconnect)
    logged_out: bool = False
    reason: str = ""


@dataclass(frozen=True)
class InboundMessage:
    message: ChatMessage


@dataclass(frozen=True)
class GroupMetadataChanged:
    conversation_id: str
    subject: Optional[str] = None
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()


ProviderEvent = Union[QrReady, StateChanged, InboundMessage, GroupMetadataChanged]


# ---------------------------------------------------------------------------
# Audit


@dataclass(frozen=True)
class LogEntry:
    tenant_id: str
    kind: str
    details: str = ""
    session_id: Optional[str] = None
    group_id: Optional[str] = None
    actor_ref: Optional[str] = None
    message_ref: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
