"""
Interface contracts for groupguard collaborators.

The chat network, the audit log and the live operator channels are supplied
from outside; the core only depends on these protocols.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Mapping, Protocol, Sequence, runtime_checkable

from .models import GroupMetadata, LogEntry, ParticipantOp, ProviderEvent, TenantSession


@runtime_checkable
class ProviderConnection(Protocol):
    """One open connection for a single session.

    Operations raise ``ProviderError`` (or any exception) on failure; callers
    treat every failure as recoverable.
    """

    def events(self) -> AsyncIterator[ProviderEvent]:
        """Stream of provider events; ends when the connection is gone."""
        ...

    async def send(self, conversation_id: str, content: str) -> None:
        ...

    async def delete_message(self, conversation_id: str, message_ref: str) -> None:
        ...

    async def update_participants(self, conversation_id: str, ids: Sequence[str], op: ParticipantOp) -> None:
        ...

    async def fetch_group_metadata(self, conversation_id: str) -> GroupMetadata:
        ...

    async def fetch_all_groups(self) -> Mapping[str, GroupMetadata]:
        ...

    async def logout(self) -> None:
        ...

    async def close(self) -> None:
        """Release network resources without logging the account out."""
        ...


@runtime_checkable
class ConnectionProvider(Protocol):
    async def open(self, session_id: str) -> ProviderConnection:
        """Construct a connection. Raises on construction failure."""
        ...


@runtime_checkable
class LogRepository(Protocol):
    async def append(self, entry: LogEntry) -> None:
        ...


@runtime_checkable
class SessionRepository(Protocol):
    async def save(self, session: TenantSession) -> None:
        ...

    async def delete(self, session_id: str) -> None:
        ...


@runtime_checkable
class RealtimeChannel(Protocol):
    """A live operator connection (aiohttp's WebSocketResponse fits)."""

    async def send_json(self, data: Any) -> None:
        ...

    async def close(self) -> Any:
        ...


def validate_provider(provider: object) -> ConnectionProvider:
    """Validate and return ConnectionProvider interface."""
    if not isinstance(provider, ConnectionProvider):
        raise TypeError(f"Object {provider!r} does not implement ConnectionProvider")
    return provider
