from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..interfaces import ProviderConnection
from ..models import GroupMetadata


@dataclass
class _Entry:
    value: GroupMetadata
    expires_at: float


class GroupMetadataCache:
    """Short-lived cache of group metadata keyed by conversation id.

    Admin checks run on every gated message and every admin command, so the
    provider is only asked again after the TTL or an explicit invalidation
    (metadata change events, promote/demote).
    """

    def __init__(self, ttl_seconds: float = 30, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._store: dict[str, _Entry] = {}

    def get(self, conversation_id: str) -> Optional[GroupMetadata]:
        entry = self._store.get(conversation_id)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._store.pop(conversation_id, None)
            return None
        return entry.value

    def set(self, metadata: GroupMetadata) -> None:
        if self._ttl <= 0:
            return
        self._store[metadata.conversation_id] = _Entry(metadata, self._clock() + self._ttl)

    async def fetch(self, connection: ProviderConnection, conversation_id: str) -> GroupMetadata:
        cached = self.get(conversation_id)
        if cached is not None:
            return cached
        metadata = await connection.fetch_group_metadata(conversation_id)
        self.set(metadata)
        return metadata

    def invalidate(self, conversation_id: str) -> None:
        self._store.pop(conversation_id, None)

    def clear(self) -> None:
        self._store.clear()
