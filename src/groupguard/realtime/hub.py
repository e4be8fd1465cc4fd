from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Mapping, Optional

from ..interfaces import RealtimeChannel
from ..services.stats import RuntimeStats

log = logging.getLogger("groupguard.realtime")


class _Subscriber:
    """One operator channel with its bounded outbound queue and writer task."""

    def __init__(self, hub: "RealtimeHub", user_id: str, channel: RealtimeChannel, queue_size: int) -> None:
        self.hub = hub
        self.user_id = user_id
        self.channel = channel
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.task = asyncio.get_running_loop().create_task(self._write())

    def offer(self, message: dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    async def _write(self) -> None:
        while True:
            message = await self.queue.get()
            try:
                await asyncio.wait_for(self.channel.send_json(message), timeout=self.hub.send_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("Dropping realtime channel of %s: %s", self.user_id, str(e) or type(e).__name__)
                self.hub._drop(self, close=True)
                return
            finally:
                self.queue.task_done()

    async def close(self) -> None:
        if self.task is not asyncio.current_task():
            self.task.cancel()
            await asyncio.gather(self.task, return_exceptions=True)
        try:
            await self.channel.close()
        except Exception:
            log.debug("Closing realtime channel of %s failed", self.user_id, exc_info=True)


class RealtimeHub:
    """Fans lifecycle events out to live operator channels.

    ``publish`` never waits on a channel: each subscriber is drained by its
    own writer task, and a subscriber whose queue is full, whose send fails
    or times out is dropped. Delivery is unscoped: every registered user
    receives every event.
    """

    def __init__(
        self,
        *,
        queue_size: int = 100,
        send_timeout: float = 5.0,
        stats: Optional[RuntimeStats] = None,
    ) -> None:
        self.queue_size = max(1, int(queue_size))
        self.send_timeout = float(send_timeout)
        self.stats = stats
        self._subscribers: dict[str, _Subscriber] = {}
        self._closing: set[asyncio.Task] = set()

    def register(self, user_id: str, channel: RealtimeChannel) -> None:
        current = self._subscribers.get(user_id)
        if current is not None and current.channel is channel:
            return
        previous = self._subscribers.pop(user_id, None)
        if previous is not None:
            log.info("Replacing realtime channel of %s", user_id)
            self._close_later(previous)
        self._subscribers[user_id] = _Subscriber(self, user_id, channel, self.queue_size)
        log.info("Realtime channel registered for %s (%d connected)", user_id, len(self._subscribers))

    def unregister(self, user_id: str, channel: Optional[RealtimeChannel] = None) -> bool:
        """Remove a user's channel; with ``channel`` only if it is still the current one."""
        sub = self._subscribers.get(user_id)
        if sub is None or (channel is not None and sub.channel is not channel):
            return False
        self._drop(sub, close=False)
        return True

    def publish(self, kind: str, payload: Mapping[str, Any]) -> int:
        """Queue an event for every subscriber. Returns how many accepted it."""
        message = {"type": kind, **payload}
        delivered = 0
        for sub in list(self._subscribers.values()):
            if sub.offer(message):
                delivered += 1
            else:
                log.warning("Realtime queue full for %s; dropping channel", sub.user_id)
                self._drop(sub, close=True)
        if self.stats is not None:
            self.stats.events_published += 1
        return delivered

    def send_to_user(self, user_id: str, kind: str, payload: Optional[Mapping[str, Any]] = None) -> bool:
        sub = self._subscribers.get(user_id)
        if sub is None:
            return False
        if not sub.offer({"type": kind, **(payload or {})}):
            self._drop(sub, close=True)
            return False
        return True

    def handle_client_message(self, user_id: str, message: Any) -> None:
        if not isinstance(message, Mapping):
            log.debug("Ignoring malformed realtime message from %s", user_id)
            return
        kind = message.get("type")
        if kind == "ping":
            self.send_to_user(user_id, "pong", {"timestamp": int(time.time() * 1000)})
        elif kind == "subscribe":
            # Accepted for compatibility; delivery stays unscoped
            log.debug("User %s subscribed to %s", user_id, message.get("channels"))
        else:
            log.debug("Unknown realtime message type %r from %s", kind, user_id)

    def connected_users(self) -> list[str]:
        return list(self._subscribers)

    def __len__(self) -> int:
        return len(self._subscribers)

    def _drop(self, sub: _Subscriber, *, close: bool) -> None:
        if self._subscribers.get(sub.user_id) is sub:
            del self._subscribers[sub.user_id]
        if close:
            self._close_later(sub)
        elif sub.task is not asyncio.current_task():
            sub.task.cancel()

    def _close_later(self, sub: _Subscriber) -> None:
        task = asyncio.get_running_loop().create_task(sub.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def close(self) -> None:
        subs = list(self._subscribers.values())
        self._subscribers.clear()
        for sub in subs:
            await sub.close()
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)
