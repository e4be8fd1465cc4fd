from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Coroutine, Optional

from ..interfaces import ProviderConnection
from ..models import ProviderEvent, SessionState, StateChanged, TenantSession

log = logging.getLogger("groupguard.worker")

LaneJob = Callable[[], Awaitable[None]]
EventHandler = Callable[["SessionWorker", ProviderEvent], Awaitable[None]]


class ConversationLane:
    """Runs the jobs of one conversation strictly in arrival order."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        self._queue: asyncio.Queue[LaneJob] = asyncio.Queue()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def submit(self, job: LaneJob) -> None:
        self._queue.put_nowait(job)

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Lane %s job failed", self.conversation_id)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    async def close(self) -> None:
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)


class SessionWorker:
    """Per-session actor.

    One consumer task drains the session's event queue; ``lock`` serializes
    state changes against operator calls. Events are tagged with the
    connection generation that produced them, so anything emitted by a
    superseded connection is dropped.
    """

    def __init__(self, session: TenantSession, on_event: EventHandler) -> None:
        self.session = session
        self.lock = asyncio.Lock()
        self.connection: Optional[ProviderConnection] = None
        self.generation = 0
        self.reconnect_attempts = 0
        self.closed = False
        self._on_event = on_event
        self._queue: asyncio.Queue[tuple[int, ProviderEvent]] = asyncio.Queue()
        self._lanes: dict[str, ConversationLane] = {}
        self._tasks: set[asyncio.Task] = set()
        self._pump_task: Optional[asyncio.Task] = None
        self._consumer = asyncio.get_running_loop().create_task(self._consume())

    @property
    def session_id(self) -> str:
        return self.session.session_id

    # -- connection ----------------------------------------------------------

    def attach(self, connection: ProviderConnection) -> int:
        self.generation += 1
        self.connection = connection
        self._pump_task = asyncio.get_running_loop().create_task(self._pump(connection, self.generation))
        return self.generation

    async def detach(self) -> None:
        """Drop the current connection and ignore anything it still emits."""
        conn, self.connection = self.connection, None
        self.generation += 1
        pump, self._pump_task = self._pump_task, None
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
        if conn is not None:
            try:
                await conn.close()
            except Exception:
                log.warning("Closing connection of %s failed", self.session_id, exc_info=True)

    async def _pump(self, connection: ProviderConnection, generation: int) -> None:
        reason = "event stream ended"
        try:
            async for event in connection.events():
                self._queue.put_nowait((generation, event))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"event stream failed: {e!r}"
            log.warning("Session %s %s", self.session_id, reason)
        self._queue.put_nowait((generation, StateChanged(SessionState.DISCONNECTED, reason=reason)))

    # -- events --------------------------------------------------------------

    async def _consume(self) -> None:
        while True:
            generation, event = await self._queue.get()
            try:
                if generation == self.generation and not self.closed:
                    await self._on_event(self, event)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Session %s failed handling %s", self.session_id, type(event).__name__)
            finally:
                self._queue.task_done()

    async def idle(self) -> None:
        """Wait until queued events, lane jobs and spawned tasks are done (tests)."""
        await self._queue.join()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        for lane in list(self._lanes.values()):
            await lane.join()

    # -- lanes and background work -------------------------------------------

    def lane(self, conversation_id: str) -> ConversationLane:
        lane = self._lanes.get(conversation_id)
        if lane is None:
            lane = self._lanes[conversation_id] = ConversationLane(conversation_id)
        return lane

    def spawn(self, coro: Coroutine[object, object, None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def close(self) -> None:
        self.closed = True
        await self.detach()
        tasks = [self._consumer, *self._tasks]
        current = asyncio.current_task()
        for t in tasks:
            if t is not current:
                t.cancel()
        await asyncio.gather(*(t for t in tasks if t is not current), return_exceptions=True)
        for lane in list(self._lanes.values()):
            await lane.close()
        self._lanes.clear()
