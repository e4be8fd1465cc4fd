from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Hashable

log = logging.getLogger("groupguard.jobs")

JobFn = Callable[[], Awaitable[None]]


class JobScheduler:
    """Keyed, cancellable delayed jobs.

    Scheduling a key that is already pending replaces the earlier job. Keys
    are tuples such as ``("reconnect", session_id)`` or ``("unmute", group_id)``
    so a session or group can cancel everything bound to it.
    """

    def __init__(self) -> None:
        self._jobs: dict[Hashable, asyncio.Task] = {}

    def schedule(self, key: Hashable, delay_seconds: float, fn: JobFn) -> asyncio.Task:
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(self._run(key, delay_seconds, fn))
        self._jobs[key] = task
        return task

    async def _run(self, key: Hashable, delay_seconds: float, fn: JobFn) -> None:
        try:
            await asyncio.sleep(max(0.0, delay_seconds))
            # From here on the job is running, not pending
            if self._jobs.get(key) is asyncio.current_task():
                self._jobs.pop(key, None)
            await fn()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Scheduled job %r failed", key)
        finally:
            if self._jobs.get(key) is asyncio.current_task():
                self._jobs.pop(key, None)

    def cancel(self, key: Hashable) -> bool:
        task = self._jobs.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_where(self, predicate: Callable[[Hashable], bool]) -> int:
        keys = [k for k in self._jobs if predicate(k)]
        for k in keys:
            self.cancel(k)
        return len(keys)

    def pending(self, key: Hashable) -> bool:
        task = self._jobs.get(key)
        return task is not None and not task.done()

    def __len__(self) -> int:
        return len(self._jobs)

    async def close(self) -> None:
        tasks = list(self._jobs.values())
        self._jobs.clear()
        for t in tasks:
            if t is not asyncio.current_task():
                t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
