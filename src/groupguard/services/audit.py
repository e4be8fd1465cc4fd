from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..interfaces import LogRepository
from ..models import LogEntry

log = logging.getLogger("groupguard.audit")


class AuditLog:
    """Fire-and-forget front for the log repository.

    ``record`` returns immediately; repository failures are logged here and
    never reach message processing.
    """

    def __init__(self, repository: Optional[LogRepository]) -> None:
        self._repo = repository
        self._pending: set[asyncio.Task] = set()
        self.failures = 0

    def record(self, entry: LogEntry) -> None:
        if self._repo is None:
            return
        task = asyncio.get_running_loop().create_task(self._append(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _append(self, entry: LogEntry) -> None:
        try:
            await self._repo.append(entry)  # type: ignore[union-attr]
        except Exception:
            self.failures += 1
            log.exception("Audit append failed kind=%s session=%s group=%s", entry.kind, entry.session_id, entry.group_id)

    async def drain(self) -> None:
        """Wait for in-flight appends (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
