from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import aiosqlite

from ..models import LogEntry

log = logging.getLogger("groupguard.log_store")


@dataclass(frozen=True)
class LogRecord:
    id: int
    tenant_id: str
    session_id: Optional[str]
    group_id: Optional[str]
    kind: str
    details: str
    actor_ref: Optional[str]
    message_ref: Optional[str]
    created_at_iso: str


class LogStore:
    """SQLite-backed audit history."""

    def __init__(self, sqlite_path: str) -> None:
        self._path = sqlite_path

    async def init(self) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_logs (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  tenant_id TEXT NOT NULL,
                  session_id TEXT NULL,
                  group_id TEXT NULL,
                  kind TEXT NOT NULL,
                  details TEXT NOT NULL DEFAULT '',
                  actor_ref TEXT NULL,
                  message_ref TEXT NULL,
                  created_at_iso TEXT NOT NULL
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_audit_logs_tenant ON audit_logs(tenant_id, id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_audit_logs_group ON audit_logs(group_id, id)")
            await db.commit()
        log.info("LogStore initialized at %s", self._path)

    async def append(self, entry: LogEntry) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                """
                INSERT INTO audit_logs (tenant_id, session_id, group_id, kind, details, actor_ref, message_ref, created_at_iso)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.tenant_id,
                    entry.session_id,
                    entry.group_id,
                    entry.kind,
                    entry.details,
                    entry.actor_ref,
                    entry.message_ref,
                    entry.created_at.isoformat(timespec="seconds"),
                ),
            )
            await db.commit()

    async def list_for_group(self, group_id: str, limit: int = 100) -> list[LogRecord]:
        limit = max(1, min(500, int(limit)))
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM audit_logs WHERE group_id = ? ORDER BY id DESC LIMIT ?",
                (group_id, limit),
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(row) for row in rows]

    async def list_for_tenant(self, tenant_id: str, limit: int = 100) -> list[LogRecord]:
        limit = max(1, min(500, int(limit)))
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM audit_logs WHERE tenant_id = ? ORDER BY id DESC LIMIT ?",
                (tenant_id, limit),
            ) as cur:
                rows = await cur.fetchall()
        return [self._from_row(row) for row in rows]

    def _from_row(self, row: aiosqlite.Row) -> LogRecord:
        return LogRecord(
            id=row["id"],
            tenant_id=row["tenant_id"],
            session_id=row["session_id"],
            group_id=row["group_id"],
            kind=row["kind"],
            details=row["details"],
            actor_ref=row["actor_ref"],
            message_ref=row["message_ref"],
            created_at_iso=row["created_at_iso"],
        )
