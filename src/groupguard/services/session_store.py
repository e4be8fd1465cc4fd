from __future__ import annotations

import time
from typing import Any, Optional

import aiosqlite

from ..models import TenantSession


class SessionStore:
    """Last known status of each session, for dashboards after a restart."""

    def __init__(self, sqlite_path: str) -> None:
        self._path = sqlite_path

    async def init(self) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                  session_id TEXT PRIMARY KEY,
                  tenant_id TEXT NOT NULL,
                  status TEXT NOT NULL,
                  qr_code TEXT NULL,
                  account_id TEXT NULL,
                  profile_name TEXT NULL,
                  last_activity REAL NOT NULL,
                  updated_at REAL NOT NULL
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_sessions_tenant ON sessions(tenant_id)")
            await db.commit()

    async def save(self, session: TenantSession) -> None:
        snap = session.snapshot()
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                """
                INSERT INTO sessions (session_id, tenant_id, status, qr_code, account_id, profile_name, last_activity, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                  tenant_id = excluded.tenant_id,
                  status = excluded.status,
                  qr_code = excluded.qr_code,
                  account_id = excluded.account_id,
                  profile_name = excluded.profile_name,
                  last_activity = excluded.last_activity,
                  updated_at = excluded.updated_at
                """,
                (
                    snap["session_id"],
                    snap["tenant_id"],
                    snap["status"],
                    snap["qr_code"],
                    snap["account_id"],
                    snap["profile_name"],
                    float(snap["last_activity"]),
                    time.time(),
                ),
            )
            await db.commit()

    async def get(self, session_id: str) -> Optional[dict[str, Any]]:
        async with aiosqlite.connect(self._path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,)) as cur:
                row = await cur.fetchone()
        return dict(row) if row is not None else None

    async def delete(self, session_id: str) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
            await db.commit()
