from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import replace
from typing import Any, Callable, Mapping, Optional

import aiosqlite

from ..errors import NotFoundError
from ..moderation.policy import GroupPolicy, apply_patch, policy_from_document

log = logging.getLogger("groupguard.policy_store")

ChangeListener = Callable[[GroupPolicy], None]


class PolicyStore:
    """SQLite-backed GroupPolicy records with a write-through memory front.

    Policies are validated when they enter (``update``) and when they are
    loaded; everything handed out is a frozen, already-valid record.
    """

    def __init__(self, sqlite_path: str, on_change: Optional[ChangeListener] = None) -> None:
        self._path = sqlite_path
        self._cache: dict[str, GroupPolicy] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.on_change = on_change

    async def init(self) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS group_policies (
                  group_id TEXT PRIMARY KEY,
                  session_id TEXT NOT NULL,
                  group_name TEXT NOT NULL DEFAULT '',
                  document TEXT NOT NULL,
                  updated_at REAL NOT NULL
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_group_policies_session ON group_policies(session_id)")
            await db.commit()
        log.info("PolicyStore initialized at %s", self._path)

    def _lock(self, group_id: str) -> asyncio.Lock:
        lock = self._locks.get(group_id)
        if lock is None:
            lock = self._locks[group_id] = asyncio.Lock()
        return lock

    async def _load(self, group_id: str) -> Optional[GroupPolicy]:
        cached = self._cache.get(group_id)
        if cached is not None:
            return cached
        async with aiosqlite.connect(self._path) as db:
            async with db.execute(
                "SELECT session_id, group_name, document FROM group_policies WHERE group_id = ?",
                (group_id,),
            ) as cur:
                row = await cur.fetchone()
        if row is None:
            return None
        policy = policy_from_document(group_id, row[0], json.loads(row[2]), group_name=row[1])
        self._cache[group_id] = policy
        return policy

    async def _write(self, policy: GroupPolicy) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                """
                INSERT INTO group_policies (group_id, session_id, group_name, document, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(group_id) DO UPDATE SET
                  session_id = excluded.session_id,
                  group_name = excluded.group_name,
                  document = excluded.document,
                  updated_at = excluded.updated_at
                """,
                (policy.group_id, policy.session_id, policy.group_name, json.dumps(policy.to_document()), time.time()),
            )
            await db.commit()
        self._cache[policy.group_id] = policy

    def _notify(self, policy: GroupPolicy) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(policy)
        except Exception:
            log.exception("Policy change listener failed for group %s", policy.group_id)

    async def get(self, group_id: str) -> GroupPolicy:
        policy = await self._load(group_id)
        if policy is None:
            raise NotFoundError(f"unknown group {group_id}")
        return policy

    async def ensure(self, group_id: str, session_id: str, group_name: Optional[str] = None) -> GroupPolicy:
        """Return the group's policy, creating the default one on first sight."""
        cached = self._cache.get(group_id)
        if cached is not None and (group_name is None or cached.group_name == group_name):
            return cached
        async with self._lock(group_id):
            policy = await self._load(group_id)
            if policy is None:
                policy = GroupPolicy(group_id=group_id, session_id=session_id, group_name=group_name or "")
                await self._write(policy)
                log.info("Created default policy for group %s (session %s)", group_id, session_id)
                self._notify(policy)
            elif group_name is not None and policy.group_name != group_name:
                policy = replace(policy, group_name=group_name)
                await self._write(policy)
                self._notify(policy)
            return policy

    async def update(self, group_id: str, patch: Mapping[str, Any]) -> GroupPolicy:
        """Validate and apply a patch. Raises ValidationError, NotFoundError."""
        async with self._lock(group_id):
            current = await self.get(group_id)
            updated = apply_patch(current, patch)
            await self._write(updated)
        self._notify(updated)
        return updated

    async def list_for_session(self, session_id: str) -> list[GroupPolicy]:
        async with aiosqlite.connect(self._path) as db:
            async with db.execute(
                "SELECT group_id FROM group_policies WHERE session_id = ? ORDER BY group_name",
                (session_id,),
            ) as cur:
                rows = await cur.fetchall()
        policies = []
        for (group_id,) in rows:
            policy = await self._load(group_id)
            if policy is not None:
                policies.append(policy)
        return policies

    async def delete(self, group_id: str) -> bool:
        async with self._lock(group_id):
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute("DELETE FROM group_policies WHERE group_id = ?", (group_id,))
                await db.commit()
                deleted = int(cur.rowcount) > 0
            self._cache.pop(group_id, None)
        self._locks.pop(group_id, None)
        return deleted
