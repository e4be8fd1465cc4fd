from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from ..commands.builtin import unmute_job_key
from ..config import Settings
from ..errors import ConflictError, NotFoundError, ProviderError
from ..interfaces import ConnectionProvider, ProviderConnection, SessionRepository
from ..models import (
    GroupMetadataChanged,
    InboundMessage,
    LogEntry,
    ProviderEvent,
    QrReady,
    SessionState,
    StateChanged,
    TenantSession,
)
from ..realtime.hub import RealtimeHub
from ..services.audit import AuditLog
from ..services.jobs import JobScheduler
from ..services.metadata_cache import GroupMetadataCache
from ..services.policy_store import PolicyStore
from ..services.stats import RuntimeStats
from .router import MessageRouter
from .state import transition
from .worker import SessionWorker

log = logging.getLogger("groupguard.orchestrator")

S = SessionState


def reconnect_job_key(session_id: str) -> tuple[str, str]:
    return ("reconnect", session_id)


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before reconnect ``attempt`` (0-based), doubling up to ``cap``."""
    return min(cap, base * (2 ** max(0, attempt)))


class SessionOrchestrator:
    """Owns every tenant session and its connection lifecycle.

    Provider events reach a session's worker queue and are applied here under
    the worker's lock; operator calls take the same lock. Sessions share no
    lock, so one slow session never stalls another.
    """

    def __init__(
        self,
        *,
        provider: ConnectionProvider,
        settings: Settings,
        policies: PolicyStore,
        router: MessageRouter,
        scheduler: JobScheduler,
        metadata: GroupMetadataCache,
        audit: AuditLog,
        stats: RuntimeStats,
        hub: Optional[RealtimeHub] = None,
        sessions_repo: Optional[SessionRepository] = None,
    ) -> None:
        self.provider = provider
        self.settings = settings
        self.policies = policies
        self.router = router
        self.scheduler = scheduler
        self.metadata = metadata
        self.audit = audit
        self.stats = stats
        self.hub = hub
        self.sessions_repo = sessions_repo
        self._workers: dict[str, SessionWorker] = {}
        self._tenant_locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Queries

    def get_session(self, session_id: str) -> TenantSession:
        return self._worker(session_id).session

    def list_sessions(self, tenant_id: Optional[str] = None) -> list[TenantSession]:
        return [
            w.session for w in self._workers.values()
            if tenant_id is None or w.session.tenant_id == tenant_id
        ]

    def connection_for(self, session_id: str) -> Optional[ProviderConnection]:
        worker = self._workers.get(session_id)
        return worker.connection if worker is not None else None

    def worker(self, session_id: str) -> SessionWorker:
        return self._worker(session_id)

    def _worker(self, session_id: str) -> SessionWorker:
        worker = self._workers.get(session_id)
        if worker is None:
            raise NotFoundError(f"unknown session {session_id}")
        return worker

    def _tenant_lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._tenant_locks.get(tenant_id)
        if lock is None:
            lock = self._tenant_locks[tenant_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Operator calls

    async def start_session(self, tenant_id: str, session_id: str, *, elevated: bool = False) -> TenantSession:
        """Create (or restart a stopped) session and open its connection.

        Raises ConflictError when the tenant already holds a live session,
        ProviderError when the connection cannot be constructed.
        """
        async with self._tenant_lock(tenant_id):
            existing = self._workers.get(session_id)
            if existing is not None:
                if existing.session.tenant_id != tenant_id:
                    raise ConflictError(f"session {session_id} belongs to another tenant")
                if existing.session.live:
                    raise ConflictError(f"session {session_id} is already active")
            if not elevated:
                for w in self._workers.values():
                    s = w.session
                    if s.tenant_id == tenant_id and s.live and s.session_id != session_id:
                        raise ConflictError(f"tenant {tenant_id} already has active session {s.session_id}")

            if existing is not None and existing.session.state is S.DISCONNECTED:
                worker = existing
                worker.session.stopped = False
                worker.session.elevated = elevated
                worker.reconnect_attempts = 0
            else:
                if existing is not None:
                    # A failed session is replaced by a fresh one under the same id
                    self._workers.pop(session_id, None)
                    await existing.close()
                session = TenantSession(tenant_id=tenant_id, session_id=session_id, elevated=elevated)
                worker = SessionWorker(session, self._handle_event)
                self._workers[session_id] = worker

            async with worker.lock:
                try:
                    await self._open(worker)
                except ProviderError as e:
                    session = worker.session
                    if session.state is S.DISCONNECTED:
                        transition(session, S.INITIALIZING)
                    transition(session, S.FAILED)
                    session.stopped = True
                    log.error("Session %s failed to start: %s", session_id, e)
                    await self._changed(session)
                    raise

            self.stats.sessions_started += 1
            log.info("Session %s started for tenant %s", session_id, tenant_id)
            return worker.session

    async def disconnect_session(self, session_id: str) -> TenantSession:
        """Stop a session; safe to call repeatedly."""
        worker = self._worker(session_id)
        async with worker.lock:
            session = worker.session
            self.scheduler.cancel(reconnect_job_key(session_id))
            session.stopped = True
            if session.state in (S.DISCONNECTED, S.FAILED):
                return session
            await self._to_disconnected(worker)
            log.info("Session %s disconnected by operator", session_id)
            await self._changed(session)
            return session

    async def logout_session(self, session_id: str) -> TenantSession:
        worker = self._worker(session_id)
        async with worker.lock:
            session = worker.session
            self.scheduler.cancel(reconnect_job_key(session_id))
            if session.state is S.FAILED:
                return session
            conn = worker.connection
            if conn is not None:
                try:
                    await conn.logout()
                except Exception as e:
                    log.warning("Logout of %s failed: %s", session_id, e)
            if session.state is not S.DISCONNECTED:
                await self._to_disconnected(worker)
            transition(session, S.FAILED)
            session.stopped = True
            log.info("Session %s logged out", session_id)
            await self._changed(session)
            return session

    async def delete_session(self, session_id: str) -> None:
        worker = self._worker(session_id)
        async with worker.lock:
            self.scheduler.cancel(reconnect_job_key(session_id))
            self._workers.pop(session_id, None)
            session = worker.session
            session.stopped = True
            if session.state not in (S.DISCONNECTED, S.FAILED):
                transition(session, S.DISCONNECTED)
                session.pairing_artifact = None
            worker.closed = True
        await worker.close()
        await self._cancel_group_jobs(session_id)
        if self.sessions_repo is not None:
            try:
                await self.sessions_repo.delete(session_id)
            except Exception:
                log.exception("Could not delete stored session %s", session_id)
        self._publish("session_deleted", {"session_id": session_id, "tenant_id": session.tenant_id})
        log.info("Session %s deleted", session_id)

    async def _cancel_group_jobs(self, session_id: str) -> None:
        try:
            group_ids = {p.group_id for p in await self.policies.list_for_session(session_id)}
        except Exception:
            log.exception("Could not list groups of session %s", session_id)
            return
        keys = {unmute_job_key(g) for g in group_ids}
        cancelled = self.scheduler.cancel_where(lambda key: key in keys)
        if cancelled:
            log.info("Cancelled %d group jobs of session %s", cancelled, session_id)

    async def close(self) -> None:
        """Stop every session without marking it stopped (process shutdown)."""
        workers = list(self._workers.values())
        self._workers.clear()
        for worker in workers:
            self.scheduler.cancel(reconnect_job_key(worker.session_id))
            await worker.close()

    # ------------------------------------------------------------------
    # Connection handling (callers hold worker.lock)

    async def _open(self, worker: SessionWorker) -> None:
        session = worker.session
        if session.state is S.DISCONNECTED:
            transition(session, S.INITIALIZING)
        try:
            connection = await self.provider.open(session.session_id)
        except Exception as e:
            raise ProviderError(f"could not open connection for {session.session_id}: {e}") from e
        worker.attach(connection)
        log.info("Connection opened for session %s (generation %d)", session.session_id, worker.generation)
        await self._changed(session)

    async def _to_disconnected(self, worker: SessionWorker) -> None:
        transition(worker.session, S.DISCONNECTED)
        worker.session.pairing_artifact = None
        await worker.detach()

    def _schedule_reconnect(self, worker: SessionWorker) -> None:
        delay = backoff_delay(
            worker.reconnect_attempts,
            self.settings.reconnect_delay_seconds,
            self.settings.reconnect_max_delay_seconds,
        )
        worker.reconnect_attempts += 1
        self.stats.reconnects_scheduled += 1
        session_id = worker.session_id
        log.info("Reconnecting session %s in %.1fs", session_id, delay)
        self.scheduler.schedule(reconnect_job_key(session_id), delay, lambda: self._reconnect(session_id))

    async def _reconnect(self, session_id: str) -> None:
        worker = self._workers.get(session_id)
        if worker is None:
            return
        async with worker.lock:
            session = worker.session
            if worker.closed or self._workers.get(session_id) is not worker:
                return
            if session.state is not S.DISCONNECTED or session.stopped:
                return
            try:
                await self._open(worker)
            except ProviderError as e:
                log.warning("Reconnect of %s failed: %s", session_id, e)
                transition(session, S.DISCONNECTED)
                await self._changed(session)
                self._schedule_reconnect(worker)

    # ------------------------------------------------------------------
    # Provider events

    async def _handle_event(self, worker: SessionWorker, event: ProviderEvent) -> None:
        if isinstance(event, InboundMessage):
            self._on_message(worker, event)
            return
        async with worker.lock:
            if worker.closed:
                return
            if isinstance(event, QrReady):
                await self._on_qr(worker, event)
            elif isinstance(event, StateChanged):
                await self._on_state(worker, event)
            elif isinstance(event, GroupMetadataChanged):
                await self._on_group_change(worker, event)
            else:
                log.warning("Unknown provider event %r", event)

    async def _on_qr(self, worker: SessionWorker, event: QrReady) -> None:
        session = worker.session
        if session.state not in (S.INITIALIZING, S.AWAITING_SCAN):
            log.debug("Ignoring pairing artifact for %s in state %s", session.session_id, session.state.value)
            return
        transition(session, S.AWAITING_SCAN)
        session.pairing_artifact = event.payload
        log.info("Session %s awaiting scan", session.session_id)
        await self._changed(session)

    async def _on_state(self, worker: SessionWorker, event: StateChanged) -> None:
        session = worker.session
        if event.state is S.CONNECTED:
            if event.identity is not None:
                session.identity = event.identity
            if session.state is S.CONNECTED:
                return
            if session.state not in (S.INITIALIZING, S.AWAITING_SCAN):
                log.debug("Ignoring connected report for %s in state %s", session.session_id, session.state.value)
                return
            transition(session, S.CONNECTED)
            session.pairing_artifact = None
            worker.reconnect_attempts = 0
            log.info("Session %s connected as %s", session.session_id, session.identity.account_id if session.identity else "?")
            self._audit(session, "session_connected", session.identity.account_id if session.identity else "")
            await self._changed(session)
            if worker.connection is not None:
                worker.spawn(self._sync_groups(worker, worker.connection))

        elif event.state in (S.DISCONNECTED, S.FAILED):
            if session.state in (S.DISCONNECTED, S.FAILED):
                return
            logged_out = event.logged_out or event.state is S.FAILED
            log.info("Session %s disconnected: %s", session.session_id, event.reason or "no reason given")
            await self._to_disconnected(worker)
            if logged_out:
                transition(session, S.FAILED)
                session.stopped = True
                log.warning("Session %s logged out by the network", session.session_id)
                self._audit(session, "session_logged_out", event.reason)
            await self._changed(session)
            if not logged_out and not session.stopped:
                self._schedule_reconnect(worker)

        else:
            log.debug("Ignoring provider state %s for %s", event.state.value, session.session_id)

    def _on_message(self, worker: SessionWorker, event: InboundMessage) -> None:
        message = event.message
        session = worker.session
        session.last_activity = time.time()
        if message.from_me or not message.is_group:
            return
        connection = worker.connection
        if connection is None:
            return
        worker.lane(message.conversation_id).submit(
            lambda: self.router.route(session, connection, message)
        )

    async def _on_group_change(self, worker: SessionWorker, event: GroupMetadataChanged) -> None:
        session = worker.session
        conversation_id = event.conversation_id
        self.metadata.invalidate(conversation_id)
        if event.subject:
            try:
                await self.policies.ensure(conversation_id, session.session_id, event.subject)
            except Exception:
                log.exception("Could not rename group %s", conversation_id)
        connection = worker.connection
        if event.added and connection is not None:
            added = event.added

            async def _welcome() -> None:
                await self.router.welcome(session, connection, conversation_id, added)

            worker.lane(conversation_id).submit(_welcome)

    async def _sync_groups(self, worker: SessionWorker, connection: ProviderConnection) -> None:
        session_id = worker.session_id
        try:
            groups = await connection.fetch_all_groups()
        except Exception as e:
            log.warning("Group sync for %s failed: %s", session_id, e)
            return
        synced = 0
        for conversation_id, meta in groups.items():
            try:
                await self.policies.ensure(conversation_id, session_id, meta.subject or None)
                self.metadata.set(meta)
                synced += 1
            except Exception:
                log.exception("Could not sync group %s", conversation_id)
        log.info("Synced %d groups for session %s", synced, session_id)
        self._publish("groups_synced", {"session_id": session_id, "count": synced})

    # ------------------------------------------------------------------
    # Persistence and fan-out

    async def _changed(self, session: TenantSession) -> None:
        if self.sessions_repo is not None:
            try:
                await self.sessions_repo.save(session)
            except Exception:
                log.exception("Could not persist session %s", session.session_id)
        self._publish("session_update", {"session_id": session.session_id, "data": session.snapshot()})

    def _audit(self, session: TenantSession, kind: str, details: str = "") -> None:
        self.audit.record(
            LogEntry(tenant_id=session.tenant_id, session_id=session.session_id, kind=kind, details=details)
        )

    def _publish(self, kind: str, payload: dict) -> None:
        if self.hub is not None:
            self.hub.publish(kind, payload)
