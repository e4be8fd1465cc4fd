from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

from aiohttp import web

from .commands.builtin import registry as builtin_registry
from .commands.builtin import unmute_job_key
from .commands.dispatcher import CommandDispatcher, CommandServices
from .config import Settings
from .database import initialize_database
from .errors import NotFoundError
from .interfaces import ConnectionProvider, LogRepository, validate_provider
from .models import LogEntry, TenantSession
from .moderation.action_engine import ActionExecutor
from .moderation.flood import FloodWindowTracker
from .moderation.pipeline import ModerationPipeline
from .moderation.policy import GroupPolicy
from .realtime.hub import RealtimeHub
from .realtime.server import TokenVerifier, add_realtime_routes, static_token_verifier
from .services.audit import AuditLog
from .services.jobs import JobScheduler
from .services.log_store import LogStore
from .services.metadata_cache import GroupMetadataCache
from .services.policy_store import PolicyStore
from .services.session_store import SessionStore
from .services.stats import RuntimeStats
from .sessions.orchestrator import SessionOrchestrator
from .sessions.router import MessageRouter

log = logging.getLogger("groupguard.app")

# Flood windows idle for this long are dropped by housekeeping
FLOOD_IDLE_SECONDS = 3600
HOUSEKEEPING_INTERVAL_SECONDS = 300


class GroupGuardApp:
    """Wires the stores, the moderation core and the session orchestrator."""

    def __init__(
        self,
        settings: Settings,
        provider: ConnectionProvider,
        *,
        log_repository: Optional[LogRepository] = None,
    ) -> None:
        self.settings = settings
        self.provider = validate_provider(provider)
        self.stats = RuntimeStats()

        self.log_store = LogStore(settings.sqlite_path)
        self.session_store = SessionStore(settings.sqlite_path)
        self.policies = PolicyStore(settings.sqlite_path, on_change=self._policy_changed)

        self.audit = AuditLog(log_repository if log_repository is not None else self.log_store)
        self.hub = RealtimeHub(
            queue_size=settings.realtime_queue_size,
            send_timeout=settings.realtime_send_timeout_seconds,
            stats=self.stats,
        )
        self.scheduler = JobScheduler()
        self.metadata = GroupMetadataCache(settings.metadata_cache_ttl_seconds)
        self.flood = FloodWindowTracker()

        self.executor = ActionExecutor(
            audit=self.audit,
            stats=self.stats,
            retry_attempts=settings.action_retry_attempts,
            retry_base_delay=settings.action_retry_base_delay,
        )
        self.pipeline = ModerationPipeline(
            executor=self.executor,
            flood=self.flood,
            metadata=self.metadata,
            audit=self.audit,
            owner_account_ids=settings.owner_account_ids,
        )
        self.dispatcher = CommandDispatcher(
            builtin_registry,
            CommandServices(
                policies=self.policies,
                scheduler=self.scheduler,
                metadata=self.metadata,
                audit=self.audit,
                stats=self.stats,
                settings=settings,
                connection_for=lambda session_id: self.orchestrator.connection_for(session_id),
            ),
        )
        self.router = MessageRouter(
            policies=self.policies,
            dispatcher=self.dispatcher,
            pipeline=self.pipeline,
            audit=self.audit,
            stats=self.stats,
            settings=settings,
        )
        self.orchestrator = SessionOrchestrator(
            provider=self.provider,
            settings=settings,
            policies=self.policies,
            router=self.router,
            scheduler=self.scheduler,
            metadata=self.metadata,
            audit=self.audit,
            stats=self.stats,
            hub=self.hub,
            sessions_repo=self.session_store,
        )
        self._housekeeping: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(self) -> None:
        await initialize_database(self.settings.sqlite_path, [self.log_store, self.session_store, self.policies])
        if self._housekeeping is None:
            self._housekeeping = asyncio.create_task(self._housekeeping_loop(), name="groupguard-housekeeping")
        log.info("GroupGuard started (%s v%s)", self.settings.bot_name, self.settings.bot_version)

    async def close(self) -> None:
        if self._housekeeping is not None:
            self._housekeeping.cancel()
            await asyncio.gather(self._housekeeping, return_exceptions=True)
            self._housekeeping = None
        await self.orchestrator.close()
        await self.scheduler.close()
        await self.hub.close()
        await self.audit.drain()
        log.info("GroupGuard stopped")

    async def _housekeeping_loop(self) -> None:
        while True:
            await asyncio.sleep(HOUSEKEEPING_INTERVAL_SECONDS)
            pruned = self.flood.prune(FLOOD_IDLE_SECONDS)
            if pruned:
                log.debug("Pruned %d idle flood windows", pruned)

    # ------------------------------------------------------------------
    # Sessions

    async def create_session(self, tenant_id: str, session_id: str, *, elevated: bool = False) -> TenantSession:
        return await self.orchestrator.start_session(tenant_id, session_id, elevated=elevated)

    async def disconnect_session(self, session_id: str) -> TenantSession:
        return await self.orchestrator.disconnect_session(session_id)

    async def logout_session(self, session_id: str) -> TenantSession:
        return await self.orchestrator.logout_session(session_id)

    async def delete_session(self, session_id: str) -> None:
        await self.orchestrator.delete_session(session_id)

    def get_session(self, session_id: str) -> TenantSession:
        return self.orchestrator.get_session(session_id)

    def list_sessions(self, tenant_id: Optional[str] = None) -> list[TenantSession]:
        return self.orchestrator.list_sessions(tenant_id)

    # ------------------------------------------------------------------
    # Group policies

    async def get_policy(self, group_id: str) -> GroupPolicy:
        return await self.policies.get(group_id)

    async def set_policy(self, group_id: str, patch: Mapping[str, Any]) -> GroupPolicy:
        """Validate and store a policy patch. Raises ValidationError, NotFoundError."""
        policy = await self.policies.update(group_id, patch)
        if "adminOnlyMode" in patch and self.scheduler.cancel(unmute_job_key(group_id)):
            log.info("Pending auto-unmute of %s cancelled by policy update", group_id)
        if "isActive" in patch:
            state = "activated" if policy.active else "deactivated"
            self.audit.record(
                LogEntry(
                    tenant_id=self._tenant_of(policy.session_id),
                    kind="group_updated",
                    details=f"Group {state}: {policy.group_name or group_id}",
                    session_id=policy.session_id,
                    group_id=group_id,
                )
            )
        return policy

    async def delete_group(self, group_id: str) -> None:
        self.scheduler.cancel(unmute_job_key(group_id))
        self.flood.reset_group(group_id)
        self.metadata.invalidate(group_id)
        if not await self.policies.delete(group_id):
            raise NotFoundError(f"unknown group {group_id}")
        self.hub.publish("group_deleted", {"group_id": group_id})
        log.info("Group %s deleted", group_id)

    def _tenant_of(self, session_id: str) -> str:
        try:
            return self.orchestrator.get_session(session_id).tenant_id
        except NotFoundError:
            return ""

    def _policy_changed(self, policy: GroupPolicy) -> None:
        self.hub.publish("group_update", {"group_id": policy.group_id, "data": policy.to_document()})

    # ------------------------------------------------------------------
    # Web

    def build_web_app(self, verifier: Optional[TokenVerifier] = None) -> web.Application:
        app = web.Application()

        async def health(_: web.Request) -> web.Response:
            return web.json_response(
                {
                    "ok": True,
                    "service": self.settings.bot_name,
                    "sessions": len(self.orchestrator.list_sessions()),
                    "realtime_clients": len(self.hub),
                    "stats": self.stats.as_dict(),
                }
            )

        async def on_startup(_: web.Application) -> None:
            await self.start()

        async def on_cleanup(_: web.Application) -> None:
            await self.close()

        app.router.add_get("/", health)
        app.router.add_get("/healthz", health)
        add_realtime_routes(app, self.hub, verifier or static_token_verifier(self.settings.realtime_tokens))
        app.on_startup.append(on_startup)
        app.on_cleanup.append(on_cleanup)
        return app
