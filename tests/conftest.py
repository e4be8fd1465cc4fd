from __future__ import annotations

import asyncio
import time
from typing import Callable

import pytest

from groupguard.app import GroupGuardApp
from groupguard.config import Settings
from groupguard.models import Identity, InboundMessage, SessionState, StateChanged
from groupguard.testing.fakes import (
    FakeConnection,
    FakeConnectionProvider,
    FakeLogRepository,
    make_group,
    make_message,
)

GROUP = "group-1@g.us"
ADMIN = "100@s.whatsapp.net"
MEMBER = "200@s.whatsapp.net"
OWNER = "999@s.whatsapp.net"
BOT = "500@s.whatsapp.net"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        sqlite_path=str(tmp_path / "groupguard.sqlite3"),
        reconnect_delay_seconds=0.01,
        reconnect_max_delay_seconds=0.05,
        action_retry_attempts=2,
        action_retry_base_delay=0.0,
        owner_account_ids=(OWNER,),
        account_id_suffix="@s.whatsapp.net",
        bot_name="GroupGuard",
        bot_version="9.9.9",
    )


@pytest.fixture
def provider() -> FakeConnectionProvider:
    return FakeConnectionProvider(groups={GROUP: make_group(GROUP, "Test Group", admins=[ADMIN], members=[MEMBER])})


@pytest.fixture
def logs() -> FakeLogRepository:
    return FakeLogRepository()


@pytest.fixture
async def app(settings, provider, logs):
    guard = GroupGuardApp(settings, provider, log_repository=logs)
    await guard.start()
    yield guard
    await guard.close()


async def settle(app: GroupGuardApp) -> None:
    """Let every session worker and the audit log catch up."""
    for conn in list(app.provider.connections):
        await conn.drain_events()
    for session in app.list_sessions():
        try:
            worker = app.orchestrator.worker(session.session_id)
        except Exception:
            continue
        await worker.idle()
    await app.audit.drain()


async def connect(
    app: GroupGuardApp,
    provider: FakeConnectionProvider,
    tenant_id: str = "tenant-1",
    session_id: str = "s1",
    *,
    account_id: str = BOT,
    elevated: bool = False,
) -> FakeConnection:
    await app.create_session(tenant_id, session_id, elevated=elevated)
    conn = provider.latest(session_id)
    conn.emit(StateChanged(SessionState.CONNECTED, identity=Identity(account_id, "Guard Bot")))
    await settle(app)
    return conn


async def say(app: GroupGuardApp, conn: FakeConnection, text: str, sender: str = MEMBER, group: str = GROUP):
    message = make_message(group, sender, text)
    conn.emit(InboundMessage(message))
    await settle(app)
    return message


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
