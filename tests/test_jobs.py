from __future__ import annotations

import asyncio

from groupguard.models import LogEntry
from groupguard.services.audit import AuditLog
from groupguard.services.jobs import JobScheduler
from groupguard.services.metadata_cache import GroupMetadataCache
from groupguard.services.stats import format_uptime
from groupguard.testing.fakes import FakeConnection, FakeLogRepository, make_group


class TestJobScheduler:
    async def test_runs_after_delay(self):
        scheduler = JobScheduler()
        fired = asyncio.Event()

        async def job():
            fired.set()

        scheduler.schedule(("unmute", "g1"), 0.01, job)
        assert scheduler.pending(("unmute", "g1"))
        await asyncio.wait_for(fired.wait(), 1)
        await asyncio.sleep(0)
        assert not scheduler.pending(("unmute", "g1"))

    async def test_cancel_and_replace(self):
        scheduler = JobScheduler()
        calls = []

        async def job(name):
            calls.append(name)

        scheduler.schedule("k", 0.05, lambda: job("first"))
        scheduler.schedule("k", 0.01, lambda: job("second"))
        assert len(scheduler) == 1
        await asyncio.sleep(0.1)
        assert calls == ["second"]

        scheduler.schedule("k", 0.01, lambda: job("third"))
        assert scheduler.cancel("k") is True
        assert scheduler.cancel("k") is False
        await asyncio.sleep(0.05)
        assert calls == ["second"]

    async def test_cancel_where(self):
        scheduler = JobScheduler()

        async def job():
            pass

        scheduler.schedule(("unmute", "g1"), 10, job)
        scheduler.schedule(("unmute", "g2"), 10, job)
        scheduler.schedule(("reconnect", "s1"), 10, job)
        assert scheduler.cancel_where(lambda k: k[0] == "unmute") == 2
        assert scheduler.pending(("reconnect", "s1"))
        await scheduler.close()
        assert len(scheduler) == 0

    async def test_failing_job_is_contained(self):
        scheduler = JobScheduler()

        async def boom():
            raise RuntimeError("boom")

        task = scheduler.schedule("k", 0, boom)
        await asyncio.gather(task, return_exceptions=True)
        assert task.exception() is None


class TestMetadataCache:
    async def test_cached_until_invalidated(self):
        conn = FakeConnection("s1", {"g": make_group("g")})
        cache = GroupMetadataCache(ttl_seconds=30)
        await cache.fetch(conn, "g")
        await cache.fetch(conn, "g")
        assert conn.metadata_calls == 1
        cache.invalidate("g")
        await cache.fetch(conn, "g")
        assert conn.metadata_calls == 2

    async def test_expires_with_clock(self):
        now = [0.0]
        conn = FakeConnection("s1", {"g": make_group("g")})
        cache = GroupMetadataCache(ttl_seconds=5, clock=lambda: now[0])
        await cache.fetch(conn, "g")
        now[0] = 5.0
        await cache.fetch(conn, "g")
        assert conn.metadata_calls == 2

    async def test_zero_ttl_disables_caching(self):
        conn = FakeConnection("s1", {"g": make_group("g")})
        cache = GroupMetadataCache(ttl_seconds=0)
        await cache.fetch(conn, "g")
        await cache.fetch(conn, "g")
        assert conn.metadata_calls == 2


class TestAuditLog:
    async def test_record_is_fire_and_forget(self):
        repo = FakeLogRepository()
        audit = AuditLog(repo)
        audit.record(LogEntry(tenant_id="t", kind="command_executed"))
        assert repo.entries == []
        await audit.drain()
        assert repo.kinds() == ["command_executed"]

    async def test_failures_are_counted(self):
        repo = FakeLogRepository()
        repo.fail = OSError("db locked")
        audit = AuditLog(repo)
        audit.record(LogEntry(tenant_id="t", kind="action_delete"))
        await audit.drain()
        assert audit.failures == 1


def test_format_uptime():
    assert format_uptime(90061) == "1d 1h 1m 1s"
    assert format_uptime(0) == "0d 0h 0m 0s"
