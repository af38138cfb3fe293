"""
Tests for the expiration scheduler
"""

import asyncio

import pytest

from xedis.core.table import now_ms
from xedis.core.ttl import ExpirationScheduler


class TestExpirationScheduler:
    """Test ExpirationScheduler functionality"""

    @pytest.fixture
    async def scheduler(self):
        """Started scheduler recording fired keys"""
        fired = []
        scheduler = ExpirationScheduler(
            on_expire=lambda key, expiration: fired.append((key, expiration))
        )
        scheduler.fired = fired
        scheduler.start()
        yield scheduler
        await scheduler.stop()

    async def test_fires_at_deadline(self, scheduler):
        expiration = now_ms() + 50
        scheduler.schedule("k", expiration)

        assert scheduler.fired == []
        await asyncio.sleep(0.3)

        assert scheduler.fired == [("k", expiration)]
        assert "k" not in scheduler

    async def test_cancel_prevents_removal(self, scheduler):
        scheduler.schedule("k", now_ms() + 50)
        assert scheduler.cancel("k")
        assert not scheduler.cancel("k")

        await asyncio.sleep(0.3)
        assert scheduler.fired == []

    async def test_reschedule_keeps_single_entry(self, scheduler):
        scheduler.schedule("k", now_ms() + 50)
        later = now_ms() + 150
        scheduler.schedule("k", later)

        assert len(scheduler) == 1
        await asyncio.sleep(0.5)

        assert scheduler.fired == [("k", later)]

    async def test_earlier_deadline_wakes_scheduler(self, scheduler):
        scheduler.schedule("far", now_ms() + 60_000)
        await asyncio.sleep(0.05)

        scheduler.schedule("near", now_ms() + 50)
        await asyncio.sleep(0.3)

        assert [key for key, _ in scheduler.fired] == ["near"]
        assert "far" in scheduler

    async def test_past_expiration_fires_immediately(self, scheduler):
        scheduler.schedule("k", now_ms() - 1000)
        await asyncio.sleep(0.1)

        assert [key for key, _ in scheduler.fired] == ["k"]

    async def test_callback_error_does_not_stop_scheduler(self):
        fired = []

        def on_expire(key, expiration):
            fired.append(key)
            if key == "bad":
                raise RuntimeError("boom")

        scheduler = ExpirationScheduler(on_expire=on_expire)
        scheduler.start()
        try:
            scheduler.schedule("bad", now_ms() + 20)
            scheduler.schedule("good", now_ms() + 80)
            await asyncio.sleep(0.4)
        finally:
            await scheduler.stop()

        assert fired == ["bad", "good"]

    async def test_pop_due_skips_stale_entries(self):
        scheduler = ExpirationScheduler()
        scheduler.schedule("k", now_ms() - 10)
        scheduler.schedule("k", now_ms() + 60_000)

        assert scheduler.pop_due() == []
        assert len(scheduler) == 1

    async def test_stats(self, scheduler):
        scheduler.schedule("a", now_ms() + 60_000)
        scheduler.schedule("b", now_ms() + 60_000)
        scheduler.cancel("b")

        stats = scheduler.get_stats()
        assert stats["scheduled"] == 2
        assert stats["cancelled"] == 1
        assert stats["pending"] == 1

    async def test_heap_compaction(self):
        scheduler = ExpirationScheduler()
        for _ in range(500):
            scheduler.schedule("k", now_ms() + 60_000)

        stats = scheduler.get_stats()
        assert stats["pending"] == 1
        assert stats["heap_size"] < 100
