"""
Unit tests for prefetch scheduling.
"""

import asyncio

import pytest

from pipeline_guard.config.loader import CacheConfig, RateLimitConfig
from pipeline_guard.core.cache import CacheKey, Priority, TieredCache
from pipeline_guard.core.clock import ManualClock
from pipeline_guard.core.metrics import MetricSink
from pipeline_guard.core.prefetch import PREFETCH_DELAYS, PrefetchScheduler
from pipeline_guard.core.rate_limiter import BudgetedRateLimiter
from pipeline_guard.storage.repository import MemoryStorage

from conftest import FakeDiscovery


def _scheduler(clock, discovery=None, concurrency=2, limiter=None):
    sink = MetricSink(clock)
    cache = TieredCache(clock, CacheConfig())
    scheduler = PrefetchScheduler(
        clock,
        cache,
        discovery or FakeDiscovery(),
        sink=sink,
        limiter=limiter,
        concurrency=concurrency,
        story_limit=15,
    )
    cache.attach_prefetcher(scheduler)
    return scheduler, cache, sink


class TestSchedule:
    """Test job creation and de-duplication."""

    def test_delays_by_priority(self):
        """Test the scheduled time of each priority."""
        clock = ManualClock()
        scheduler, _, _ = _scheduler(clock)
        high = scheduler.schedule("drama", Priority.HIGH)
        medium = scheduler.schedule("horror", Priority.MEDIUM)
        low = scheduler.schedule("revenge", Priority.LOW)

        assert high.scheduled_at == clock.now() + 1
        assert medium.scheduled_at == clock.now() + 30
        assert low.scheduled_at == clock.now() + 300
        assert PREFETCH_DELAYS == {Priority.HIGH: 1.0, Priority.MEDIUM: 30.0, Priority.LOW: 300.0}

    def test_duplicate_raises_priority_only(self):
        """Test that a second request upgrades the job without moving it."""
        clock = ManualClock()
        scheduler, _, _ = _scheduler(clock)
        job = scheduler.schedule("drama", Priority.LOW)
        clock.advance(10)
        again = scheduler.schedule("drama", Priority.HIGH)

        assert again is job
        assert job.priority == Priority.HIGH
        assert job.scheduled_at == clock.now() - 10 + 300
        assert len(scheduler) == 1

    def test_lower_priority_does_not_downgrade(self):
        """Test that priority is the max of existing and requested."""
        scheduler, _, _ = _scheduler(ManualClock())
        scheduler.schedule("drama", Priority.HIGH)
        job = scheduler.schedule("drama", Priority.LOW)
        assert job.priority == Priority.HIGH

    def test_repeated_stale_hits_schedule_one_refresh(self):
        """Test that concurrent stale reads share one pending refresh."""
        clock = ManualClock()
        scheduler, cache, _ = _scheduler(clock)
        key = CacheKey.for_stories("drama", 15)
        cache.put(key, ["story"])
        clock.advance(400)

        cache.get(key)
        cache.get(key)
        assert len(scheduler) == 1
        assert scheduler.pending[0].priority == Priority.LOW

    def test_result_sizes_are_separate_jobs(self):
        """Test that each result-set size of a category gets its own job."""
        scheduler, _, _ = _scheduler(ManualClock())
        scheduler.schedule(CacheKey.for_stories("drama", 10), Priority.LOW)
        scheduler.schedule("drama", Priority.LOW)

        assert len(scheduler) == 2
        assert sorted(j.limit for j in scheduler.pending) == [10, 15]

    def test_cancel_drops_pending_job(self):
        """Test that a cancelled job is no longer queued."""
        scheduler, _, _ = _scheduler(ManualClock())
        scheduler.schedule("drama", Priority.MEDIUM)

        assert scheduler.cancel(CacheKey.for_stories("drama", 15))
        assert not scheduler.cancel("drama")
        assert len(scheduler) == 0

    def test_cache_write_cancels_miss_refresh(self):
        """Test that filling a missed key inline leaves nothing to prefetch."""
        scheduler, cache, _ = _scheduler(ManualClock())
        key = CacheKey.for_stories("drama", 15)

        assert cache.get(key) is None
        assert len(scheduler) == 1
        cache.put(key, ["story"])
        assert len(scheduler) == 0

    def test_warmup_schedules_medium(self):
        """Test that warm-up queues each category once."""
        scheduler, _, _ = _scheduler(ManualClock())
        scheduler.warmup(["drama", "horror", "drama"])
        assert sorted(j.category for j in scheduler.pending) == ["drama", "horror"]
        assert all(j.priority == Priority.MEDIUM for j in scheduler.pending)


class TestDrain:
    """Test the drain loop."""

    @pytest.mark.asyncio
    async def test_nothing_due_nothing_runs(self):
        """Test that jobs wait for their scheduled time."""
        clock = ManualClock()
        discovery = FakeDiscovery()
        scheduler, _, _ = _scheduler(clock, discovery)
        scheduler.schedule("drama", Priority.MEDIUM)

        clock.advance(29)
        assert await scheduler.tick() == []
        assert discovery.calls == []

    @pytest.mark.asyncio
    async def test_due_job_refreshes_cache(self):
        """Test that a due job fetches and writes through the cache."""
        clock = ManualClock()
        discovery = FakeDiscovery()
        scheduler, cache, sink = _scheduler(clock, discovery)
        scheduler.schedule("drama", Priority.HIGH)

        clock.advance(1)
        dispatched = await scheduler.tick()

        assert [j.category for j in dispatched] == ["drama"]
        assert dispatched[0].executed
        assert discovery.calls == [("drama", 15)]
        assert len(cache.get(CacheKey.for_stories("drama", 15)).payload) == 3
        assert len(scheduler) == 0
        assert sink.latest("prefetch_success") == 1

    @pytest.mark.asyncio
    async def test_stale_entry_refreshed_at_its_own_size(self):
        """Test that a stale non-default result size is replaced, not duplicated."""
        clock = ManualClock()
        discovery = FakeDiscovery()
        scheduler, cache, _ = _scheduler(clock, discovery)
        small = CacheKey.for_stories("drama", 10)
        original = cache.put(small, ["old story"])

        clock.advance(400)
        assert cache.get(small) is not None
        clock.advance(300)
        await scheduler.tick()

        assert discovery.calls == [("drama", 10)]
        assert [str(e["key"]) for e in cache.get_stats().entries] == ["drama_10"]
        assert cache.get(small).entry.created_at > original.created_at

    @pytest.mark.asyncio
    async def test_concurrency_and_priority_order(self):
        """Test that at most `concurrency` jobs run per tick, highest priority first."""
        clock = ManualClock()
        discovery = FakeDiscovery()
        scheduler, _, _ = _scheduler(clock, discovery, concurrency=2)
        scheduler.schedule("low", Priority.LOW)
        scheduler.schedule("medium", Priority.MEDIUM)
        scheduler.schedule("high", Priority.HIGH)

        clock.advance(300)
        first = await scheduler.tick()
        assert [j.category for j in first] == ["high", "medium"]

        second = await scheduler.tick()
        assert [j.category for j in second] == ["low"]
        assert await scheduler.tick() == []

    @pytest.mark.asyncio
    async def test_job_removed_at_dispatch(self):
        """Test that a running job is no longer in the queue."""
        clock = ManualClock()
        started = asyncio.Event()
        release = asyncio.Event()

        class SlowDiscovery(FakeDiscovery):
            async def fetch(self, category, limit):
                started.set()
                await release.wait()
                return await super().fetch(category, limit)

        scheduler, _, _ = _scheduler(clock, SlowDiscovery())
        scheduler.schedule("drama", Priority.HIGH)
        clock.advance(1)

        tick = asyncio.ensure_future(scheduler.tick())
        await started.wait()
        assert len(scheduler) == 0

        # A new request while the refresh is in flight queues a fresh job
        scheduler.schedule("drama", Priority.LOW)
        assert len(scheduler) == 1

        release.set()
        await tick

    @pytest.mark.asyncio
    async def test_failure_is_dropped_without_retry(self):
        """Test that failed jobs are logged, counted and not retried."""
        clock = ManualClock()
        discovery = FakeDiscovery(error=ConnectionError("reddit down"))
        scheduler, cache, sink = _scheduler(clock, discovery)
        scheduler.schedule("drama", Priority.HIGH)

        clock.advance(1)
        await scheduler.tick()
        clock.advance(600)
        assert await scheduler.tick() == []

        assert len(discovery.calls) == 1
        assert len(cache) == 0
        assert sink.latest("prefetch_failure") == 1
        assert sink.latest("error_count") == 1

    @pytest.mark.asyncio
    async def test_discovery_rate_limit_drops_job(self):
        """Test that prefetches respect the discovery rate limit."""
        clock = ManualClock()
        discovery = FakeDiscovery()
        limiter = BudgetedRateLimiter(
            clock, MemoryStorage(), RateLimitConfig(operations={"discovery": 1}),
        )
        scheduler, _, sink = _scheduler(clock, discovery, limiter=limiter)
        scheduler.schedule("drama", Priority.HIGH)
        scheduler.schedule("horror", Priority.HIGH)

        clock.advance(1)
        await scheduler.tick()

        assert len(discovery.calls) == 1
        assert sink.latest("prefetch_dropped") == 1

    def test_invalid_concurrency_rejected(self):
        """Test that concurrency must be positive."""
        clock = ManualClock()
        with pytest.raises(ValueError):
            PrefetchScheduler(clock, TieredCache(clock), FakeDiscovery(), concurrency=0)
