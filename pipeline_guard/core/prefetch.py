"""
Background refresh of cached story categories.

Jobs are de-duplicated per cache key (category and result-set size): a second
request for a key that already has a pending job only raises its priority. A
job is cancelled when its key is written through the cache before it runs. The drain loop dispatches
due jobs highest priority first, at most `concurrency` per tick, and removes
each job from the queue as it is dispatched. Failed refreshes are dropped;
the next cache miss schedules a new job.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union

from pipeline_guard.providers.base import ContentDiscovery
from .cache import CacheKey, Priority, TieredCache
from .clock import Clock
from .metrics import MetricSink
from .rate_limiter import BudgetedRateLimiter

logger = logging.getLogger(__name__)

PREFETCH_DELAYS = {
    Priority.HIGH: 1.0,
    Priority.MEDIUM: 30.0,
    Priority.LOW: 300.0,
}

DISCOVERY_OPERATION = "discovery"


@dataclass
class PrefetchJob:
    """Pending refresh of one story cache key."""
    key: CacheKey
    priority: Priority
    scheduled_at: float
    executed: bool = False

    @property
    def category(self) -> str:
        return self.key.category

    @property
    def limit(self) -> int:
        return int(self.key.variant)


class PrefetchScheduler:
    """Queue of prefetch jobs drained by a concurrency-capped worker loop."""

    def __init__(
        self,
        clock: Clock,
        cache: TieredCache,
        discovery: ContentDiscovery,
        sink: Optional[MetricSink] = None,
        limiter: Optional[BudgetedRateLimiter] = None,
        concurrency: int = 2,
        story_limit: int = 15,
    ):
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        self.clock = clock
        self.cache = cache
        self.discovery = discovery
        self.sink = sink
        self.limiter = limiter
        self.concurrency = concurrency
        self.story_limit = story_limit
        self._jobs: Dict[CacheKey, PrefetchJob] = {}

    def schedule(self, target: Union[str, CacheKey], priority: Priority = Priority.MEDIUM) -> PrefetchJob:
        """Queue a refresh of `target`, or raise the priority of the pending one.

        A bare category refreshes its default result-set size.
        """
        key = self._key(target)
        priority = Priority(priority)
        existing = self._jobs.get(key)
        if existing is not None and not existing.executed:
            if priority > existing.priority:
                existing.priority = priority
                logger.debug("Raised prefetch priority for %s to %s", key, priority.name)
            return existing

        job = PrefetchJob(
            key=key,
            priority=priority,
            scheduled_at=self.clock.now() + PREFETCH_DELAYS[priority],
        )
        self._jobs[key] = job
        logger.info("Scheduled prefetch for %s (priority: %s)", key, priority.name.lower())
        return job

    def cancel(self, target: Union[str, CacheKey]) -> bool:
        """Drop the pending job for `target`. Returns whether one was pending."""
        job = self._jobs.pop(self._key(target), None)
        if job is None:
            return False
        logger.debug("Cancelled prefetch for %s", job.key)
        return True

    def _key(self, target: Union[str, CacheKey]) -> CacheKey:
        if isinstance(target, CacheKey):
            return target
        return CacheKey.for_stories(target, self.story_limit)

    def warmup(self, categories: Iterable[str]) -> None:
        """Schedule medium-priority refreshes for popular categories."""
        categories = list(categories)
        logger.info("Warming up cache for categories: %s", ", ".join(categories))
        for category in categories:
            self.schedule(category, Priority.MEDIUM)

    @property
    def pending(self) -> List[PrefetchJob]:
        return sorted(self._jobs.values(), key=lambda j: (-j.priority, j.scheduled_at))

    def due_jobs(self) -> List[PrefetchJob]:
        now = self.clock.now()
        return [j for j in self.pending if j.scheduled_at <= now and not j.executed]

    async def tick(self) -> List[PrefetchJob]:
        """Dispatch up to `concurrency` due jobs and wait for them to finish."""
        dispatched = self.due_jobs()[:self.concurrency]
        if not dispatched:
            return []

        for job in dispatched:
            job.executed = True
            del self._jobs[job.key]

        await asyncio.gather(*(self._execute(job) for job in dispatched))
        return dispatched

    async def _execute(self, job: PrefetchJob) -> bool:
        if self.limiter is not None and not self.limiter.check_rate(DISCOVERY_OPERATION):
            logger.info("Prefetch for %s dropped: discovery rate limit reached", job.category)
            self._record("prefetch_dropped", job)
            return False

        started = time.perf_counter()
        try:
            logger.info("Executing prefetch for %s", job.category)
            stories = await self.discovery.fetch(job.category, job.limit)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Prefetch failed for %s: %s", job.category, e)
            self._record("prefetch_failure", job)
            if self.sink is not None:
                self.sink.record_error(DISCOVERY_OPERATION, type(e).__name__, str(e))
            return False

        if self.sink is not None:
            self.sink.record_api_latency(DISCOVERY_OPERATION, (time.perf_counter() - started) * 1000)

        if stories:
            self.cache.put(job.key, stories)
        logger.info("Prefetch completed for %s: %d stories", job.category, len(stories))
        self._record("prefetch_success", job)
        return True

    def _record(self, name: str, job: PrefetchJob) -> None:
        if self.sink is not None:
            self.sink.record(name, 1, "count", {
                "category": job.category,
                "priority": job.priority.name.lower(),
            })

    def clear(self) -> None:
        self._jobs.clear()

    def __len__(self) -> int:
        return len(self._jobs)
