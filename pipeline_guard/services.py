"""
Service composition.

Builds every service from one GuardConfig and wires the periodic
maintenance loops onto a Ticker. Nothing here is global: callers own the
returned Services and may build as many independent sets as they need.
"""

import logging
from dataclasses import dataclass
from functools import partial
from typing import Callable, Optional

from pipeline_guard.config.loader import CacheConfig, GuardConfig, default_config
from pipeline_guard.core.alerts import AlertEngine
from pipeline_guard.core.cache import TieredCache
from pipeline_guard.core.clock import Clock, SystemClock, Ticker
from pipeline_guard.core.metrics import MetricSink, process_memory_ratio
from pipeline_guard.core.orchestrator import PipelineOrchestrator, PipelineResult
from pipeline_guard.core.prefetch import PrefetchScheduler
from pipeline_guard.core.rate_limiter import BudgetedRateLimiter
from pipeline_guard.providers.base import (
    ContentDiscovery,
    SpeechAndVideoRenderer,
    Story,
    TextEnhancer,
)
from pipeline_guard.storage.repository import MemoryStorage, Storage

logger = logging.getLogger(__name__)

STORY_NAMESPACE = "stories"
RESULT_NAMESPACE = "results"


@dataclass
class Services:
    """Every constructed service, sharing one clock and one store."""
    config: GuardConfig
    clock: Clock
    storage: Storage
    sink: MetricSink
    alerts: AlertEngine
    limiter: BudgetedRateLimiter
    stories: TieredCache
    results: TieredCache
    prefetcher: PrefetchScheduler
    orchestrator: PipelineOrchestrator
    ticker: Ticker


def result_cache_config(config: GuardConfig) -> CacheConfig:
    """Cache settings for rendered results: no prefetching, expiry at result_ttl."""
    cache = config.cache
    ttl = config.pipeline.result_ttl
    return CacheConfig(
        max_entries=cache.max_entries,
        default_ttl=ttl,
        fresh_threshold=min(cache.fresh_threshold, ttl / 2),
        stale_threshold=ttl,
        enable_prefetching=False,
        sweep_interval=cache.sweep_interval,
    )


def build_services(
    config: Optional[GuardConfig] = None,
    storage: Optional[Storage] = None,
    clock: Optional[Clock] = None,
    enhancer: Optional[TextEnhancer] = None,
    renderer: Optional[SpeechAndVideoRenderer] = None,
    discovery: Optional[ContentDiscovery] = None,
    memory_sampler: Optional[Callable[[], float]] = None,
) -> Services:
    """Construct and wire all services.

    Durable cache entries are reloaded from `storage` before the caches are
    returned, so the orchestrator never serves from a half-loaded cache.
    `memory_sampler` returns the memory usage ratio sampled every
    `monitor.system_interval`, by default this process's resident memory.
    """
    config = config or default_config()
    storage = storage if storage is not None else MemoryStorage()
    clock = clock or SystemClock()

    sink = MetricSink(clock, retention_seconds=config.monitor.retention_hours * 3600)
    alerts = AlertEngine(sink, config.monitor.rules, config.monitor.cooldown_seconds, storage=storage)
    limiter = BudgetedRateLimiter(clock, storage, config.rate_limits, config.budgets)

    stories = TieredCache(
        clock,
        config.cache,
        storage=storage,
        sink=sink,
        namespace=STORY_NAMESPACE,
        encode=Story.to_dict,
        decode=Story.from_dict,
    )
    results = TieredCache(
        clock,
        result_cache_config(config),
        storage=storage,
        sink=sink,
        namespace=RESULT_NAMESPACE,
        encode=PipelineResult.to_dict,
        decode=PipelineResult.from_dict,
    )

    prefetcher = PrefetchScheduler(
        clock,
        stories,
        discovery,
        sink=sink,
        limiter=limiter,
        concurrency=config.prefetch.concurrency,
        story_limit=config.prefetch.story_limit,
    )
    if discovery is not None:
        stories.attach_prefetcher(prefetcher)

    orchestrator = PipelineOrchestrator(
        clock,
        limiter,
        stories,
        results,
        sink,
        alerts,
        enhancer=enhancer,
        renderer=renderer,
        discovery=discovery,
        config=config.pipeline,
    )

    sampler = memory_sampler or partial(process_memory_ratio, config.monitor.memory_limit_mb)

    def sample_memory() -> None:
        sink.record_memory_usage(sampler())

    ticker = Ticker(clock)
    ticker.every(config.cache.sweep_interval, "cache.stories.sweep", stories.sweep)
    ticker.every(config.cache.sweep_interval, "cache.results.sweep", results.sweep)
    ticker.every(config.monitor.system_interval, "metrics.system", sample_memory)
    ticker.every(config.monitor.evaluate_interval, "alerts.evaluate", alerts.evaluate)
    ticker.every(config.monitor.evaluate_interval, "health.snapshot", orchestrator.record_health)
    ticker.every(config.monitor.evaluate_interval, "alerts.sweep", alerts.sweep)
    ticker.every(config.rate_limits.window_seconds, "limiter.sweep", limiter.sweep)
    if discovery is not None:
        ticker.every(config.prefetch.drain_interval, "prefetch.drain", prefetcher.tick)

    logger.info(
        "Services ready: %d budgets, %d alert rules, %d cached stories",
        len(config.budgets), len(alerts.rules), len(stories),
    )
    return Services(
        config=config,
        clock=clock,
        storage=storage,
        sink=sink,
        alerts=alerts,
        limiter=limiter,
        stories=stories,
        results=results,
        prefetcher=prefetcher,
        orchestrator=orchestrator,
        ticker=ticker,
    )
