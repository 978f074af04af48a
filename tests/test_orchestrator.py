"""
Unit tests for pipeline orchestration.

Tests cache-aside behavior, per-stage fallbacks, admission control and cost
accounting, driven by fake collaborators and a manual clock.
"""

import asyncio

import pytest

from pipeline_guard.config.loader import BudgetConfig, GuardConfig, PipelineConfig, RateLimitConfig
from pipeline_guard.core.clock import ManualClock
from pipeline_guard.core.errors import BudgetExceededError, PipelineRejection, RateLimitedError
from pipeline_guard.core.orchestrator import (
    CostBreakdown,
    Fallback,
    PipelineRequest,
    PipelineResult,
    Success,
    fallback_enhancement,
    fallback_story,
    placeholder_url,
)
from pipeline_guard.core.pricing import estimate_enhance_cost
from pipeline_guard.providers.base import VoiceConfig
from pipeline_guard.services import build_services
from pipeline_guard.storage.repository import MemoryStorage

from conftest import FakeDiscovery, FakeEnhancer, FakeRenderer, make_story


def _services(
    clock=None,
    enhancer=None,
    renderer=None,
    discovery=None,
    config=None,
    storage=None,
):
    return build_services(
        config=config,
        storage=storage,
        clock=clock or ManualClock(),
        enhancer=enhancer if enhancer is not None else FakeEnhancer(),
        renderer=renderer if renderer is not None else FakeRenderer(),
        discovery=discovery if discovery is not None else FakeDiscovery(),
    )


class TestRequest:
    """Test request validation and cache keys."""

    def test_cache_key_is_deterministic(self):
        """Test that identical requests share a key."""
        first = PipelineRequest(category="drama", background_url="bg://minecraft")
        second = PipelineRequest(category="drama", background_url="bg://minecraft")
        assert first.cache_key() == second.cache_key()
        assert first.cache_key().category == "video"

    def test_cache_key_varies_with_request(self):
        """Test that each immutable part of the request changes the key."""
        base = PipelineRequest(category="drama")
        variants = [
            PipelineRequest(category="horror"),
            PipelineRequest(category="drama", duration_seconds=90),
            PipelineRequest(category="drama", voice=VoiceConfig("other")),
            PipelineRequest(category="drama", add_captions=False),
            PipelineRequest(category="drama", background_url="bg://subway"),
            PipelineRequest(category="drama", story=make_story()),
        ]
        keys = {base.cache_key()} | {v.cache_key() for v in variants}
        assert len(keys) == len(variants) + 1

    def test_invalid_requests_rejected(self):
        """Test request validation."""
        with pytest.raises(ValueError):
            PipelineRequest(category="")
        with pytest.raises(ValueError):
            PipelineRequest(category="drama", duration_seconds=0)
        with pytest.raises(ValueError):
            PipelineRequest(category="drama", story_limit=0)


class TestStageOutcomes:
    """Test outcome variants and fallback artifacts."""

    def test_fallback_costs_nothing(self):
        """Test that fallback outcomes always cost zero."""
        assert Fallback("text", "provider down").cost == 0.0
        assert Success("text", 0.25).cost == 0.25

    def test_cost_breakdown_total(self):
        """Test that the total is the sum of the items."""
        costs = CostBreakdown(enhance_cost=0.01, speech_cost=0.05, render_cost=0.40)
        assert costs.total_cost == 0.01 + 0.05 + 0.40
        assert CostBreakdown().total_cost == 0.0

    def test_fallback_enhancement_uses_category_hook(self):
        """Test the template used when enhancement is unavailable."""
        story = make_story("horror")
        text = fallback_enhancement(story)
        assert text.startswith("This story still gives me chills...")
        assert story.content in text
        assert text.endswith("What do you think? Let me know in the comments!")

        other = fallback_enhancement(make_story("cooking"))
        assert other.startswith("Here's a story that will blow your mind...")

    def test_fallback_story(self):
        """Test the placeholder story is deterministic."""
        assert fallback_story("drama") == fallback_story("drama")
        assert fallback_story("drama").category == "drama"


class TestCacheAside:
    """Test result caching across runs."""

    @pytest.mark.asyncio
    async def test_drama_scenario(self):
        """Test a cold run followed by an identical cached run.

        The cold run writes one entry to each cache: the discovered stories
        and the rendered result.
        """
        discovery = FakeDiscovery()
        enhancer = FakeEnhancer(cost=0.01)
        renderer = FakeRenderer(speech_cost=0.05, render_cost=0.40)
        services = _services(enhancer=enhancer, renderer=renderer, discovery=discovery)
        request = PipelineRequest(category="drama")

        result = await services.orchestrator.run(request)

        assert discovery.calls == [("drama", 15)]
        assert len(enhancer.calls) == 1
        assert len(renderer.calls) == 1
        assert len(services.results) == 1
        assert len(services.stories) == 1
        assert result.story.id == "drama_0"
        assert result.video_url.startswith("https://cdn.example.com/video/")
        assert not result.simulated
        assert not result.from_cache
        assert result.costs.enhance_cost == 0.01
        assert result.costs.speech_cost == 0.05
        assert result.costs.render_cost == 0.40
        assert result.costs.total_cost == pytest.approx(0.46)

        cached = await services.orchestrator.run(PipelineRequest(category="drama"))

        assert len(discovery.calls) == 1
        assert len(enhancer.calls) == 1
        assert len(renderer.calls) == 1
        assert cached.from_cache
        assert cached.video_url == result.video_url
        assert cached.costs.total_cost == 0.0

    @pytest.mark.asyncio
    async def test_cached_result_expires_after_ttl(self):
        """Test that the result cache honors result_ttl."""
        clock = ManualClock()
        renderer = FakeRenderer()
        services = _services(clock=clock, renderer=renderer)
        request = PipelineRequest(category="drama")

        await services.orchestrator.run(request)
        clock.advance(3600)
        result = await services.orchestrator.run(request)

        assert len(renderer.calls) == 2
        assert not result.from_cache

    @pytest.mark.asyncio
    async def test_story_cache_shared_between_requests(self):
        """Test that a different request for the same category reuses discovery."""
        discovery = FakeDiscovery()
        enhancer = FakeEnhancer()
        services = _services(enhancer=enhancer, discovery=discovery)

        await services.orchestrator.run(PipelineRequest(category="drama"))
        await services.orchestrator.run(PipelineRequest(category="drama", duration_seconds=90))

        assert len(discovery.calls) == 1
        assert len(enhancer.calls) == 2

    @pytest.mark.asyncio
    async def test_inline_discovery_leaves_nothing_to_prefetch(self):
        """Test that a run's own discovery call replaces the refresh its miss queued."""
        clock = ManualClock()
        discovery = FakeDiscovery()
        services = _services(clock=clock, discovery=discovery)

        await services.orchestrator.run(PipelineRequest(category="drama"))
        assert len(services.prefetcher) == 0

        clock.advance(31)
        await services.prefetcher.tick()
        assert discovery.calls == [("drama", 15)]

    @pytest.mark.asyncio
    async def test_explicit_story_skips_discovery(self):
        """Test that a request carrying its story never calls discovery."""
        discovery = FakeDiscovery()
        enhancer = FakeEnhancer()
        services = _services(enhancer=enhancer, discovery=discovery)
        story = make_story("revenge", 7)

        result = await services.orchestrator.run(PipelineRequest(category="revenge", story=story))

        assert discovery.calls == []
        assert enhancer.calls[0][0] == story.content
        assert result.story == story

    @pytest.mark.asyncio
    async def test_cached_result_survives_restart(self):
        """Test that results are reloaded from durable storage."""
        storage = MemoryStorage()
        clock = ManualClock()
        first = _services(clock=clock, storage=storage)
        result = await first.orchestrator.run(PipelineRequest(category="drama"))

        renderer = FakeRenderer()
        second = _services(clock=clock, storage=storage, renderer=renderer)
        cached = await second.orchestrator.run(PipelineRequest(category="drama"))

        assert renderer.calls == []
        assert cached.from_cache
        assert cached.video_url == result.video_url
        assert cached.story == result.story
        assert cached.stages == result.stages


class TestFallbacks:
    """Test per-stage fallback behavior."""

    @pytest.mark.asyncio
    async def test_renderer_failure_uses_placeholders(self):
        """Test that a failing renderer still yields a result at zero render cost."""
        renderer = FakeRenderer(error=RuntimeError("shotstack returned 500"))
        services = _services(renderer=renderer)
        request = PipelineRequest(category="drama")

        result = await services.orchestrator.run(request)

        key = request.cache_key()
        assert result.video_url == placeholder_url("video", key)
        assert result.video_url == f"simulation://video/{key.variant}"
        assert result.audio_url == placeholder_url("audio", key)
        assert result.costs.render_cost == 0
        assert result.costs.speech_cost == 0
        assert result.costs.total_cost == result.costs.enhance_cost
        assert result.simulated

        reasons = {s.stage: s.reason for s in result.stages if not s.success}
        assert "shotstack returned 500" in reasons["render"]
        assert "shotstack returned 500" in reasons["synthesize"]

    @pytest.mark.asyncio
    async def test_simulated_render_not_cached(self):
        """Test that fallback videos are retried on the next run."""
        renderer = FakeRenderer(error=RuntimeError("down"))
        services = _services(renderer=renderer)
        request = PipelineRequest(category="drama")

        first = await services.orchestrator.run(request)
        second = await services.orchestrator.run(request)

        assert len(renderer.calls) == 2
        assert first.video_url == second.video_url
        assert len(services.results) == 0

    @pytest.mark.asyncio
    async def test_enhancer_failure_uses_template(self):
        """Test that a failing enhancer falls back to the category template."""
        enhancer = FakeEnhancer(error=ConnectionError("timeout"))
        renderer = FakeRenderer()
        services = _services(enhancer=enhancer, renderer=renderer)

        result = await services.orchestrator.run(PipelineRequest(category="drama"))

        assert result.enhanced_text.startswith("You won't believe what happened next...")
        assert result.costs.enhance_cost == 0
        assert renderer.calls[0][0] == result.enhanced_text
        assert result.costs.render_cost == 0.40

    @pytest.mark.asyncio
    async def test_discovery_failure_uses_fallback_story(self):
        """Test that discovery errors fall back to a placeholder story."""
        discovery = FakeDiscovery(error=ConnectionError("reddit down"))
        enhancer = FakeEnhancer()
        services = _services(enhancer=enhancer, discovery=discovery)

        result = await services.orchestrator.run(PipelineRequest(category="mystery"))

        assert result.story == fallback_story("mystery")
        assert enhancer.calls[0][0] == fallback_story("mystery").content
        assert len(services.stories) == 0

    @pytest.mark.asyncio
    async def test_no_collaborators_fully_simulated(self):
        """Test that a run with no providers still completes."""
        services = build_services(clock=ManualClock())
        result = await services.orchestrator.run(PipelineRequest(category="wholesome"))

        assert result.simulated
        assert result.costs.total_cost == 0.0
        assert result.enhanced_text.startswith("This will restore your faith in humanity...")
        assert result.video_url.startswith("simulation://video/")

    @pytest.mark.asyncio
    async def test_missing_enhancer_cost_falls_back(self):
        """Test that an enhancer without a true cost is never charged an estimate."""
        services = _services(enhancer=FakeEnhancer(cost=None))
        story = make_story()

        result = await services.orchestrator.run(PipelineRequest(category="drama", story=story))

        enhance = next(s for s in result.stages if s.stage == "enhance")
        assert not enhance.success
        assert "cost" in enhance.reason
        assert result.costs.enhance_cost == 0.0
        assert services.limiter.spent("claude") == 0.0
        assert estimate_enhance_cost(len(story.content)) > 0

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self):
        """Test that a provider call exceeding the timeout is abandoned."""

        class SlowEnhancer(FakeEnhancer):
            async def enhance(self, source_text, target_duration_minutes):
                await asyncio.sleep(10)

        services = _services(enhancer=SlowEnhancer())
        result = await services.orchestrator.run(PipelineRequest(category="drama"), timeout=0.01)

        enhance = next(s for s in result.stages if s.stage == "enhance")
        assert not enhance.success
        assert "timed out" in enhance.reason
        assert result.enhanced_text.startswith("You won't believe")

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        """Test that cancelling a run cancels the in-flight provider call."""
        started = asyncio.Event()
        cancelled = []

        class HangingEnhancer(FakeEnhancer):
            async def enhance(self, source_text, target_duration_minutes):
                started.set()
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    cancelled.append(True)
                    raise

        services = _services(enhancer=HangingEnhancer())
        task = asyncio.ensure_future(services.orchestrator.run(PipelineRequest(category="drama")))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert cancelled == [True]
        assert len(services.results) == 0


class TestLimiterGates:
    """Test admission control and per-stage limiter gates."""

    @pytest.mark.asyncio
    async def test_budget_rejection_forces_stage_fallback(self):
        """Test that a stage over budget is simulated without calling the provider."""
        config = GuardConfig(budgets={"shotstack": BudgetConfig(daily=0.10, monthly=10.0)})
        renderer = FakeRenderer()
        services = _services(renderer=renderer, config=config)

        result = await services.orchestrator.run(PipelineRequest(category="drama"))

        assert renderer.calls == []
        render = next(s for s in result.stages if s.stage == "render")
        assert render.reason.startswith("Daily budget limit for shotstack would be exceeded")
        assert result.costs.render_cost == 0
        assert result.costs.enhance_cost > 0

    @pytest.mark.asyncio
    async def test_provider_rate_limit_forces_stage_fallback(self):
        """Test that a rate-limited provider is simulated."""
        config = GuardConfig(rate_limits=RateLimitConfig(operations={"claude": 1}))
        enhancer = FakeEnhancer()
        services = _services(enhancer=enhancer, config=config)

        await services.orchestrator.run(PipelineRequest(category="drama"))
        result = await services.orchestrator.run(PipelineRequest(category="horror"))

        assert len(enhancer.calls) == 1
        enhance = next(s for s in result.stages if s.stage == "enhance")
        assert enhance.reason == "Rate limit exceeded for claude"

    @pytest.mark.asyncio
    async def test_render_budget_rejection_keeps_speech_rate_slot(self):
        """Test that no rate slot is spent when a shared call is refused on budget."""
        config = GuardConfig(
            budgets={"shotstack": BudgetConfig(daily=0.10, monthly=10.0)},
            rate_limits=RateLimitConfig(operations={"elevenlabs": 1}),
        )
        renderer = FakeRenderer()
        services = _services(renderer=renderer, config=config)

        await services.orchestrator.run(PipelineRequest(category="drama"))

        assert renderer.calls == []
        status = services.limiter.get_rate_limit_status("elevenlabs")
        assert status["rate"]["count"] == 0
        assert services.limiter.rate_available("elevenlabs")

    @pytest.mark.asyncio
    async def test_enhancer_spend_charged_to_its_provider(self):
        """Test that enhancement is accounted under the enhancer's own provider name."""

        class OpenAIEnhancer(FakeEnhancer):
            provider = "openai"

        services = _services(enhancer=OpenAIEnhancer(cost=0.02))
        result = await services.orchestrator.run(PipelineRequest(category="drama"))

        enhance = next(s for s in result.stages if s.stage == "enhance")
        assert enhance.provider == "openai"
        assert services.limiter.spent("openai") == pytest.approx(0.02)
        assert services.limiter.spent("claude") == 0.0

    @pytest.mark.asyncio
    async def test_request_rate_limit_rejects_before_work(self):
        """Test that the run rate limit raises before any provider call."""
        config = GuardConfig(rate_limits=RateLimitConfig(operations={"pipeline.run": 1}))
        discovery = FakeDiscovery()
        services = _services(discovery=discovery, config=config)

        await services.orchestrator.run(PipelineRequest(category="drama"))
        with pytest.raises(RateLimitedError) as exc_info:
            await services.orchestrator.run(PipelineRequest(category="horror"))

        assert exc_info.value.operation == "pipeline.run"
        assert "Rate limit exceeded" in exc_info.value.reason
        assert discovery.calls == [("drama", 15)]

    @pytest.mark.asyncio
    async def test_cache_hit_not_rate_limited(self):
        """Test that cached results are served past the run rate limit."""
        config = GuardConfig(rate_limits=RateLimitConfig(operations={"pipeline.run": 1}))
        services = _services(config=config)

        await services.orchestrator.run(PipelineRequest(category="drama"))
        cached = await services.orchestrator.run(PipelineRequest(category="drama"))
        assert cached.from_cache

    @pytest.mark.asyncio
    async def test_max_cost_per_run_rejects(self):
        """Test that an estimated run cost above the cap is refused."""
        config = GuardConfig(pipeline=PipelineConfig(max_cost_per_run=0.05))
        discovery = FakeDiscovery()
        enhancer = FakeEnhancer()
        services = _services(discovery=discovery, enhancer=enhancer, config=config)

        with pytest.raises(BudgetExceededError) as exc_info:
            await services.orchestrator.run(PipelineRequest(category="drama"))

        assert isinstance(exc_info.value, PipelineRejection)
        assert exc_info.value.boundary == "per_run"
        assert "exceeds per-run limit" in exc_info.value.reason
        assert discovery.calls == []
        assert enhancer.calls == []


class TestAccounting:
    """Test ledger and metric reporting."""

    @pytest.mark.asyncio
    async def test_spend_recorded_once_per_successful_call(self):
        """Test that the ledger equals the sum of successful stage costs."""
        services = _services(
            enhancer=FakeEnhancer(cost=0.02),
            renderer=FakeRenderer(speech_cost=0.05, render_cost=0.40),
        )
        await services.orchestrator.run(PipelineRequest(category="drama"))
        await services.orchestrator.run(PipelineRequest(category="horror"))

        assert services.limiter.spent("claude") == pytest.approx(0.04)
        assert services.limiter.spent("elevenlabs") == pytest.approx(0.10)
        assert services.limiter.spent("shotstack") == pytest.approx(0.80)

    @pytest.mark.asyncio
    async def test_fallback_records_no_spend(self):
        """Test that simulated stages leave the ledger untouched."""
        services = _services(renderer=FakeRenderer(error=RuntimeError("down")))
        await services.orchestrator.run(PipelineRequest(category="drama"))

        assert services.limiter.spent("shotstack") == 0.0
        assert services.limiter.spent("elevenlabs") == 0.0

    @pytest.mark.asyncio
    async def test_cache_hit_records_no_spend(self):
        """Test that serving from cache costs nothing."""
        services = _services()
        await services.orchestrator.run(PipelineRequest(category="drama"))
        spent = services.limiter.spent("shotstack")
        await services.orchestrator.run(PipelineRequest(category="drama"))

        assert services.limiter.spent("shotstack") == spent

    @pytest.mark.asyncio
    async def test_metrics_reported_per_stage(self):
        """Test that each stage reports once and the run is recorded."""
        services = _services(renderer=FakeRenderer(error=RuntimeError("down")))
        await services.orchestrator.run(PipelineRequest(category="drama"))

        stage_costs = services.sink.samples("stage_cost")
        assert [s.metadata["stage"] for s in stage_costs] == ["enhance"]
        assert len(services.sink.samples("error_count")) == 2
        assert services.sink.latest("video_generation_success") == 0
        assert services.sink.latest("throughput") == 1
        assert services.sink.latest("api_latency_claude") is not None

    @pytest.mark.asyncio
    async def test_progress_callback(self):
        """Test that progress is reported through to completion."""
        services = _services()
        steps = []
        await services.orchestrator.run(
            PipelineRequest(category="drama"),
            progress=lambda step, pct: steps.append((step, pct)),
        )

        assert steps[0] == ("Checking cache", 5)
        assert steps[-1] == ("Complete", 100)
        percentages = [pct for _, pct in steps]
        assert percentages == sorted(percentages)

    @pytest.mark.asyncio
    async def test_failing_progress_callback_ignored(self):
        """Test that a broken progress callback does not fail the run."""
        services = _services()

        def broken(step, pct):
            raise RuntimeError("ui gone")

        result = await services.orchestrator.run(PipelineRequest(category="drama"), progress=broken)
        assert not result.simulated

    @pytest.mark.asyncio
    async def test_dashboard_accessors(self):
        """Test the read-only views over the services."""
        services = _services()
        await services.orchestrator.run(PipelineRequest(category="drama"))

        stats = services.orchestrator.get_cache_stats()
        assert set(stats) == {"stories", "results"}
        assert stats["results"].total_entries == 1
        assert services.orchestrator.get_rate_limit_status("shotstack")["daily"]["spent"] == 0.40
        assert services.orchestrator.get_alerts() == []
        assert services.orchestrator.get_metrics().throughput == 1


class TestResultSerialization:
    """Test result snapshots written to durable storage."""

    def test_round_trip_preserves_costs(self):
        """Test that a stored result decodes to the same result."""
        result = PipelineResult(
            video_url="https://cdn.example.com/v.mp4",
            audio_url=None,
            story=make_story(),
            enhanced_text="text",
            costs=CostBreakdown(0.01, 0.05, 0.40),
            cache_key="video_abc",
        )
        assert PipelineResult.from_dict(result.to_dict()) == result
