"""
Pipeline orchestration.

A run moves through a fixed sequence of states:

    INIT -> CACHE_LOOKUP -> CACHE_HIT -> DONE
                         -> DISCOVER -> ENHANCE -> SYNTHESIZE -> RENDER -> DONE

Admission Order (on a cache miss, before any provider call):
1. Request rate - the `pipeline.run` operation window
2. Per-run max cost - the estimated cost of a full run against max_cost_per_run

A rejected admission raises a typed PipelineRejection. Once admitted, a run
always produces a result: each stage that is rejected by the limiter or whose
provider fails is replaced by a deterministic local fallback at zero cost.
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from pipeline_guard.config.loader import PipelineConfig
from pipeline_guard.providers.base import (
    ContentDiscovery,
    SpeechAndVideoRenderer,
    Story,
    TextEnhancer,
    VoiceConfig,
)
from .alerts import AlertEngine, AlertInstance, SystemHealth
from .cache import CacheKey, CacheStats, TieredCache
from .clock import Clock
from .errors import BudgetExceededError, ProviderError, RateLimitedError
from .metrics import MetricSink
from .pricing import (
    estimate_enhance_cost,
    estimate_render_cost,
    estimate_run_cost,
    estimate_speech_cost,
    narration_chars,
)
from .rate_limiter import BudgetedRateLimiter

logger = logging.getLogger(__name__)

RUN_OPERATION = "pipeline.run"
DISCOVERY_OPERATION = "discovery"
RESULT_CATEGORY = "video"
SIMULATION_SCHEME = "simulation://"
DEFAULT_VOICE_ID = "default"

FALLBACK_HOOKS = {
    "drama": "You won't believe what happened next...",
    "horror": "This story still gives me chills...",
    "revenge": "They thought they could get away with it...",
    "wholesome": "This will restore your faith in humanity...",
    "mystery": "No one could explain what happened...",
}
DEFAULT_FALLBACK_HOOK = "Here's a story that will blow your mind..."
FALLBACK_OUTRO = "What do you think? Let me know in the comments!"

ProgressCallback = Callable[[str, int], None]


class PipelineState(Enum):
    """States of a single pipeline run."""
    INIT = "init"
    CACHE_LOOKUP = "cache_lookup"
    CACHE_HIT = "cache_hit"
    DISCOVER = "discover"
    ENHANCE = "enhance"
    SYNTHESIZE = "synthesize"
    RENDER = "render"
    DONE = "done"


@dataclass(frozen=True)
class Success:
    """Stage completed by its provider at a known cost."""
    data: Any
    cost: float


@dataclass(frozen=True)
class Fallback:
    """Stage replaced by a local artifact."""
    data: Any
    reason: str
    cost: float = field(default=0.0, init=False)


StageOutcome = Union[Success, Fallback]


@dataclass(frozen=True)
class PipelineRequest:
    """One video generation request.

    When `story` is None the best story for `category` is taken from
    discovery, through the story cache.
    """
    category: str
    story: Optional[Story] = None
    background_url: str = ""
    voice: VoiceConfig = field(default_factory=lambda: VoiceConfig(DEFAULT_VOICE_ID))
    duration_seconds: float = 60.0
    add_captions: bool = True
    story_limit: int = 15

    def __post_init__(self):
        if not self.category or not self.category.strip():
            raise ValueError("category is required and cannot be empty")
        if self.duration_seconds <= 0:
            raise ValueError("duration_seconds must be > 0")
        if self.story_limit <= 0:
            raise ValueError("story_limit must be > 0")

    def cache_key(self) -> CacheKey:
        """Result cache key derived from the immutable parts of the request."""
        source = f"story:{self.story.id}" if self.story is not None else (
            f"category:{self.category}:{self.story_limit}"
        )
        parts = [
            source,
            f"duration:{self.duration_seconds:g}",
            f"voice:{self.voice.voice_id}",
            f"captions:{int(self.add_captions)}",
            f"background:{self.background_url}",
        ]
        digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:16]
        return CacheKey(category=RESULT_CATEGORY, variant=digest)


@dataclass(frozen=True)
class CostBreakdown:
    """Itemized run cost. The total is computed once from the items."""
    enhance_cost: float = 0.0
    speech_cost: float = 0.0
    render_cost: float = 0.0
    total_cost: float = field(init=False)

    def __post_init__(self):
        object.__setattr__(
            self, "total_cost",
            self.enhance_cost + self.speech_cost + self.render_cost,
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "enhance_cost": self.enhance_cost,
            "speech_cost": self.speech_cost,
            "render_cost": self.render_cost,
            "total_cost": self.total_cost,
        }


@dataclass(frozen=True)
class StageReport:
    """How one stage of a run completed."""
    stage: str
    provider: str
    success: bool
    cost: float
    duration_ms: float
    reason: Optional[str] = None


@dataclass(frozen=True)
class PipelineResult:
    """Final artifacts of a run and its cost breakdown."""
    video_url: str
    audio_url: Optional[str]
    story: Story
    enhanced_text: str
    costs: CostBreakdown
    cache_key: str
    stages: Tuple[StageReport, ...] = ()
    from_cache: bool = False

    @property
    def simulated(self) -> bool:
        """True when any stage used a fallback."""
        return any(not s.success for s in self.stages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "video_url": self.video_url,
            "audio_url": self.audio_url,
            "story": self.story.to_dict(),
            "enhanced_text": self.enhanced_text,
            "costs": self.costs.to_dict(),
            "cache_key": self.cache_key,
            "stages": [
                {
                    "stage": s.stage,
                    "provider": s.provider,
                    "success": s.success,
                    "cost": s.cost,
                    "duration_ms": s.duration_ms,
                    "reason": s.reason,
                }
                for s in self.stages
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineResult":
        costs = data["costs"]
        return cls(
            video_url=data["video_url"],
            audio_url=data.get("audio_url"),
            story=Story.from_dict(data["story"]),
            enhanced_text=data["enhanced_text"],
            costs=CostBreakdown(
                enhance_cost=costs["enhance_cost"],
                speech_cost=costs["speech_cost"],
                render_cost=costs["render_cost"],
            ),
            cache_key=data["cache_key"],
            stages=tuple(StageReport(**s) for s in data.get("stages", [])),
        )


def fallback_enhancement(story: Story) -> str:
    """Template narration used when the enhancer cannot be called."""
    hook = FALLBACK_HOOKS.get(story.category.lower(), DEFAULT_FALLBACK_HOOK)
    return f"{hook}\n\n{story.content}\n\n{FALLBACK_OUTRO}"


def fallback_story(category: str) -> Story:
    """Placeholder story used when discovery returns nothing."""
    return Story(
        id=f"fallback_{category}",
        title=f"An untold {category} story",
        content=(
            f"This is a {category} story that was shared with us. "
            "Some details have been changed to protect the people involved, "
            "but everything else happened exactly as told."
        ),
        category=category,
    )


def placeholder_url(kind: str, cache_key: CacheKey) -> str:
    """Deterministic artifact reference for a simulated stage."""
    return f"{SIMULATION_SCHEME}{kind}/{cache_key.variant}"


class PipelineOrchestrator:
    """Runs requests through cache, admission, provider stages and fallbacks."""

    def __init__(
        self,
        clock: Clock,
        limiter: BudgetedRateLimiter,
        stories: TieredCache,
        results: TieredCache,
        sink: MetricSink,
        alerts: AlertEngine,
        enhancer: Optional[TextEnhancer] = None,
        renderer: Optional[SpeechAndVideoRenderer] = None,
        discovery: Optional[ContentDiscovery] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self.clock = clock
        self.limiter = limiter
        self.stories = stories
        self.results = results
        self.sink = sink
        self.alerts = alerts
        self.enhancer = enhancer
        self.renderer = renderer
        self.discovery = discovery
        self.config = config or PipelineConfig()

    @property
    def enhance_provider(self) -> str:
        """Budget name for enhancement: the enhancer's own, else the configured one."""
        return getattr(self.enhancer, "provider", None) or self.config.enhance_provider

    async def run(
        self,
        request: PipelineRequest,
        timeout: Optional[float] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> PipelineResult:
        """Produce a video for `request`.

        Args:
            request: What to generate
            timeout: Per provider call bound in seconds, defaults to stage_timeout
            progress: Called with (step, percentage) as the run advances

        Returns:
            PipelineResult, possibly partially or fully simulated

        Raises:
            RateLimitedError: If the request rate limit has been reached
            BudgetExceededError: If the estimated run cost exceeds max_cost_per_run
        """
        timeout = self.config.stage_timeout if timeout is None else timeout
        started = time.perf_counter()
        key = request.cache_key()
        state = PipelineState.INIT

        state = self._advance(state, PipelineState.CACHE_LOOKUP, progress, "Checking cache", 5)
        hit = self.results.get(key)
        if hit is not None:
            self._advance(state, PipelineState.CACHE_HIT, progress, "Complete", 100)
            logger.info("Returning cached result for %s", key)
            cached = hit.payload[0]
            return replace(cached, costs=CostBreakdown(), from_cache=True)

        self._admit(request)

        stages: List[StageReport] = []

        state = self._advance(state, PipelineState.DISCOVER, progress, "Finding story", 15)
        story = await self._discover(request, timeout, stages)

        state = self._advance(state, PipelineState.ENHANCE, progress, "Enhancing story", 35)
        stage_started = time.perf_counter()
        enhanced = await self._enhance(story, request, timeout)
        stages.append(self._complete_stage(
            PipelineState.ENHANCE, self.enhance_provider, enhanced, stage_started,
        ))

        state = self._advance(state, PipelineState.SYNTHESIZE, progress, "Generating speech and video", 60)
        stage_started = time.perf_counter()
        speech, video = await self._render(enhanced.data, request, key, timeout)
        stages.append(self._complete_stage(
            PipelineState.SYNTHESIZE, self.config.speech_provider, speech, stage_started,
        ))
        state = self._advance(state, PipelineState.RENDER, progress, "Finalizing", 90)
        stages.append(self._complete_stage(
            PipelineState.RENDER, self.config.render_provider, video, stage_started,
        ))

        result = PipelineResult(
            video_url=video.data,
            audio_url=speech.data,
            story=story,
            enhanced_text=enhanced.data,
            costs=CostBreakdown(
                enhance_cost=enhanced.cost,
                speech_cost=speech.cost,
                render_cost=video.cost,
            ),
            cache_key=str(key),
            stages=tuple(stages),
        )

        if isinstance(video, Success):
            self.results.put(key, [result], ttl=self.config.result_ttl)

        processing_ms = (time.perf_counter() - started) * 1000
        self.sink.record_generation(
            request.duration_seconds, not result.simulated, result.costs.total_cost, processing_ms,
        )
        self._advance(state, PipelineState.DONE, progress, "Complete", 100)
        logger.info(
            "Pipeline finished for %s: $%.4f total, %s",
            request.category, result.costs.total_cost,
            "simulated" if result.simulated else "all stages succeeded",
        )
        return result

    # Admission

    def _admit(self, request: PipelineRequest) -> None:
        if not self.limiter.check_rate(RUN_OPERATION):
            reason = f"Rate limit exceeded for {RUN_OPERATION}, please try again later"
            logger.warning(reason)
            raise RateLimitedError(reason, RUN_OPERATION)

        cap = self.config.max_cost_per_run
        if cap is None:
            return
        source_chars = (
            len(request.story.content) if request.story is not None
            else narration_chars(request.duration_seconds)
        )
        estimate = estimate_run_cost(source_chars, request.duration_seconds)
        if estimate > cap:
            reason = f"Estimated run cost ${estimate:.4f} exceeds per-run limit ${cap:.4f}"
            logger.warning(reason)
            raise BudgetExceededError(reason, boundary="per_run")

    def _gate(self, *charges: Tuple[str, float]) -> Optional[str]:
        """Reason a provider call may not go ahead, or None when it may.

        `charges` are the (provider, estimated cost) pairs the call spends
        against. Rate slots are consumed only once every gate has passed.
        """
        for provider, estimated_cost in charges:
            decision = self.limiter.check_budget(provider, estimated_cost)
            if not decision.allowed:
                return decision.reason
        for provider, _ in charges:
            if not self.limiter.rate_available(provider):
                logger.info("Rate limit reached for %s", provider)
                return f"Rate limit exceeded for {provider}"
        for provider, _ in charges:
            self.limiter.check_rate(provider)
        return None

    # Stages

    async def _discover(self, request: PipelineRequest, timeout: float, stages: List[StageReport]) -> Story:
        if request.story is not None:
            return request.story

        key = CacheKey.for_stories(request.category, request.story_limit)
        hit = self.stories.get(key)
        if hit is not None:
            return hit.payload[0]

        started = time.perf_counter()
        if self.discovery is None:
            reason = "no content discovery configured"
        elif not self.limiter.check_rate(DISCOVERY_OPERATION):
            reason = f"Rate limit exceeded for {DISCOVERY_OPERATION}"
        else:
            try:
                found = await self._call(
                    DISCOVERY_OPERATION,
                    lambda: self.discovery.fetch(request.category, request.story_limit),
                    timeout,
                )
            except ProviderError as e:
                reason = str(e)
            else:
                if found:
                    self.stories.put(key, found)
                    stages.append(StageReport(
                        stage=PipelineState.DISCOVER.value,
                        provider=DISCOVERY_OPERATION,
                        success=True,
                        cost=0.0,
                        duration_ms=(time.perf_counter() - started) * 1000,
                    ))
                    return found[0]
                reason = f"no stories found for {request.category}"

        logger.warning("Discovery fell back for %s: %s", request.category, reason)
        stages.append(StageReport(
            stage=PipelineState.DISCOVER.value,
            provider=DISCOVERY_OPERATION,
            success=False,
            cost=0.0,
            duration_ms=(time.perf_counter() - started) * 1000,
            reason=reason,
        ))
        return fallback_story(request.category)

    async def _enhance(self, story: Story, request: PipelineRequest, timeout: float) -> StageOutcome:
        provider = self.enhance_provider
        fallback_text = fallback_enhancement(story)
        if self.enhancer is None:
            return Fallback(fallback_text, "no text enhancer configured")

        estimate = estimate_enhance_cost(len(story.content))
        rejection = self._gate((provider, estimate))
        if rejection is not None:
            return Fallback(fallback_text, rejection)

        try:
            enhanced = await self._call(
                provider,
                lambda: self.enhancer.enhance(story.content, request.duration_seconds / 60),
                timeout,
            )
        except ProviderError as e:
            return Fallback(fallback_text, str(e))

        if getattr(enhanced, "cost", None) is None:
            return Fallback(fallback_text, f"{provider}: response missing cost")
        return Success(enhanced.text, enhanced.cost)

    async def _render(
        self,
        text: str,
        request: PipelineRequest,
        key: CacheKey,
        timeout: float,
    ) -> Tuple[StageOutcome, StageOutcome]:
        """Synthesize speech and render video in one renderer call.

        Both halves share the call, so a rejection or failure of either one
        sends both stages to their fallback.
        """
        audio_placeholder = placeholder_url("audio", key)
        video_placeholder = placeholder_url("video", key)

        def both_fallback(reason: str) -> Tuple[StageOutcome, StageOutcome]:
            return Fallback(audio_placeholder, reason), Fallback(video_placeholder, reason)

        if self.renderer is None:
            return both_fallback("no renderer configured")

        rejection = self._gate(
            (self.config.speech_provider, estimate_speech_cost(len(text))),
            (self.config.render_provider, estimate_render_cost(request.duration_seconds)),
        )
        if rejection is not None:
            return both_fallback(rejection)

        try:
            rendered = await self._call(
                self.config.render_provider,
                lambda: self.renderer.render(
                    text,
                    request.background_url,
                    request.voice,
                    request.duration_seconds,
                    request.add_captions,
                ),
                timeout,
            )
        except ProviderError as e:
            return both_fallback(str(e))

        if not rendered.video_url:
            return both_fallback(f"{self.config.render_provider}: response missing video url")

        return (
            Success(rendered.audio_url, rendered.speech_cost),
            Success(rendered.video_url, rendered.render_cost),
        )

    async def _call(self, provider: str, call: Callable[[], Awaitable[Any]], timeout: float) -> Any:
        """Await one provider call, mapping every failure to ProviderError."""
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(call(), timeout)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as e:
            raise ProviderError(provider, f"timed out after {timeout:g}s") from e
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(provider, str(e) or type(e).__name__) from e
        finally:
            self.sink.record_api_latency(provider, (time.perf_counter() - started) * 1000)

    def _complete_stage(
        self,
        state: PipelineState,
        provider: str,
        outcome: StageOutcome,
        started: float,
    ) -> StageReport:
        """Account for a finished stage: ledger, metrics and report, once."""
        duration_ms = (time.perf_counter() - started) * 1000
        if isinstance(outcome, Success):
            self.limiter.record_spend(provider, outcome.cost)
            self.sink.record("stage_cost", outcome.cost, "usd", {
                "stage": state.value,
                "provider": provider,
            })
            return StageReport(state.value, provider, True, outcome.cost, duration_ms)

        logger.warning("Stage %s fell back: %s", state.value, outcome.reason)
        self.sink.record_error(provider, "fallback", outcome.reason)
        return StageReport(state.value, provider, False, 0.0, duration_ms, outcome.reason)

    def _advance(
        self,
        current: PipelineState,
        target: PipelineState,
        progress: Optional[ProgressCallback],
        step: str,
        percentage: int,
    ) -> PipelineState:
        logger.debug("Pipeline %s -> %s", current.value, target.value)
        if progress is not None:
            try:
                progress(step, percentage)
            except Exception:
                logger.exception("Progress callback failed at %s", step)
        return target

    # Dashboards

    def _health_services(self) -> Tuple[str, str, str]:
        return (self.enhance_provider, self.config.render_provider, self.config.speech_provider)

    def get_metrics(self) -> SystemHealth:
        return self.alerts.get_system_health(self._health_services())

    def record_health(self) -> SystemHealth:
        """Compute system health and persist it for the status dashboard."""
        return self.alerts.snapshot_health(self._health_services())

    def get_alerts(self, window: Optional[float] = 3600.0) -> List[AlertInstance]:
        return self.alerts.get_alerts(window)

    def get_cache_stats(self) -> Dict[str, CacheStats]:
        return {
            self.stories.namespace: self.stories.get_stats(),
            self.results.namespace: self.results.get_stats(),
        }

    def get_rate_limit_status(self, provider: str) -> Dict[str, Any]:
        return self.limiter.get_rate_limit_status(provider)
