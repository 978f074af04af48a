"""
Shared fixtures and fake provider collaborators.
"""

from typing import List, Optional

import pytest

from pipeline_guard.core.clock import ManualClock
from pipeline_guard.providers.base import EnhancedText, RenderResult, Story, VoiceConfig
from pipeline_guard.storage.repository import MemoryStorage


def make_story(category: str = "drama", index: int = 0) -> Story:
    return Story(
        id=f"{category}_{index}",
        title=f"{category.title()} story {index}",
        content=f"Something {category} happened to me at work. " * 20,
        category=category,
        subreddit="tifu",
        upvotes=1000 - index,
        viral_score=90.0 - index,
    )


class FakeDiscovery:
    """ContentDiscovery returning canned stories."""

    def __init__(self, stories: Optional[List[Story]] = None, error: Optional[Exception] = None):
        self.stories = stories
        self.error = error
        self.calls = []

    async def fetch(self, category: str, limit: int) -> List[Story]:
        self.calls.append((category, limit))
        if self.error is not None:
            raise self.error
        if self.stories is not None:
            return list(self.stories)
        return [make_story(category, i) for i in range(min(limit, 3))]


class FakeEnhancer:
    """TextEnhancer that prefixes the source text."""

    provider = "claude"

    def __init__(self, cost: Optional[float] = 0.01, error: Optional[Exception] = None):
        self.cost = cost
        self.error = error
        self.calls = []

    async def enhance(self, source_text: str, target_duration_minutes: float) -> EnhancedText:
        self.calls.append((source_text, target_duration_minutes))
        if self.error is not None:
            raise self.error
        return EnhancedText(text=f"Enhanced: {source_text}", cost=self.cost)


class FakeRenderer:
    """SpeechAndVideoRenderer returning fixed URLs and costs."""

    def __init__(self, speech_cost: float = 0.05, render_cost: float = 0.40, error: Optional[Exception] = None):
        self.speech_cost = speech_cost
        self.render_cost = render_cost
        self.error = error
        self.calls = []

    async def render(
        self,
        enhanced_text: str,
        background_url: str,
        voice: VoiceConfig,
        duration_seconds: float,
        captions: bool,
    ) -> RenderResult:
        self.calls.append((enhanced_text, background_url, voice, duration_seconds, captions))
        if self.error is not None:
            raise self.error
        return RenderResult(
            video_url=f"https://cdn.example.com/video/{len(self.calls)}.mp4",
            audio_url=f"https://cdn.example.com/audio/{len(self.calls)}.mp3",
            speech_cost=self.speech_cost,
            render_cost=self.render_cost,
        )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def storage():
    return MemoryStorage()
