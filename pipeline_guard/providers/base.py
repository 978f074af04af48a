"""
Collaborator contracts for content providers.

The orchestrator only talks to providers through these narrow async
interfaces. Implementations may raise any exception; the orchestrator treats
every failure as a ProviderError and falls back.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol


@dataclass(frozen=True)
class Story:
    """A discovered source story."""
    id: str
    title: str
    content: str
    category: str
    subreddit: str = ""
    upvotes: int = 0
    comments: int = 0
    created_utc: float = 0.0
    url: str = ""
    viral_score: float = 0.0
    estimated_duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Story":
        return cls(**data)


@dataclass(frozen=True)
class VoiceConfig:
    """Speech synthesis settings."""
    voice_id: str
    stability: float = 0.5
    similarity_boost: float = 0.75

    def __post_init__(self):
        if not self.voice_id or not self.voice_id.strip():
            raise ValueError("voice_id is required and cannot be empty")


@dataclass(frozen=True)
class EnhancedText:
    """Enhanced narration text and the true cost of producing it."""
    text: str
    cost: float

    def __post_init__(self):
        if self.cost is None:
            raise ValueError("cost is required, enhancers must report the true cost")
        if self.cost < 0:
            raise ValueError("cost cannot be negative")


@dataclass(frozen=True)
class RenderResult:
    """Rendered artifacts and the true cost of each half of the call."""
    video_url: str
    audio_url: Optional[str] = None
    speech_cost: float = 0.0
    render_cost: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)


class TextEnhancer(Protocol):
    """Rewrites source text into narration sized for a target duration."""

    provider: str

    async def enhance(self, source_text: str, target_duration_minutes: float) -> EnhancedText:
        ...


class SpeechAndVideoRenderer(Protocol):
    """Synthesizes speech and renders the final video in one call."""

    async def render(
        self,
        enhanced_text: str,
        background_url: str,
        voice: VoiceConfig,
        duration_seconds: float,
        captions: bool,
    ) -> RenderResult:
        ...


class ContentDiscovery(Protocol):
    """Fetches source stories for a category, best first."""

    async def fetch(self, category: str, limit: int) -> List[Story]:
        ...
