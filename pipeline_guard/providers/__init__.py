"""
Provider collaborators.

Contracts for text enhancement, speech/video rendering and content discovery,
plus an OpenAI-backed text enhancer.
"""

from .base import (
    ContentDiscovery,
    EnhancedText,
    RenderResult,
    SpeechAndVideoRenderer,
    Story,
    TextEnhancer,
    VoiceConfig,
)
from .openai_enhancer import OpenAITextEnhancer

__all__ = [
    "ContentDiscovery",
    "EnhancedText",
    "OpenAITextEnhancer",
    "RenderResult",
    "SpeechAndVideoRenderer",
    "Story",
    "TextEnhancer",
    "VoiceConfig",
]
