"""
OpenAI-backed text enhancer.

Rewrites a source story into narration sized for the target video length and
reports the true cost of the call from the response's token usage.
"""

import asyncio
import logging
import os
from typing import Any, Optional

from openai import OpenAI

from pipeline_guard.core.errors import ConfigurationError, ProviderError
from pipeline_guard.core.pricing import PRICING_TABLE, TokenUsage, calculate_cost
from .base import EnhancedText

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 150
TOKENS_PER_MINUTE = 400
MAX_COMPLETION_TOKENS = 2000
MIN_LENGTH_RATIO = 0.8


def build_enhancement_prompt(source_text: str, target_duration_minutes: float) -> str:
    target_words = int(target_duration_minutes * WORDS_PER_MINUTE)
    return (
        "Rewrite the following story as a narration script for a short vertical video.\n"
        f"Aim for about {target_words} words ({target_duration_minutes:g} minutes spoken).\n"
        "Open with a one-sentence hook, keep every fact of the original, and end with a "
        "question that invites comments. Return only the narration text.\n\n"
        f"Story:\n{source_text}"
    )


class OpenAITextEnhancer:
    """TextEnhancer implementation using OpenAI chat completions.

    The synchronous client runs in a worker thread so the event loop keeps
    serving other runs while the request is in flight.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        provider: str = "openai",
        api_key: Optional[str] = None,
        client: Any = None,
    ):
        """Initialize the enhancer.

        Args:
            model: OpenAI model name, must be in the pricing table
            provider: Budget/rate-limit name this enhancer is accounted under
            api_key: API key; defaults to the OPENAI_API_KEY environment variable
            client: Pre-built client (tests)

        Raises:
            ValueError: If model or provider is missing/empty
            ConfigurationError: If no API key is available or the model is unpriced
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not provider or not provider.strip():
            raise ValueError("provider is required and cannot be empty")
        if not PRICING_TABLE.supports(model):
            raise ConfigurationError(f"No pricing configured for model: {model}")

        self.model = model
        self.provider = provider
        if client is None:
            key = api_key or os.environ.get("OPENAI_API_KEY")
            if not key:
                raise ConfigurationError("OPENAI_API_KEY is not set")
            client = OpenAI(api_key=key)
        self.client = client

    async def enhance(self, source_text: str, target_duration_minutes: float) -> EnhancedText:
        if not source_text or not source_text.strip():
            raise ValueError("source_text is required and cannot be empty")
        return await asyncio.to_thread(self._complete, source_text, target_duration_minutes)

    def _complete(self, source_text: str, target_duration_minutes: float) -> EnhancedText:
        max_tokens = min(MAX_COMPLETION_TOKENS, int(target_duration_minutes * TOKENS_PER_MINUTE))
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{
                "role": "user",
                "content": build_enhancement_prompt(source_text, target_duration_minutes),
            }],
            max_tokens=max(1, max_tokens),
        )

        usage = response.usage
        if not usage:
            raise ProviderError(self.provider, "response missing usage information")
        cost = calculate_cost(self.model, TokenUsage(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        ))

        text = (response.choices[0].message.content or "").strip()
        if len(text) < len(source_text) * MIN_LENGTH_RATIO:
            logger.warning("Enhancement too short (%d chars), keeping original text", len(text))
            text = source_text

        logger.info("Enhanced %d chars with %s for $%.4f", len(source_text), self.model, cost)
        return EnhancedText(text=text, cost=cost)
