"""
Cost estimation for provider calls.

Estimates feed budget admission checks before a call is made. Token-based
model pricing gives the true cost of a completed text enhancement.
"""

from dataclasses import dataclass
from decimal import ROUND_UP, Decimal
from typing import Dict, Union

COST_QUANTUM = Decimal("0.0001")

# Flat provider rates
ENHANCE_COST_PER_1K_CHARS = Decimal("0.008")
ENHANCE_COST_CAP = Decimal("0.50")
SPEECH_COST_PER_1K_CHARS = Decimal("0.018")
RENDER_COST_PER_MINUTE = Decimal("0.40")


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported by a completion response."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1k: Decimal  # Cost per 1K prompt tokens
    completion_cost_per_1k: Decimal  # Cost per 1K completion tokens


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If model is not supported
        """
        if model not in self.prices:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[model]

    def supports(self, model: str) -> bool:
        return model in self.prices


PRICING_TABLE = PricingTable({
    "gpt-4o": ModelPricing(
        prompt_cost_per_1k=Decimal("0.0025"),
        completion_cost_per_1k=Decimal("0.01")
    ),
    "gpt-4o-mini": ModelPricing(
        prompt_cost_per_1k=Decimal("0.00015"),
        completion_cost_per_1k=Decimal("0.0006")
    ),
    "gpt-4": ModelPricing(
        prompt_cost_per_1k=Decimal("0.03"),
        completion_cost_per_1k=Decimal("0.06")
    ),
    "gpt-3.5-turbo": ModelPricing(
        prompt_cost_per_1k=Decimal("0.0005"),
        completion_cost_per_1k=Decimal("0.0015")
    ),
})


def _round_up(amount: Decimal) -> float:
    """Conservative rounding: always up to the cost quantum."""
    return float(amount.quantize(COST_QUANTUM, rounding=ROUND_UP))


def _decimal(value: Union[int, float]) -> Decimal:
    if value < 0:
        raise ValueError("usage quantities cannot be negative")
    return Decimal(str(value))


def calculate_cost(model: str, usage: TokenUsage) -> float:
    """Calculate total cost for model usage with conservative rounding.

    Args:
        model: Model identifier
        usage: Token usage data

    Returns:
        Total cost rounded UP to 4 decimal places

    Raises:
        ValueError: If model is not supported
    """
    pricing = PRICING_TABLE.get_pricing(model)

    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k

    return _round_up(prompt_cost + completion_cost)


def estimate_enhance_cost(source_chars: int) -> float:
    """Estimated text enhancement cost, capped per call."""
    cost = (_decimal(source_chars) / Decimal("1000")) * ENHANCE_COST_PER_1K_CHARS
    return _round_up(min(ENHANCE_COST_CAP, cost))


def estimate_speech_cost(text_chars: int) -> float:
    """Estimated speech synthesis cost for a narration of `text_chars` characters."""
    return _round_up((_decimal(text_chars) / Decimal("1000")) * SPEECH_COST_PER_1K_CHARS)


def estimate_render_cost(duration_seconds: float) -> float:
    """Estimated video render cost for a clip of `duration_seconds`."""
    return _round_up((_decimal(duration_seconds) / Decimal("60")) * RENDER_COST_PER_MINUTE)


# Narration sizing used when the source text is not known yet
WORDS_PER_MINUTE = 150
CHARS_PER_WORD = 6


def narration_chars(duration_seconds: float) -> int:
    """Approximate character count of a narration spoken in `duration_seconds`."""
    return int(_decimal(duration_seconds) / Decimal("60") * WORDS_PER_MINUTE * CHARS_PER_WORD)


def estimate_run_cost(source_chars: int, duration_seconds: float) -> float:
    """Estimated cost of one full pipeline run: enhancement, speech and render."""
    return _round_up(
        Decimal(str(estimate_enhance_cost(source_chars)))
        + Decimal(str(estimate_speech_cost(narration_chars(duration_seconds))))
        + Decimal(str(estimate_render_cost(duration_seconds)))
    )
