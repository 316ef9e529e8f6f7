"""Token usage value type, pricing, and cost calculation utilities."""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Row used for models that match no prefix in the pricing table.
DEFAULT_PRICING_MODEL = "gpt-4-turbo"


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_counts(cls, prompt_tokens: int | None, completion_tokens: int | None, total_tokens: int | None = None):
        """Build usage from provider counts, treating missing values as zero."""
        prompt = prompt_tokens or 0
        completion = completion_tokens or 0
        total = total_tokens if total_tokens else prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


ZERO_USAGE = TokenUsage()


def _pricing_table(pricing: dict[str, tuple[float, float]] | None) -> dict[str, tuple[float, float]]:
    if pricing is not None:
        return pricing
    from config import settings

    return settings.MODEL_PRICING


def get_model_pricing(model_name: str, pricing: dict[str, tuple[float, float]] | None = None) -> tuple[float, float]:
    """Return (input_cost_per_1K, output_cost_per_1K) for a model name via prefix match.

    The longest matching prefix wins, so ``gpt-4-turbo-preview`` prices as
    ``gpt-4-turbo`` rather than ``gpt-4``. Unknown models fall back to the
    default row.
    """
    table = _pricing_table(pricing)
    lower = (model_name or "").lower()
    best: str | None = None
    for prefix in table:
        if lower.startswith(prefix.lower()) and (best is None or len(prefix) > len(best)):
            best = prefix
    if best is not None:
        return tuple(table[best])

    if DEFAULT_PRICING_MODEL in table:
        if model_name:
            logger.debug("No pricing for model %r, using %s rates", model_name, DEFAULT_PRICING_MODEL)
        return tuple(table[DEFAULT_PRICING_MODEL])
    return (0.0, 0.0)


def calculate_cost(
    model_name: str,
    prompt_tokens: int,
    completion_tokens: int,
    pricing: dict[str, tuple[float, float]] | None = None,
) -> float:
    """Calculate USD cost for a given model and token counts."""
    input_rate, output_rate = get_model_pricing(model_name, pricing)
    return (prompt_tokens * input_rate + completion_tokens * output_rate) / 1000
