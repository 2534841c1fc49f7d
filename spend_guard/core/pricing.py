"""
Inference pricing.

Computes the estimated cost of an enrichment call from its token usage.
The amounts feed the cost circuit breaker and the usage ledger.
"""

from dataclasses import dataclass
from typing import Dict, Tuple
from decimal import Decimal, ROUND_UP

from .token_counter import TokenUsage

# Enrichment calls cost fractions of a cent; keep five decimal places.
COST_QUANTUM = Decimal("0.00001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1k: Decimal  # USD per 1K prompt tokens
    completion_cost_per_1k: Decimal  # USD per 1K completion tokens


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

    def supported_models(self) -> Tuple[str, ...]:
        return tuple(sorted(self.prices))


# Fixed pricing table - no dynamic fetching, no defaults
PRICING_TABLE = PricingTable({
    "gpt-4o-mini": ModelPricing(
        prompt_cost_per_1k=Decimal("0.00015"),
        completion_cost_per_1k=Decimal("0.0006")
    ),
    "gpt-4o": ModelPricing(
        prompt_cost_per_1k=Decimal("0.0025"),
        completion_cost_per_1k=Decimal("0.01")
    ),
    "gpt-4-turbo": ModelPricing(
        prompt_cost_per_1k=Decimal("0.01"),
        completion_cost_per_1k=Decimal("0.03")
    ),
    "gpt-3.5-turbo": ModelPricing(
        prompt_cost_per_1k=Decimal("0.0005"),
        completion_cost_per_1k=Decimal("0.0015")
    )
})


def calculate_cost(model: str, usage: TokenUsage) -> float:
    """Calculate the cost of one call with conservative rounding.

    Args:
        model: Model identifier
        usage: Token usage data

    Returns:
        Total cost in USD rounded UP to 5 decimal places

    Raises:
        ValueError: If model is not supported
    """
    pricing = PRICING_TABLE.get_pricing(model)

    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k

    # Always round UP so the breaker never under-counts
    total_cost = prompt_cost + completion_cost
    return float(total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP))
