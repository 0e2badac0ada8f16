"""
Pricing calculations for the spend summary.

Converts token usage into an estimated USD amount for supported models.
"""

from dataclasses import dataclass
from typing import Dict
from decimal import Decimal, ROUND_UP

from .token_counter import TokenUsage


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1m: Decimal  # Cost per 1M prompt tokens
    completion_cost_per_1m: Decimal  # Cost per 1M completion tokens


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


# Fixed pricing table - no dynamic fetching, no defaults
PRICING_TABLE = PricingTable({
    "gemini-2.0-flash-exp": ModelPricing(
        prompt_cost_per_1m=Decimal("0"),
        completion_cost_per_1m=Decimal("0")
    ),
    "gemini-1.5-flash": ModelPricing(
        prompt_cost_per_1m=Decimal("0.075"),
        completion_cost_per_1m=Decimal("0.30")
    ),
    "gemini-1.5-pro": ModelPricing(
        prompt_cost_per_1m=Decimal("3.50"),
        completion_cost_per_1m=Decimal("10.50")
    ),
    "claude-sonnet-4-5": ModelPricing(
        prompt_cost_per_1m=Decimal("3.00"),
        completion_cost_per_1m=Decimal("15.00")
    ),
})


def calculate_cost(model: str, usage: TokenUsage) -> float:
    """Calculate total cost for model usage with conservative rounding.

    Args:
        model: Model identifier
        usage: Token usage data

    Returns:
        Total cost in USD rounded UP to 6 decimal places

    Raises:
        ValueError: If model is not supported
    """
    pricing = PRICING_TABLE.get_pricing(model)

    million = Decimal("1000000")
    prompt_cost = (Decimal(usage.prompt_tokens) / million) * pricing.prompt_cost_per_1m
    completion_cost = (Decimal(usage.completion_tokens) / million) * pricing.completion_cost_per_1m

    total_cost = prompt_cost + completion_cost
    rounded_cost = total_cost.quantize(Decimal("0.000001"), rounding=ROUND_UP)

    return float(rounded_cost)
