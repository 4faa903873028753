"""
Pricing calculations and rate management.

Handles cost computations for the supported model families.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict

from .token_counter import TokenUsage
from ai_session_meter.data.models import normalise_model_name

ONE_MILLION = Decimal("1000000")
DEFAULT_PRICING_MODEL = "claude-sonnet-4"


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model (USD per 1M tokens)."""
    input_cost_per_1m: Decimal
    output_cost_per_1m: Decimal
    cache_creation_cost_per_1m: Decimal
    cache_read_cost_per_1m: Decimal


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a model, falling back to Sonnet pricing.

        Args:
            model: Raw or normalised model identifier

        Returns:
            ModelPricing for the model family
        """
        normalised = normalise_model_name(model)
        return self.prices.get(normalised, self.prices[DEFAULT_PRICING_MODEL])


def _pricing(input_cost: str, output_cost: str, cache_creation: str, cache_read: str) -> ModelPricing:
    return ModelPricing(
        input_cost_per_1m=Decimal(input_cost),
        output_cost_per_1m=Decimal(output_cost),
        cache_creation_cost_per_1m=Decimal(cache_creation),
        cache_read_cost_per_1m=Decimal(cache_read),
    )


# Fixed pricing table - no dynamic fetching
PRICING_TABLE = PricingTable({
    "claude-opus-4-6": _pricing("5.00", "25.00", "6.25", "0.50"),
    "claude-opus-4-5": _pricing("5.00", "25.00", "6.25", "0.50"),
    "claude-opus-4-1": _pricing("15.00", "75.00", "18.75", "1.50"),
    "claude-opus-4": _pricing("15.00", "75.00", "18.75", "1.50"),
    "claude-3-opus": _pricing("15.00", "75.00", "18.75", "1.50"),
    "claude-sonnet-4-6": _pricing("3.00", "15.00", "3.75", "0.30"),
    "claude-sonnet-4-5": _pricing("3.00", "15.00", "3.75", "0.30"),
    "claude-sonnet-4": _pricing("3.00", "15.00", "3.75", "0.30"),
    "claude-3-5-sonnet": _pricing("3.00", "15.00", "3.75", "0.30"),
    "claude-3-sonnet": _pricing("3.00", "15.00", "3.75", "0.30"),
    "claude-haiku-4-5": _pricing("1.00", "5.00", "1.25", "0.10"),
    "claude-3-5-haiku": _pricing("0.80", "4.00", "1.00", "0.08"),
    "claude-3-haiku": _pricing("0.25", "1.25", "0.30", "0.03"),
})


def calculate_cost(model: str, usage: TokenUsage) -> float:
    """Calculate total cost for model usage.

    Args:
        model: Model identifier
        usage: Token usage data

    Returns:
        Total cost in USD
    """
    pricing = PRICING_TABLE.get_pricing(model)

    cost = (
        Decimal(usage.input_tokens) * pricing.input_cost_per_1m
        + Decimal(usage.output_tokens) * pricing.output_cost_per_1m
        + Decimal(usage.cache_creation_tokens) * pricing.cache_creation_cost_per_1m
        + Decimal(usage.cache_read_tokens) * pricing.cache_read_cost_per_1m
    ) / ONE_MILLION

    return float(cost)
