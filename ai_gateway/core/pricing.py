"""
Pricing calculations and rate management.

Handles cost computations for various AI models and services.
"""

import logging
from dataclasses import dataclass
from typing import Dict
from decimal import Decimal, ROUND_UP

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1k: Decimal  # Cost per 1K prompt tokens
    completion_cost_per_1k: Decimal  # Cost per 1K completion tokens


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]
    default_model: str

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

    def resolve_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a model, falling back to the default model's rates.

        Unknown models are logged rather than rejected so that metering
        never blocks a proxied request.
        """
        if model in self.prices:
            return self.prices[model]
        logger.warning(
            "No pricing for model '%s', using '%s' rates", model, self.default_model
        )
        return self.prices[self.default_model]


# Fixed pricing table - no dynamic fetching
PRICING_TABLE = PricingTable(
    prices={
        "gemini-2.5-flash": ModelPricing(
            prompt_cost_per_1k=Decimal("0.15"),
            completion_cost_per_1k=Decimal("0.60")
        ),
        "gemini-2.5-pro": ModelPricing(
            prompt_cost_per_1k=Decimal("0.50"),
            completion_cost_per_1k=Decimal("1.50")
        ),
        "gemini-flash-latest": ModelPricing(
            prompt_cost_per_1k=Decimal("0.15"),
            completion_cost_per_1k=Decimal("0.60")
        ),
        "gemini-pro-latest": ModelPricing(
            prompt_cost_per_1k=Decimal("0.50"),
            completion_cost_per_1k=Decimal("1.50")
        ),
        "gpt-4o-mini": ModelPricing(
            prompt_cost_per_1k=Decimal("0.15"),
            completion_cost_per_1k=Decimal("0.60")
        ),
        "gpt-4o": ModelPricing(
            prompt_cost_per_1k=Decimal("5.00"),
            completion_cost_per_1k=Decimal("15.00")
        ),
        "gpt-4": ModelPricing(
            prompt_cost_per_1k=Decimal("30.00"),
            completion_cost_per_1k=Decimal("60.00")
        ),
        "gpt-3.5-turbo": ModelPricing(
            prompt_cost_per_1k=Decimal("1.50"),
            completion_cost_per_1k=Decimal("2.00")
        ),
        "claude-3-opus": ModelPricing(
            prompt_cost_per_1k=Decimal("15.00"),
            completion_cost_per_1k=Decimal("75.00")
        ),
        # Local models carry no cost
        "ollama-llama3": ModelPricing(
            prompt_cost_per_1k=Decimal("0.00"),
            completion_cost_per_1k=Decimal("0.00")
        ),
        "local-model": ModelPricing(
            prompt_cost_per_1k=Decimal("0.00"),
            completion_cost_per_1k=Decimal("0.00")
        ),
    },
    default_model="gemini-2.5-flash",
)


def calculate_cost(model: str, usage: TokenUsage, table: PricingTable = PRICING_TABLE) -> float:
    """Calculate total USD cost for model usage with conservative rounding.

    Args:
        model: Model identifier (unknown models use the default rates)
        usage: Token usage data
        table: Pricing table to consult

    Returns:
        Total cost rounded UP to 6 decimal places
    """
    pricing = table.resolve_pricing(model)

    # Calculate prompt cost: (tokens / 1000) * cost_per_1k
    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k

    # Calculate completion cost: (tokens / 1000) * cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k

    # Total cost with conservative rounding (always round UP)
    total_cost = prompt_cost + completion_cost
    rounded_cost = total_cost.quantize(Decimal("0.000001"), rounding=ROUND_UP)

    return float(rounded_cost)
