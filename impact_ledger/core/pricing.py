"""
Pricing calculations and rate management.

Handles cost computations for the supported chat models.
"""

from dataclasses import dataclass
from typing import Dict, Tuple
from decimal import Decimal, ROUND_HALF_UP

from .errors import ValidationError
from .token_counter import TokenUsage
from impact_ledger.storage.models import MONEY_DECIMALS

# Money is carried to 1e-8 so a single token of the cheapest model stays visible
MONEY_QUANTUM = Decimal(1).scaleb(-MONEY_DECIMALS)


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_cost_per_1k: Decimal  # Cost per 1K input tokens
    output_cost_per_1k: Decimal  # Cost per 1K output tokens
    context_window: int


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
            ValidationError: If model is not supported
        """
        if model not in self.prices:
            raise ValidationError(f"Unsupported model: {model}")
        return self.prices[model]

    @property
    def models(self) -> Tuple[str, ...]:
        """Supported model identifiers, in table order."""
        return tuple(self.prices)


# Fixed pricing table - no dynamic fetching, no defaults
PRICING_TABLE = PricingTable({
    "gpt-4o-mini": ModelPricing(
        input_cost_per_1k=Decimal("0.00015"),
        output_cost_per_1k=Decimal("0.0006"),
        context_window=128000
    ),
    "gpt-4o": ModelPricing(
        input_cost_per_1k=Decimal("0.0025"),
        output_cost_per_1k=Decimal("0.01"),
        context_window=128000
    ),
    "gpt-4": ModelPricing(
        input_cost_per_1k=Decimal("0.03"),
        output_cost_per_1k=Decimal("0.06"),
        context_window=8192
    )
})

DEFAULT_MODEL = "gpt-4o-mini"


@dataclass(frozen=True)
class CostBreakdown:
    """Monetary cost of one interaction, split by direction."""
    input_cost: Decimal
    output_cost: Decimal

    @property
    def total_cost(self) -> Decimal:
        return self.input_cost + self.output_cost


def quantize_money(amount: Decimal) -> Decimal:
    """Round a monetary amount to the ledger's fixed precision."""
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def calculate_cost(model: str, usage: TokenUsage) -> CostBreakdown:
    """Calculate the input and output cost of a model interaction.

    Args:
        model: Model identifier
        usage: Token usage data

    Returns:
        CostBreakdown with each side rounded to 8 decimal places

    Raises:
        ValidationError: If model is not supported
    """
    pricing = PRICING_TABLE.get_pricing(model)

    # Input cost: (tokens / 1000) * cost_per_1k
    input_cost = (Decimal(usage.input_tokens) / Decimal("1000")) * pricing.input_cost_per_1k

    # Output cost: (tokens / 1000) * cost_per_1k
    output_cost = (Decimal(usage.output_tokens) / Decimal("1000")) * pricing.output_cost_per_1k

    return CostBreakdown(
        input_cost=quantize_money(input_cost),
        output_cost=quantize_money(output_cost)
    )
