"""
Environmental impact calculation.

Turns token usage into cost, the donated share of that cost and the
fractional trees the donation funds. Pure functions only.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR

from .errors import ValidationError
from .pricing import calculate_cost, quantize_money
from .token_counter import TokenUsage
from impact_ledger.storage.models import TREES_DECIMALS

DONATION_RATE = Decimal("0.4")  # 40% of cost goes to charity
TREES_PER_CURRENCY_UNIT = Decimal("2.5")  # 1 currency unit funds 2.5 trees
RATES_VERSION = "2024-01"

TREES_QUANTUM = Decimal(1).scaleb(-TREES_DECIMALS)


@dataclass(frozen=True)
class ImpactRates:
    """Conversion factors from cost to donation and trees."""
    donation_rate: Decimal = DONATION_RATE
    trees_per_currency_unit: Decimal = TREES_PER_CURRENCY_UNIT
    version: str = RATES_VERSION

    def __post_init__(self):
        """Validate rates are usable fractions and factors."""
        if not Decimal("0") <= self.donation_rate <= Decimal("1"):
            raise ValidationError("donation_rate must be between 0 and 1")
        if self.trees_per_currency_unit < 0:
            raise ValidationError("trees_per_currency_unit cannot be negative")
        if not self.version:
            raise ValidationError("rates version is required")


DEFAULT_RATES = ImpactRates()


@dataclass(frozen=True)
class ImpactCalculation:
    """Financial and environmental impact of one interaction."""
    input_cost: Decimal
    output_cost: Decimal
    total_cost: Decimal
    donation: Decimal
    trees: Decimal


@dataclass(frozen=True)
class TreeProgress:
    """Progress of a running total towards the next whole tree."""
    whole_trees: int
    progress: Decimal
    next_tree_at: int


def quantize_trees(trees: Decimal) -> Decimal:
    """Round a tree count to the ledger's fixed precision."""
    return trees.quantize(TREES_QUANTUM, rounding=ROUND_HALF_UP)


def calculate_impact(
    input_tokens: int,
    output_tokens: int,
    model: str,
    rates: ImpactRates = DEFAULT_RATES
) -> ImpactCalculation:
    """Calculate cost, donation and trees for a model interaction.

    Each figure is derived from the already rounded figure before it, so
    a recorded event can be re-derived from its own stored columns.

    Args:
        input_tokens: Prompt tokens counted by the model tokenizer
        output_tokens: Completion tokens counted by the model tokenizer
        model: Model identifier from the pricing table
        rates: Donation and tree conversion rates

    Returns:
        ImpactCalculation with money at 8 and trees at 6 decimal places

    Raises:
        ValidationError: If token counts are negative or model is unsupported
    """
    usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
    cost = calculate_cost(model, usage)

    total_cost = cost.total_cost
    donation = quantize_money(total_cost * rates.donation_rate)
    trees = quantize_trees(donation * rates.trees_per_currency_unit)

    return ImpactCalculation(
        input_cost=cost.input_cost,
        output_cost=cost.output_cost,
        total_cost=total_cost,
        donation=donation,
        trees=trees
    )


def get_tree_progress(total_trees: Decimal) -> TreeProgress:
    """Split a running total into whole trees and progress to the next."""
    total_trees = Decimal(total_trees)
    whole = int(total_trees.to_integral_value(rounding=ROUND_FLOOR))
    return TreeProgress(
        whole_trees=whole,
        progress=total_trees - whole,
        next_tree_at=whole + 1
    )
