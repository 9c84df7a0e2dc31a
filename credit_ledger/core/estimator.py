"""
Cost estimation for metered requests.

Converts unit counts into credits using a catalog entry. Output units are
usually priced higher than input units, so units are weighted by each
side's share of the provider's list price before applying the credit rate.
"""

import math
from decimal import Decimal
from fractions import Fraction

from .pricing import ModelPricing
from .units import UnitUsage

# Smallest chargeable amount; every estimate rounds UP to a multiple of it
CREDIT_INCREMENT = Decimal("0.01")


def weighted_units(usage: UnitUsage, pricing: ModelPricing) -> Fraction:
    """Weight prompt and completion units by their share of list price.

    Computed with exact rational arithmetic so the same input always
    lands on the same side of a rounding boundary.
    """
    input_cost = Fraction(pricing.input_unit_cost)
    output_cost = Fraction(pricing.output_unit_cost)
    total_cost = input_cost + output_cost

    if total_cost == 0:
        # No list prices recorded: weight both sides evenly
        input_ratio = Fraction(1, 2)
    else:
        input_ratio = input_cost / total_cost
    output_ratio = 1 - input_ratio

    return usage.prompt_units * input_ratio + usage.completion_units * output_ratio


def estimate_credits(usage: UnitUsage, pricing: ModelPricing) -> Decimal:
    """Calculate credits for a unit usage with conservative rounding.

    Pure function: safe for both a pre-flight estimate with predicted
    units and a settlement with actual units.

    Args:
        usage: Unit usage data
        pricing: Catalog entry for the provider/model

    Returns:
        Credits rounded UP to CREDIT_INCREMENT
    """
    raw = weighted_units(usage, pricing) / 1000 * Fraction(pricing.credits_per_1k_units)
    steps = math.ceil(raw / Fraction(CREDIT_INCREMENT))
    return (Decimal(steps) * CREDIT_INCREMENT).quantize(CREDIT_INCREMENT)
