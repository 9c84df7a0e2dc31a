"""
Pricing catalog for metered models.

Maps (provider, model) pairs to the coefficients used to turn units
into credits. Read-only at request time.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Tuple

from .errors import UnknownModel


@dataclass(frozen=True)
class ModelPricing:
    """Pricing coefficients for a specific provider/model."""
    provider: str
    model: str
    credits_per_1k_units: Decimal  # Credits charged per 1K weighted units
    input_unit_cost: Decimal  # Provider list price per 1M input units
    output_unit_cost: Decimal  # Provider list price per 1M output units
    active: bool = True

    def __post_init__(self):
        """Validate coefficients are non-negative."""
        if self.credits_per_1k_units < 0:
            raise ValueError("credits_per_1k_units cannot be negative")
        if self.input_unit_cost < 0:
            raise ValueError("input_unit_cost cannot be negative")
        if self.output_unit_cost < 0:
            raise ValueError("output_unit_cost cannot be negative")

    @property
    def is_free(self) -> bool:
        """Free-tier operations skip credit checks entirely."""
        return self.credits_per_1k_units == 0


class PricingCatalog:
    """Lookup table of model pricing keyed by provider and model."""

    def __init__(self, entries: Iterable[ModelPricing]):
        self._entries: Dict[Tuple[str, str], ModelPricing] = {}
        for entry in entries:
            key = (entry.provider, entry.model)
            if key in self._entries:
                raise ValueError(f"Duplicate pricing entry: {entry.provider}/{entry.model}")
            self._entries[key] = entry

    def lookup(self, provider: str, model: str) -> ModelPricing:
        """Get pricing for a provider/model pair.

        Args:
            provider: Provider identifier
            model: Model identifier

        Returns:
            ModelPricing for the pair

        Raises:
            UnknownModel: If no active entry exists
        """
        entry = self._entries.get((provider, model))
        if entry is None or not entry.active:
            raise UnknownModel(provider, model)
        return entry

    def entries(self, include_inactive: bool = False) -> List[ModelPricing]:
        """All entries sorted by provider then model."""
        return sorted(
            (e for e in self._entries.values() if include_inactive or e.active),
            key=lambda e: (e.provider, e.model)
        )


# Default catalog seeded with the models the service launched with
DEFAULT_CATALOG = PricingCatalog([
    ModelPricing("claude", "claude-3-sonnet", Decimal("0.100"), Decimal("3.00"), Decimal("15.00")),
    ModelPricing("claude", "claude-3-opus", Decimal("0.500"), Decimal("15.00"), Decimal("75.00")),
    ModelPricing("claude", "claude-3-haiku", Decimal("0.050"), Decimal("0.25"), Decimal("1.25")),
    ModelPricing("perplexity", "sonar-pro", Decimal("0.050"), Decimal("1.00"), Decimal("3.00")),
    ModelPricing("perplexity", "sonar-small", Decimal("0.025"), Decimal("0.20"), Decimal("0.60")),
    ModelPricing("openai", "gpt-4-turbo", Decimal("0.300"), Decimal("10.00"), Decimal("30.00")),
    ModelPricing("openai", "gpt-3.5-turbo", Decimal("0.050"), Decimal("0.50"), Decimal("1.50")),
])
