"""
Pricing calculations and rate management.

Maps (provider, model) to per-1K-unit input/output rates. Providers form a
closed enumeration and each one must carry a ``default`` entry, so a typo in
a model name falls back to a known rate while a typo in a provider name is
rejected when the table is built.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Mapping, Union

from usage_guard.errors import UnknownProviderError

DEFAULT_MODEL_KEY = "default"

_THOUSAND = Decimal("1000")


class Provider(Enum):
    """Supported upstream providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OPENROUTER = "openrouter"

    @classmethod
    def parse(cls, value: Union["Provider", str]) -> "Provider":
        """Coerce a provider name into the enumeration.

        Raises:
            UnknownProviderError: If the name is not a supported provider
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = [p.value for p in cls]
            raise UnknownProviderError(
                f"Unsupported provider: {value!r} (expected one of {valid})"
            )


@dataclass(frozen=True)
class ModelPricing:
    """Per-1K-unit pricing for a specific model."""
    input_cost_per_1k: Decimal
    output_cost_per_1k: Decimal

    def __post_init__(self):
        if self.input_cost_per_1k < 0:
            raise ValueError("input_cost_per_1k cannot be negative")
        if self.output_cost_per_1k < 0:
            raise ValueError("output_cost_per_1k cannot be negative")


@dataclass(frozen=True)
class PricingTable:
    """Two-level price list: provider -> model -> rates."""
    prices: Mapping[Provider, Mapping[str, ModelPricing]]

    def __post_init__(self):
        """Every provider must be priced and must carry a default entry."""
        for provider in Provider:
            models = self.prices.get(provider)
            if not models:
                raise ValueError(f"Pricing missing for provider '{provider.value}'")
            if DEFAULT_MODEL_KEY not in models:
                raise ValueError(
                    f"Pricing for provider '{provider.value}' must define a "
                    f"'{DEFAULT_MODEL_KEY}' entry"
                )

    def get_pricing(self, provider: Union[Provider, str], model: str) -> ModelPricing:
        """Get pricing for a model, falling back to the provider default.

        Args:
            provider: Provider enum member or its name
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            UnknownProviderError: If provider is not supported
        """
        models = self.prices[Provider.parse(provider)]
        return models.get(model, models[DEFAULT_MODEL_KEY])

    def cost(
        self,
        provider: Union[Provider, str],
        model: str,
        input_units: int,
        output_units: int,
    ) -> Decimal:
        """Calculate the cost of a request.

        No rounding is applied; use format_cost() for display.

        Raises:
            UnknownProviderError: If provider is not supported
            ValueError: If a unit count is negative
        """
        if input_units < 0 or output_units < 0:
            raise ValueError("unit counts cannot be negative")

        pricing = self.get_pricing(provider, model)
        if input_units == 0 and output_units == 0:
            return Decimal("0")

        input_cost = (Decimal(input_units) / _THOUSAND) * pricing.input_cost_per_1k
        output_cost = (Decimal(output_units) / _THOUSAND) * pricing.output_cost_per_1k
        return input_cost + output_cost

    def with_overrides(
        self, overrides: Mapping[Provider, Mapping[str, ModelPricing]]
    ) -> "PricingTable":
        """Return a new table with per-model overrides merged in."""
        merged: Dict[Provider, Dict[str, ModelPricing]] = {
            provider: dict(models) for provider, models in self.prices.items()
        }
        for provider, models in overrides.items():
            merged.setdefault(provider, {}).update(models)
        return PricingTable(merged)


def _rates(input_rate: str, output_rate: str) -> ModelPricing:
    return ModelPricing(
        input_cost_per_1k=Decimal(input_rate),
        output_cost_per_1k=Decimal(output_rate),
    )


# Reference price list (USD per 1K units)
DEFAULT_PRICING_TABLE = PricingTable({
    Provider.OPENAI: {
        "gpt-5": _rates("0.04", "0.08"),
        "gpt-5-high": _rates("0.05", "0.10"),
        "gpt-4": _rates("0.03", "0.06"),
        "gpt-4-32k": _rates("0.06", "0.12"),
        "gpt-4-turbo": _rates("0.01", "0.03"),
        "gpt-4-turbo-preview": _rates("0.01", "0.03"),
        "gpt-4-vision-preview": _rates("0.01", "0.03"),
        "gpt-4o": _rates("0.005", "0.015"),
        "o1": _rates("0.015", "0.03"),
        "o3": _rates("0.02", "0.04"),
        "o4-mini": _rates("0.0015", "0.002"),
        "gpt-3.5-turbo": _rates("0.0005", "0.0015"),
        "gpt-3.5-turbo-16k": _rates("0.001", "0.002"),
        DEFAULT_MODEL_KEY: _rates("0.01", "0.03"),
    },
    Provider.ANTHROPIC: {
        "claude-opus-4-1-20250805": _rates("0.020", "0.080"),
        "claude-opus-4-20250514": _rates("0.018", "0.075"),
        "claude-sonnet-4-20250514": _rates("0.008", "0.025"),
        "claude-3-7-sonnet-latest": _rates("0.005", "0.020"),
        "claude-3-opus-20240229": _rates("0.015", "0.075"),
        "claude-3-sonnet-20240229": _rates("0.003", "0.015"),
        "claude-3-haiku-20240307": _rates("0.00025", "0.00125"),
        "claude-2.1": _rates("0.008", "0.024"),
        "claude-2.0": _rates("0.008", "0.024"),
        "claude-instant-1.2": _rates("0.0008", "0.0024"),
        DEFAULT_MODEL_KEY: _rates("0.008", "0.024"),
    },
    Provider.OPENROUTER: {
        # Routed models are priced dynamically upstream; track an average
        DEFAULT_MODEL_KEY: _rates("0.005", "0.015"),
    },
})


def calculate_cost(
    provider: Union[Provider, str],
    model: str,
    input_units: int,
    output_units: int,
) -> Decimal:
    """Calculate cost against the reference price list."""
    return DEFAULT_PRICING_TABLE.cost(provider, model, input_units, output_units)


def format_cost(amount: Decimal, places: int = 6) -> str:
    """Round a cost for display only. Stored costs are never rounded."""
    quantum = Decimal(1).scaleb(-places)
    return str(amount.quantize(quantum, rounding=ROUND_HALF_UP))
