"""
Pricing calculations for speech synthesis.

Costs are estimated from the number of characters sent to the provider.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict


@dataclass(frozen=True)
class ProviderPricing:
    """Per-character pricing for one provider."""
    cost_per_character: Decimal


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported providers."""
    prices: Dict[str, ProviderPricing]

    def get_pricing(self, provider: str) -> ProviderPricing:
        """Get pricing for a specific provider.

        Raises:
            ValueError: If provider is not supported
        """
        if provider not in self.prices:
            raise ValueError(f"Unsupported provider: {provider}")
        return self.prices[provider]


PRICING_TABLE = PricingTable({
    "elevenlabs": ProviderPricing(cost_per_character=Decimal("0.00003")),
    "openai": ProviderPricing(cost_per_character=Decimal("0.000015")),
})


def estimate_cost(provider: str, characters: int, cached: bool = False) -> float:
    """Estimate the cost of synthesizing ``characters`` characters.

    Args:
        provider: Provider identifier
        characters: Length of the text sent to the provider
        cached: Served from cache, so nothing was billed

    Returns:
        Cost in USD rounded UP to 6 decimal places

    Raises:
        ValueError: If provider is not supported or characters is negative
    """
    pricing = PRICING_TABLE.get_pricing(provider)
    if characters < 0:
        raise ValueError("characters cannot be negative")
    if cached:
        return 0.0

    cost = Decimal(characters) * pricing.cost_per_character
    return float(cost.quantize(Decimal("0.000001"), rounding=ROUND_UP))
