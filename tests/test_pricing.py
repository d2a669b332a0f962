"""
Unit tests for pricing calculations.

Tests cost accuracy, rounding behavior, and error handling.
"""

from decimal import Decimal

import pytest

from tts_cost_guard.core.pricing import PRICING_TABLE, estimate_cost


class TestPricingTable:
    """Test pricing table functionality."""

    def test_supported_providers(self):
        assert PRICING_TABLE.get_pricing("elevenlabs").cost_per_character == Decimal("0.00003")
        assert PRICING_TABLE.get_pricing("openai").cost_per_character == Decimal("0.000015")

    def test_unsupported_provider(self):
        with pytest.raises(ValueError, match="Unsupported provider: polly"):
            PRICING_TABLE.get_pricing("polly")


class TestEstimateCost:
    """Test cost estimates."""

    def test_elevenlabs_cost(self):
        assert estimate_cost("elevenlabs", 1000) == 0.03

    def test_openai_cost(self):
        assert estimate_cost("openai", 1000) == 0.015

    def test_single_characters(self):
        assert estimate_cost("openai", 1) == 0.000015
        assert estimate_cost("elevenlabs", 7) == 0.00021

    def test_cached_is_free(self):
        assert estimate_cost("elevenlabs", 5000, cached=True) == 0.0

    def test_zero_characters(self):
        assert estimate_cost("openai", 0) == 0.0

    def test_negative_characters(self):
        with pytest.raises(ValueError, match="negative"):
            estimate_cost("openai", -1)

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unsupported provider"):
            estimate_cost("disabled", 10)
