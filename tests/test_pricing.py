"""
Unit tests for pricing calculations.

Tests the model catalog, cost accuracy and rounding behavior.
"""

import pytest
from decimal import Decimal

from kroniq_guard.core.pricing import (
    PRICING_TABLE,
    ModelTier,
    TokenUsage,
    calculate_cost,
    is_model_free,
)


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        """Verify total_tokens is computed correctly."""
        usage = TokenUsage(prompt_tokens=100, completion_tokens=50)
        assert usage.total_tokens == 150


class TestPricingTable:
    """Test pricing table functionality."""

    def test_get_supported_model(self):
        """Verify pricing retrieval for supported models."""
        pricing = PRICING_TABLE.get_pricing("anthropic/claude-3-opus")
        assert pricing.tier is ModelTier.ULTRA_PREMIUM
        assert pricing.prompt_cost_per_1k == Decimal("0.015")
        assert pricing.completion_cost_per_1k == Decimal("0.075")

    def test_unsupported_model_raises_error(self):
        """Verify error for unknown models."""
        with pytest.raises(ValueError, match="Unsupported model: unknown-model"):
            PRICING_TABLE.get_pricing("unknown-model")

    def test_free_models(self):
        """Verify the free tier list."""
        free = PRICING_TABLE.free_models()
        assert "x-ai/grok-4-fast" in free
        assert "anthropic/claude-3-haiku" in free
        assert "openai/chatgpt-4o-latest" not in free

    def test_is_model_free(self):
        assert is_model_free("deepseek/deepseek-chat:free")
        assert not is_model_free("perplexity/sonar-pro")

    def test_unknown_model_is_not_free(self):
        """Verify models missing from the catalog are treated as paid."""
        assert not is_model_free("someone/new-model")

    def test_cost_per_message(self):
        pricing = PRICING_TABLE.get_pricing("openai/chatgpt-4o-latest")
        assert pricing.cost_per_message == Decimal("0.0125")


class TestCostCalculation:
    """Test cost calculation accuracy and rounding."""

    def test_exact_cost(self):
        """Verify exact cost calculation."""
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=500)
        cost = calculate_cost("openai/chatgpt-4o-latest", usage)
        # Prompt: 1000/1000 * $0.005 = $0.005
        # Completion: 500/1000 * $0.015 = $0.0075
        assert cost == 0.0125

    def test_free_model_costs_nothing(self):
        usage = TokenUsage(prompt_tokens=5000, completion_tokens=5000)
        assert calculate_cost("deepseek/deepseek-chat:free", usage) == 0.0

    def test_rounding_up(self):
        """Verify sub-micro-dollar costs round up, never down."""
        usage = TokenUsage(prompt_tokens=1, completion_tokens=0)
        # 1/1000 * $0.00025 = $0.00000025 -> $0.000001
        assert calculate_cost("anthropic/claude-3-haiku", usage) == 0.000001

    def test_unsupported_model(self):
        with pytest.raises(ValueError, match="Unsupported model"):
            calculate_cost("gpt-99", TokenUsage(prompt_tokens=1, completion_tokens=1))
