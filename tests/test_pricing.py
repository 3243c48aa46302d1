"""
Unit tests for pricing calculations.

Tests cost accuracy, rounding behavior, pre-flight estimates and error handling.
"""

import pytest
from decimal import Decimal

from ai_orchestrator.core.pricing import (
    MAX_ESTIMATED_OUTPUT_TOKENS,
    PRICING_TABLE,
    ModelPricing,
    PricingTable,
    calculate_cost,
    estimate_request_cost,
)
from ai_orchestrator.core.token_counter import TokenUsage, estimate_tokens


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        usage = TokenUsage(prompt_tokens=100, completion_tokens=50)
        assert usage.total_tokens == 150

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValueError):
            TokenUsage(prompt_tokens=-1, completion_tokens=0)


class TestEstimateTokens:
    def test_empty(self):
        assert estimate_tokens("") == 0

    def test_rounds_up(self):
        assert estimate_tokens("abcde") == 2
        assert estimate_tokens("abcd") == 1


class TestPricingTable:
    """Test pricing table functionality."""

    def test_get_supported_model(self):
        pricing = PRICING_TABLE.get_pricing("gpt-4o")
        assert pricing.prompt_cost_per_1k == Decimal("0.00250")
        assert pricing.completion_cost_per_1k == Decimal("0.01000")

    def test_unsupported_model_raises_error(self):
        with pytest.raises(ValueError, match="Unsupported model: unknown-model"):
            PRICING_TABLE.get_pricing("unknown-model")

    def test_every_agent_model_is_priced(self):
        from ai_orchestrator.core.agents import AGENT_PROFILES

        for profile in AGENT_PROFILES.values():
            assert PRICING_TABLE.supports(profile.model)


class TestCostCalculation:
    def test_gpt_4o_cost(self):
        cost = calculate_cost("gpt-4o", TokenUsage(prompt_tokens=1000, completion_tokens=500))
        # 1000/1000 * 0.0025 + 500/1000 * 0.01
        assert cost == Decimal("0.007500")

    def test_rounding_half_up_to_six_places(self):
        table = PricingTable({"m": ModelPricing(Decimal("0.0015"), Decimal("0"))})
        # 1/1000 * 0.0015 = 0.0000015
        assert calculate_cost("m", TokenUsage(1, 0), table) == Decimal("0.000002")

    def test_zero_usage_is_free(self):
        assert calculate_cost("gpt-4o-mini", TokenUsage(0, 0)) == Decimal("0")

    def test_unknown_model(self):
        with pytest.raises(ValueError, match="Unsupported model"):
            calculate_cost("gpt-9", TokenUsage(1, 1))


class TestRequestEstimate:
    def test_output_is_twice_input(self):
        text = "x" * 400  # 100 tokens
        expected = calculate_cost("gpt-4o", TokenUsage(100, 200))
        assert estimate_request_cost("gpt-4o", text) == expected

    def test_output_is_capped(self):
        text = "x" * 40000  # 10,000 tokens
        expected = calculate_cost("gpt-4o", TokenUsage(10000, MAX_ESTIMATED_OUTPUT_TOKENS))
        assert estimate_request_cost("gpt-4o", text) == expected
