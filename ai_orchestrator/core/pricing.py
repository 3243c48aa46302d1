"""
Pricing calculations and rate management.

Handles cost computations for the models the providers are configured with.
The table is static and must be kept in step with provider pricing by hand.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

from .token_counter import TokenUsage, estimate_tokens

COST_QUANTUM = Decimal("0.000001")

# Upper bound used for pre-flight output estimates
MAX_ESTIMATED_OUTPUT_TOKENS = 4096


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1k: Decimal  # Cost per 1K prompt tokens
    completion_cost_per_1k: Decimal  # Cost per 1K completion tokens


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
            ValueError: If model is not supported
        """
        if model not in self.prices:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[model]

    def supports(self, model: str) -> bool:
        return model in self.prices


PRICING_TABLE = PricingTable({
    "gpt-4o": ModelPricing(
        prompt_cost_per_1k=Decimal("0.00250"),
        completion_cost_per_1k=Decimal("0.01000")
    ),
    "gpt-4o-mini": ModelPricing(
        prompt_cost_per_1k=Decimal("0.00015"),
        completion_cost_per_1k=Decimal("0.00060")
    ),
    "claude-3-5-sonnet-20241022": ModelPricing(
        prompt_cost_per_1k=Decimal("0.00300"),
        completion_cost_per_1k=Decimal("0.01500")
    ),
    "llama-3.1-sonar-large-128k-online": ModelPricing(
        prompt_cost_per_1k=Decimal("0.00100"),
        completion_cost_per_1k=Decimal("0.00100")
    ),
})


def calculate_cost(model: str, usage: TokenUsage, table: Optional[PricingTable] = None) -> Decimal:
    """Calculate total cost for model usage.

    Args:
        model: Model identifier
        usage: Token usage data
        table: Pricing table to use (defaults to PRICING_TABLE)

    Returns:
        Total cost in dollars, rounded half-up to 6 decimal places

    Raises:
        ValueError: If model is not supported
    """
    pricing = (table or PRICING_TABLE).get_pricing(model)

    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k

    total_cost = prompt_cost + completion_cost
    return total_cost.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


def estimate_request_cost(model: str, prompt_text: str, table: Optional[PricingTable] = None) -> Decimal:
    """Estimate the cost of a request before sending it.

    Output is assumed to be twice the input, capped at
    MAX_ESTIMATED_OUTPUT_TOKENS.
    """
    prompt_tokens = estimate_tokens(prompt_text)
    completion_tokens = min(prompt_tokens * 2, MAX_ESTIMATED_OUTPUT_TOKENS)
    return calculate_cost(model, TokenUsage(prompt_tokens, completion_tokens), table)
