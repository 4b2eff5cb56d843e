"""
Pricing calculations and the chat model catalog.

Holds per-model provider rates and the access tier each model sits in.
Provider costs are computed here; converting them to platform tokens is
the ledger's job.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from enum import Enum
from typing import Dict, List


class ModelTier(Enum):
    """Access tier of a model. Only FREE models are open to free plans."""
    FREE = "FREE"
    BUDGET = "BUDGET"
    MID = "MID"
    PREMIUM = "PREMIUM"
    ULTRA_PREMIUM = "ULTRA_PREMIUM"


@dataclass(frozen=True)
class TokenUsage:
    """Provider token counts for one completion."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class ModelPricing:
    """Catalog entry for a chat model."""
    name: str
    provider: str
    tier: ModelTier
    prompt_cost_per_1k: Decimal  # USD per 1K prompt tokens
    completion_cost_per_1k: Decimal  # USD per 1K completion tokens

    @property
    def is_free(self) -> bool:
        return self.tier == ModelTier.FREE

    @property
    def cost_per_message(self) -> Decimal:
        """Provider cost of a typical turn (1K prompt + 500 completion tokens)."""
        return self.prompt_cost_per_1k + self.completion_cost_per_1k / 2


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

    def free_models(self) -> List[str]:
        return [model for model, pricing in self.prices.items() if pricing.is_free]


# Fixed pricing table - no dynamic fetching, no defaults
PRICING_TABLE = PricingTable({
    # Free tier: open to every plan
    "x-ai/grok-4-fast": ModelPricing(
        "Grok 4 Fast", "xAI", ModelTier.FREE,
        Decimal("0.0002"), Decimal("0.0005"),
    ),
    "deepseek/deepseek-chat:free": ModelPricing(
        "DeepSeek Chat", "DeepSeek", ModelTier.FREE,
        Decimal("0.00"), Decimal("0.00"),
    ),
    "anthropic/claude-3-haiku": ModelPricing(
        "Claude 3 Haiku", "Anthropic", ModelTier.FREE,
        Decimal("0.00025"), Decimal("0.00125"),
    ),
    "meta-llama/llama-3.3-70b-instruct:free": ModelPricing(
        "Llama 3.3 70B", "Meta", ModelTier.FREE,
        Decimal("0.00"), Decimal("0.00"),
    ),
    "google/gemini-2.0-flash-exp:free": ModelPricing(
        "Gemini 2.0 Flash", "Google", ModelTier.FREE,
        Decimal("0.00"), Decimal("0.00"),
    ),
    # Paid tiers
    "deepseek/deepseek-r1": ModelPricing(
        "DeepSeek R1", "DeepSeek", ModelTier.BUDGET,
        Decimal("0.00055"), Decimal("0.00219"),
    ),
    "perplexity/sonar-pro": ModelPricing(
        "Sonar Pro", "Perplexity", ModelTier.MID,
        Decimal("0.003"), Decimal("0.015"),
    ),
    "openai/chatgpt-4o-latest": ModelPricing(
        "ChatGPT-4o Latest", "OpenAI", ModelTier.PREMIUM,
        Decimal("0.005"), Decimal("0.015"),
    ),
    "google/gemini-3-pro-preview": ModelPricing(
        "Gemini 3 Pro Preview", "Google", ModelTier.PREMIUM,
        Decimal("0.002"), Decimal("0.012"),
    ),
    "anthropic/claude-3-opus": ModelPricing(
        "Claude 3 Opus", "Anthropic", ModelTier.ULTRA_PREMIUM,
        Decimal("0.015"), Decimal("0.075"),
    ),
})


def is_model_free(model: str) -> bool:
    """True only for catalogued FREE-tier models; unknown models are paid."""
    pricing = PRICING_TABLE.prices.get(model)
    return pricing is not None and pricing.is_free


def calculate_cost(model: str, usage: TokenUsage) -> float:
    """Calculate provider cost for model usage with conservative rounding.

    Rounded UP to the nearest millionth of a dollar, the smallest amount
    the ledger can bill.

    Args:
        model: Model identifier
        usage: Token usage data

    Returns:
        Provider cost in USD

    Raises:
        ValueError: If model is not supported
    """
    pricing = PRICING_TABLE.get_pricing(model)

    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k

    total_cost = prompt_cost + completion_cost
    rounded_cost = total_cost.quantize(Decimal("0.000001"), rounding=ROUND_UP)

    return float(rounded_cost)
