"""
Entitlement checks for premium models and generation quotas.

Check Order:
1. Model tier - paid models require a premium status
2. Token balance - nothing runs on an empty balance
3. Daily generation quota - free plans get a fixed number per medium

A denial always explains itself: which tier is required, what it costs
and which free alternatives exist. A silent no-op is never acceptable.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from kroniq_guard.config.loader import GuardConfig, default_config
from .access import AccessStatus
from .ledger import cost_for_completion
from .pricing import PRICING_TABLE, ModelPricing, ModelTier, is_model_free


UNLIMITED = 999_999


@dataclass(frozen=True)
class AccessDenial:
    """Why a premium-gated action was refused."""
    model: str
    model_name: str
    required_tier: str
    tokens_per_message: int
    free_alternatives: List[str] = field(default_factory=list)
    message: str = ""


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    model: str
    denial: Optional[AccessDenial] = None


@dataclass(frozen=True)
class GenerationLimitInfo:
    """Daily quota state for one generation medium."""
    can_generate: bool
    current: int
    limit: int
    is_paid: bool
    message: str


def free_alternative_names() -> List[str]:
    return [PRICING_TABLE.prices[model].name for model in PRICING_TABLE.free_models()]


def _tokens_per_message(pricing: Optional[ModelPricing], config: GuardConfig) -> int:
    if pricing is None:
        return 0
    return cost_for_completion(float(pricing.cost_per_message), config.ledger)


def check_model_access(model: str, status: AccessStatus,
                       config: Optional[GuardConfig] = None) -> AccessDecision:
    """Decide whether the identity behind status may use a chat model.

    FREE-tier models are open to everyone. Any other model, including one
    missing from the catalog, requires status.is_premium.
    """
    config = config or default_config()
    if is_model_free(model) or status.is_premium:
        return AccessDecision(allowed=True, model=model)

    pricing = PRICING_TABLE.prices.get(model)
    model_name = pricing.name if pricing else model
    provider = pricing.provider if pricing else "unknown provider"
    tier = pricing.tier.value if pricing else ModelTier.PREMIUM.value
    tokens = _tokens_per_message(pricing, config)
    alternatives = free_alternative_names()

    lines = [
        "Access Denied",
        "",
        f'The model "{model_name}" ({provider}) requires a paid tier.',
        "",
        "Why is this locked?",
        f"- This is a {tier} tier model",
        f"- Cost: {tokens:,} tokens per message",
        "- Free tier users can only access free models",
        "",
        "To unlock this model:",
        "1. Go to Settings -> Billing",
        "2. Upgrade to the Pro or Enterprise plan",
        "3. All premium models unlock immediately",
        "",
        "Free alternatives you can use:",
    ]
    lines.extend(f"- {name}" for name in alternatives)

    return AccessDecision(
        allowed=False,
        model=model,
        denial=AccessDenial(
            model=model,
            model_name=model_name,
            required_tier=tier,
            tokens_per_message=tokens,
            free_alternatives=alternatives,
            message="\n".join(lines),
        ),
    )


def has_tokens(status: AccessStatus) -> bool:
    return status.total_tokens > 0


NO_TOKENS_MESSAGE = (
    "No Tokens Remaining: you have 0 tokens. "
    "Purchase tokens or upgrade your plan to continue."
)


def check_generation_limit(kind: str, status: AccessStatus, used_today: int,
                           config: Optional[GuardConfig] = None) -> GenerationLimitInfo:
    """Check the daily quota for a generation medium.

    Paid plans are unlimited (they pay per job in tokens); free plans get
    the configured daily count.

    Args:
        kind: One of image, video, song, tts, ppt
        status: Current access status
        used_today: Generations of this kind already made today

    Raises:
        ValueError: If kind is unknown or used_today is negative
    """
    config = config or default_config()
    if used_today < 0:
        raise ValueError("used_today cannot be negative")

    free_limit = config.get_generation_limit(kind)
    is_paid = status.is_premium
    limit = UNLIMITED if is_paid else free_limit
    can_generate = is_paid or used_today < limit

    if can_generate:
        message = f"{limit - used_today} {kind} generations remaining today"
        if is_paid:
            message = f"Unlimited {kind} generations on your plan"
    else:
        message = (
            f"Daily {kind} limit reached ({limit}/day on the free plan). "
            "Upgrade for unlimited generations."
        )

    return GenerationLimitInfo(
        can_generate=can_generate,
        current=used_today,
        limit=limit,
        is_paid=is_paid,
        message=message,
    )
