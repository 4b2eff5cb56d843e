"""
Token ledger arithmetic.

Pure accounting functions: balances, signup allocations, completion
pricing in tokens, deductions and the rolling monthly reset. No I/O.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_CEILING
from typing import Optional, Tuple

from kroniq_guard.config.loader import LedgerConfig
from kroniq_guard.storage.models import UserProfile


DEFAULT_LEDGER = LedgerConfig()

EARLY_ADOPTER_LIMIT = DEFAULT_LEDGER.early_adopter_limit
EARLY_ADOPTER_TOKENS = DEFAULT_LEDGER.early_adopter_tokens
STANDARD_ALLOCATION = DEFAULT_LEDGER.standard_allocation


@dataclass(frozen=True)
class TokenResetResult:
    """Outcome of a monthly reset check."""
    was_reset: bool
    previous_balance: int
    new_balance: int
    next_reset_at: datetime
    is_paid_user: bool


def balance(profile: UserProfile) -> int:
    """Remaining tokens, floored at zero."""
    return max(0, profile.tokens_limit - profile.tokens_used)


def allocate_initial_tokens(signup_ordinal: int, config: LedgerConfig = DEFAULT_LEDGER) -> int:
    """Tokens granted to a new account.

    The first early_adopter_limit accounts (ordinals 0..limit-1) get the
    one-time early adopter allocation. The ordinal is a count of existing
    profiles taken without a lock, so a few signups racing at the boundary
    may all receive the bonus; that approximation is accepted.

    Args:
        signup_ordinal: Number of profiles that existed at creation time

    Returns:
        Initial tokens_limit for the profile
    """
    if signup_ordinal < 0:
        raise ValueError("signup_ordinal cannot be negative")
    if signup_ordinal < config.early_adopter_limit:
        return config.early_adopter_tokens
    return config.standard_allocation


def usd_to_tokens(usd: float, config: LedgerConfig = DEFAULT_LEDGER) -> int:
    """Convert USD to tokens, rounding up."""
    if usd < 0:
        raise ValueError("usd cannot be negative")
    tokens = Decimal(str(usd)) / Decimal(str(config.usd_per_token))
    return int(tokens.to_integral_value(rounding=ROUND_CEILING))


def tokens_to_usd(tokens: int, config: LedgerConfig = DEFAULT_LEDGER) -> float:
    return float(Decimal(tokens) * Decimal(str(config.usd_per_token)))


def cost_for_completion(provider_cost_usd: float, config: LedgerConfig = DEFAULT_LEDGER) -> int:
    """Tokens to bill for a provider charge.

    Applies the markup, converts at the fixed exchange rate and always
    rounds UP so a request is never under-billed. Decimal arithmetic keeps
    float noise (0.1 * 3 style) from tipping an exact value up or down.

    Args:
        provider_cost_usd: Cost reported by the provider

    Returns:
        Whole tokens to deduct

    Raises:
        ValueError: If the cost is negative or not a finite number
    """
    if provider_cost_usd is None or not math.isfinite(provider_cost_usd):
        raise ValueError("provider_cost_usd must be a finite number")
    if provider_cost_usd < 0:
        raise ValueError("provider_cost_usd cannot be negative")

    marked_up = Decimal(str(provider_cost_usd)) * Decimal(str(config.cost_multiplier))
    tokens = marked_up / Decimal(str(config.usd_per_token))
    return int(tokens.to_integral_value(rounding=ROUND_CEILING))


def deduct(profile: UserProfile, tokens: int) -> Tuple[UserProfile, bool]:
    """Add tokens to tokens_used.

    Never rejects: the service call already happened. The second element
    is True when the deduction overdrew the balance, and the caller must
    log it.
    """
    if tokens < 0:
        raise ValueError("tokens cannot be negative")
    overdraft = tokens > balance(profile)
    return profile.evolve(tokens_used=profile.tokens_used + tokens), overdraft


def next_reset_at(profile: UserProfile, config: LedgerConfig = DEFAULT_LEDGER) -> datetime:
    return profile.last_token_reset_at + timedelta(days=config.reset_period_days)


def due_for_reset(profile: UserProfile, now: datetime,
                  config: LedgerConfig = DEFAULT_LEDGER) -> bool:
    """True once a full reset period has passed since the last reset."""
    return _aware(now) - _aware(profile.last_token_reset_at) >= timedelta(days=config.reset_period_days)


def apply_reset(profile: UserProfile, now: datetime,
                config: LedgerConfig = DEFAULT_LEDGER) -> UserProfile:
    """Roll a profile over into a new period.

    Free plans drop back to the standard allocation with nothing carried
    over (the early adopter bonus is one-time). Paid plans keep their
    balance and only the reset date advances. The reset date never moves
    backward.
    """
    reset_at = max(_aware(now), _aware(profile.last_token_reset_at))
    if profile.is_paid_plan:
        return profile.evolve(last_token_reset_at=reset_at)
    return profile.evolve(
        tokens_used=0,
        tokens_limit=config.standard_allocation,
        last_token_reset_at=reset_at,
    )


def days_until_reset(profile: UserProfile, now: datetime,
                     config: LedgerConfig = DEFAULT_LEDGER) -> int:
    """Whole days until the next reset, rounded up and never negative."""
    remaining = next_reset_at(profile, config) - _aware(now)
    days = math.ceil(remaining.total_seconds() / 86400)
    return max(0, days)


def reset_result(before: UserProfile, after: Optional[UserProfile], now: datetime,
                 config: LedgerConfig = DEFAULT_LEDGER) -> TokenResetResult:
    """Describe a reset check; after is None when no reset happened."""
    if after is None:
        return TokenResetResult(
            was_reset=False,
            previous_balance=balance(before),
            new_balance=balance(before),
            next_reset_at=next_reset_at(before, config),
            is_paid_user=before.is_paid_plan,
        )
    return TokenResetResult(
        was_reset=True,
        previous_balance=balance(before),
        new_balance=balance(after),
        next_reset_at=next_reset_at(after, config),
        is_paid_user=before.is_paid_plan,
    )


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
