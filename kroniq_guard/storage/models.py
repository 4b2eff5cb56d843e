"""
Data models for storage layer.

Defines the normalized profile shape and the append-only deduction record.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional


class Plan(Enum):
    """Subscription tier as set by the billing system."""
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @property
    def is_paid(self) -> bool:
        return self in (Plan.PRO, Plan.ENTERPRISE)


PAID_PLANS = frozenset({Plan.PRO, Plan.ENTERPRISE})


@dataclass(frozen=True)
class TierFlags:
    """Secondary tier markers that must agree with the plan field."""
    is_premium: bool = False
    is_paid: bool = False
    current_tier: str = "free"

    @classmethod
    def for_plan(cls, plan: Plan) -> "TierFlags":
        """Flags that are consistent with the given plan."""
        if plan.is_paid:
            return cls(is_premium=True, is_paid=True, current_tier="premium")
        return cls()

    def agrees_with(self, plan: Plan) -> bool:
        if plan.is_paid:
            return (
                self.is_premium
                and self.is_paid
                and bool(self.current_tier)
                and self.current_tier != "free"
            )
        return not self.is_premium and not self.is_paid


@dataclass(frozen=True)
class UserProfile:
    """One profile per identity.

    tokens_used may exceed tokens_limit after an accepted overdraft; use
    the ledger's balance() to read a balance, never the raw difference.
    """
    id: str
    plan: Plan
    tokens_limit: int
    tokens_used: int
    created_at: datetime
    last_token_reset_at: datetime
    updated_at: datetime
    tier_flags: TierFlags = field(default_factory=TierFlags)
    email: Optional[str] = None
    display_name: Optional[str] = None

    def __post_init__(self):
        """Validate token counters are non-negative."""
        if self.tokens_limit < 0:
            raise ValueError("tokens_limit cannot be negative")
        if self.tokens_used < 0:
            raise ValueError("tokens_used cannot be negative")

    @property
    def is_paid_plan(self) -> bool:
        return self.plan.is_paid

    def evolve(self, **changes) -> "UserProfile":
        return replace(self, **changes)


@dataclass(frozen=True)
class ProfileDelta:
    """A partial update applied atomically by the store.

    add_tokens_used is an increment, never an absolute value. request_id
    makes the delta idempotent: replaying it is a no-op.
    """
    add_tokens_used: int = 0
    request_id: Optional[str] = None
    provider_cost_usd: float = 0.0
    model: Optional[str] = None
    request_type: str = "chat"

    def __post_init__(self):
        if self.add_tokens_used < 0:
            raise ValueError("add_tokens_used cannot be negative")


@dataclass(frozen=True)
class DeductionEvent:
    """Immutable record of a token deduction.

    Append-only; once written it is never modified.
    """
    request_id: str
    user_id: str
    tokens: int
    provider_cost_usd: float
    balance_after: int
    timestamp: datetime
    model: Optional[str] = None
    request_type: str = "chat"
