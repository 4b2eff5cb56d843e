"""
Account service: the entry points the chat UI calls.

resolve_access, classify_intent, decide_routing and deduct live here,
together with first sign-in provisioning, the monthly reset check and
the free-plan daily generation quotas.
Access and billing calls never raise across the UI boundary for the
expected failures (missing profile, store outage, overdraft); they are
logged and reported in the return value.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from kroniq_guard.config.loader import GuardConfig, default_config
from kroniq_guard.errors import OverdraftWarning, ProfileNotFound, StoreError
from kroniq_guard.storage.models import DeductionEvent, Plan, ProfileDelta, UserProfile
from kroniq_guard.storage.repository import (
    LegacyProfileSource,
    ProfileStore,
    legacy_allocation,
)
from . import entitlements, ledger
from .access import AccessCache, AccessResolver, AccessStatus
from .entitlements import GenerationLimitInfo
from .intent import Intent, classify_intent
from .routing import RoutingContext, RoutingDecision, decide_routing


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionResult:
    """Outcome of ensure_profile."""
    profile: UserProfile
    created: bool
    # set only when a brand-new account received the early adopter allocation
    early_adopter_bonus: Optional[int] = None


@dataclass(frozen=True)
class DeductionResult:
    success: bool
    tokens: int
    balance: int
    request_id: str
    overdraft: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class TokenSummary:
    balance: int
    tokens_limit: int
    tokens_used: int
    plan: Plan
    next_reset_at: datetime
    days_until_reset: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountService:
    """Ties the store, ledger, resolver and classifier together."""

    def __init__(self, store: ProfileStore, resolver: Optional[AccessResolver] = None,
                 config: Optional[GuardConfig] = None,
                 legacy: Optional[LegacyProfileSource] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.config = config or default_config()
        self.store = store
        self.resolver = resolver or AccessResolver(
            store,
            cache=AccessCache(
                ttl_seconds=self.config.access.cache_ttl_seconds,
                max_entries=self.config.access.cache_max_entries,
            ),
        )
        self.legacy = legacy
        self.clock = clock

    # -- provisioning -------------------------------------------------------

    async def ensure_profile(self, user_id: str, email: Optional[str] = None,
                             display_name: Optional[str] = None) -> ProvisionResult:
        """Return the user's profile, creating it on first sign-in.

        Raises:
            StoreError: If the store cannot be read or written at all
        """
        if not user_id:
            raise ValueError("user_id is required")

        existing = await asyncio.to_thread(self.store.get_profile, user_id)
        if existing is not None:
            return ProvisionResult(profile=existing, created=False)

        tokens, is_early_adopter = await self._initial_allocation(user_id)
        created_at = self.clock()
        profile = await asyncio.to_thread(
            self.store.create_profile, user_id, tokens, email, display_name, created_at
        )
        # another tab may have created it first
        created = profile.created_at == created_at
        self.resolver.invalidate(user_id)
        return ProvisionResult(
            profile=profile,
            created=created,
            early_adopter_bonus=tokens if (is_early_adopter and created) else None,
        )

    async def _initial_allocation(self, user_id: str):
        ledger_config = self.config.ledger
        if self.legacy is not None:
            try:
                legacy_profile = await asyncio.to_thread(self.legacy.get, user_id)
            except StoreError as e:
                logger.warning(
                    "[accounts] legacy lookup failed, continuing with normal allocation",
                    extra={"user_id": user_id, "error": str(e)},
                )
                legacy_profile = None
            if legacy_profile is not None:
                tokens = legacy_allocation(legacy_profile, ledger_config.standard_allocation)
                logger.info(
                    "[accounts] migrated user, early adopter bonus skipped",
                    extra={"user_id": user_id, "tokens": tokens},
                )
                return tokens, False

        try:
            ordinal = await asyncio.to_thread(self.store.count_profiles)
        except StoreError as e:
            logger.error(
                "[accounts] could not count profiles, using standard allocation",
                extra={"user_id": user_id, "error": str(e)},
            )
            return ledger_config.standard_allocation, False

        tokens = ledger.allocate_initial_tokens(ordinal, ledger_config)
        return tokens, ordinal < ledger_config.early_adopter_limit

    # -- monthly reset ------------------------------------------------------

    async def check_and_reset(self, user_id: str) -> Optional[ledger.TokenResetResult]:
        """Apply the monthly rollover if it is due.

        A failed read skips the check for this call; tokens are never
        zeroed on a guess. Returns None when the check was skipped.
        """
        now = self.clock()
        try:
            profile = await asyncio.to_thread(self.store.get_profile, user_id)
        except StoreError as e:
            logger.warning(
                "[accounts] reset check skipped, profile read failed",
                extra={"user_id": user_id, "error": str(e)},
            )
            return None
        if profile is None:
            return None

        ledger_config = self.config.ledger
        if not ledger.due_for_reset(profile, now, ledger_config):
            return ledger.reset_result(profile, None, now, ledger_config)

        updated = ledger.apply_reset(profile, now, ledger_config)
        try:
            if profile.is_paid_plan:
                applied = await asyncio.to_thread(
                    self.store.commit_reset, user_id,
                    profile.last_token_reset_at, updated.last_token_reset_at,
                )
            else:
                applied = await asyncio.to_thread(
                    self.store.commit_reset, user_id,
                    profile.last_token_reset_at, updated.last_token_reset_at,
                    updated.tokens_limit, updated.tokens_used,
                )
        except StoreError as e:
            logger.warning(
                "[accounts] reset write failed, will retry on next check",
                extra={"user_id": user_id, "error": str(e)},
            )
            return None
        finally:
            self.resolver.invalidate(user_id)

        if not applied:
            # a concurrent check already rolled this profile over
            return ledger.reset_result(profile, None, now, ledger_config)

        logger.info(
            "[accounts] monthly token reset applied",
            extra={
                "user_id": user_id,
                "plan": profile.plan.value,
                "previous_balance": ledger.balance(profile),
                "new_balance": ledger.balance(updated),
            },
        )
        return ledger.reset_result(profile, updated, now, ledger_config)

    # -- UI boundary ----------------------------------------------------------

    async def resolve_access(self, user_id: Optional[str]) -> AccessStatus:
        return await self.resolver.resolve(user_id)

    def classify_intent(self, text: Optional[str]) -> Intent:
        return classify_intent(text)

    def decide_routing(self, intent: Intent, context: RoutingContext) -> RoutingDecision:
        return decide_routing(intent, context, self.config.routing)

    async def deduct(self, user_id: str, provider_cost_usd: float,
                     request_id: Optional[str] = None, model: Optional[str] = None,
                     request_type: str = "chat") -> DeductionResult:
        """Bill a completed job.

        Converts the provider charge to tokens, applies it atomically and
        invalidates the access cache before returning, so the next balance
        read reflects this deduction. A deduction that overdraws is still
        applied and logged. Passing the same request_id again bills once.
        """
        request_id = request_id or uuid.uuid4().hex
        tokens = ledger.cost_for_completion(provider_cost_usd, self.config.ledger)
        delta = ProfileDelta(
            add_tokens_used=tokens,
            request_id=request_id,
            provider_cost_usd=provider_cost_usd,
            model=model,
            request_type=request_type,
        )

        try:
            profile = await asyncio.to_thread(self.store.apply_deltas, user_id, delta)
        except ProfileNotFound:
            logger.warning(
                "[accounts] deduction for unknown profile",
                extra={"user_id": user_id, "request_id": request_id},
            )
            return DeductionResult(False, tokens, 0, request_id, error="profile not found")
        except StoreError as e:
            logger.error(
                "[accounts] deduction failed",
                extra={"user_id": user_id, "request_id": request_id, "error": str(e)},
            )
            return DeductionResult(False, tokens, 0, request_id, error=str(e))
        finally:
            self.resolver.invalidate(user_id)

        overdraft = profile.tokens_used > profile.tokens_limit
        if overdraft:
            logger.warning(
                "[accounts] %s: balance overdrawn by %d tokens",
                OverdraftWarning.__name__,
                profile.tokens_used - profile.tokens_limit,
                extra={"user_id": user_id, "request_id": request_id, "tokens": tokens},
            )

        return DeductionResult(
            success=True,
            tokens=tokens,
            balance=ledger.balance(profile),
            request_id=request_id,
            overdraft=overdraft,
        )

    # -- generation quotas ----------------------------------------------------

    async def check_generation_limit(self, user_id: str, kind: str) -> GenerationLimitInfo:
        """Daily quota state for one generation medium.

        Counts are kept per UTC day. If today's count cannot be read the
        generation is allowed; the job is still billed in tokens.

        Raises:
            ValueError: If kind is unknown
        """
        limits = await self.generation_limits(user_id, kinds=[kind])
        return limits[kind]

    async def generation_limits(self, user_id: str,
                                kinds: Optional[List[str]] = None) -> Dict[str, GenerationLimitInfo]:
        """Quota state for every medium (or just kinds) from a single count read."""
        kinds = list(kinds) if kinds is not None else list(self.config.generation_limits)
        for kind in kinds:
            self.config.get_generation_limit(kind)

        status = await self.resolve_access(user_id)
        today = self.clock().date()
        try:
            counts = await asyncio.to_thread(self.store.get_generation_counts, user_id, today)
        except StoreError as e:
            logger.warning(
                "[accounts] generation count read failed, allowing generation",
                extra={"user_id": user_id, "error": str(e)},
            )
            return {
                kind: GenerationLimitInfo(
                    can_generate=True,
                    current=0,
                    limit=self.config.get_generation_limit(kind),
                    is_paid=status.is_premium,
                    message="Unable to check limit, allowing generation",
                )
                for kind in kinds
            }

        return {
            kind: entitlements.check_generation_limit(
                kind, status, counts.get(kind, 0), self.config
            )
            for kind in kinds
        }

    async def record_generation(self, user_id: str, kind: str) -> Optional[int]:
        """Count a finished generation against today's quota.

        Returns the new count for today, or None if it could not be
        recorded. A lost count is logged, never raised; the job already
        delivered.

        Raises:
            ValueError: If kind is unknown
        """
        self.config.get_generation_limit(kind)
        today = self.clock().date()
        try:
            return await asyncio.to_thread(
                self.store.increment_generation_count, user_id, kind, today
            )
        except (ProfileNotFound, StoreError) as e:
            logger.error(
                "[accounts] generation not counted",
                extra={"user_id": user_id, "kind": kind, "error": str(e)},
            )
            return None

    # -- billing / admin ------------------------------------------------------

    async def set_plan(self, user_id: str, plan: Plan) -> UserProfile:
        """Record a plan change from the billing system.

        Raises:
            ProfileNotFound: If the profile doesn't exist
        """
        try:
            return await asyncio.to_thread(self.store.set_plan, user_id, plan)
        finally:
            self.resolver.invalidate(user_id)

    async def token_summary(self, user_id: str) -> Optional[TokenSummary]:
        profile = await asyncio.to_thread(self.store.get_profile, user_id)
        if profile is None:
            return None
        ledger_config = self.config.ledger
        return TokenSummary(
            balance=ledger.balance(profile),
            tokens_limit=profile.tokens_limit,
            tokens_used=profile.tokens_used,
            plan=profile.plan,
            next_reset_at=ledger.next_reset_at(profile, ledger_config),
            days_until_reset=ledger.days_until_reset(profile, self.clock(), ledger_config),
        )

    async def recent_deductions(self, user_id: str, limit: int = 50) -> List[DeductionEvent]:
        return await asyncio.to_thread(self.store.list_deductions, user_id, limit)

    async def erase(self, user_id: str) -> bool:
        """Delete a profile on an explicit data-erasure request."""
        try:
            return await asyncio.to_thread(self.store.erase_profile, user_id)
        finally:
            self.resolver.invalidate(user_id)
