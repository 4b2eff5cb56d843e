"""
Access resolution for premium-gated capabilities.

Answers one question per identity: is this user entitled to paid models
right now, and how many tokens are left. Answers are cached briefly,
concurrent lookups share one store read, and a realtime change feed
pushes fresh answers to subscribers.

Resolution order:
1. Fresh cache entry - returned without touching the store
2. In-flight resolution for the same identity - awaited, not duplicated
3. Store read - premium derived from the plan alone, tier flags repaired
   when they disagree

Any failure on this path produces a free, non-premium status. Gating
fails closed.
"""

import asyncio
import inspect
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set, Tuple

from kroniq_guard.errors import ReconciliationConflict, StoreError
from kroniq_guard.storage.change_feed import ChangeFeed, Subscription
from kroniq_guard.storage.models import TierFlags, UserProfile
from kroniq_guard.storage.repository import ProfileStore
from .ledger import balance


logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 1.0
DEFAULT_MAX_ENTRIES = 1024


class AccessSource(Enum):
    """Which path produced an AccessStatus."""
    FRESH = "fresh"
    CACHE_HIT = "cache_hit"
    REPAIRED = "repaired"
    NO_USER = "no_user"
    NO_PROFILE = "no_profile"
    STORE_ERROR = "store_error"
    EXCEPTION = "exception"

    @property
    def is_degraded(self) -> bool:
        return self in (
            AccessSource.NO_USER,
            AccessSource.NO_PROFILE,
            AccessSource.STORE_ERROR,
            AccessSource.EXCEPTION,
        )


@dataclass(frozen=True)
class AccessStatus:
    """Snapshot of an identity's entitlement. Derived, never persisted."""
    is_premium: bool
    user_id: str
    paid_tokens: int
    total_tokens: int
    tier: str
    source: AccessSource
    computed_at: datetime

    @classmethod
    def free(cls, user_id: str, source: AccessSource) -> "AccessStatus":
        return cls(
            is_premium=False,
            user_id=user_id or "",
            paid_tokens=0,
            total_tokens=0,
            tier="free",
            source=source,
            computed_at=datetime.now(timezone.utc),
        )


def status_from_profile(profile: UserProfile, source: AccessSource) -> AccessStatus:
    """Derive a status from a profile.

    Premium comes from the plan field only; a free plan holding millions
    of promotional tokens is still not premium.
    """
    is_premium = profile.is_paid_plan
    tokens = balance(profile)
    return AccessStatus(
        is_premium=is_premium,
        user_id=profile.id,
        paid_tokens=tokens if is_premium else 0,
        total_tokens=tokens,
        tier=profile.plan.value,
        source=source,
        computed_at=datetime.now(timezone.utc),
    )


class AccessCache:
    """Bounded TTL cache of AccessStatus keyed by identity.

    Advisory only: it never stands in for the ledger's own consistency.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS,
                 max_entries: int = DEFAULT_MAX_ENTRIES,
                 clock: Callable[[], float] = time.monotonic):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, AccessStatus]]" = OrderedDict()

    def get(self, user_id: str) -> Optional[AccessStatus]:
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        stored_at, status = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[user_id]
            return None
        self._entries.move_to_end(user_id)
        return status

    def put(self, user_id: str, status: AccessStatus) -> None:
        self._entries[user_id] = (self._clock(), status)
        self._entries.move_to_end(user_id)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def delete(self, user_id: str) -> None:
        self._entries.pop(user_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


StatusCallback = Callable[[AccessStatus], Any]


class AccessResolver:
    """Resolves, caches and pushes AccessStatus per identity.

    Construct once per process and pass it to every call site that needs
    an access answer, so they share one cache and one set of realtime
    subscriptions.
    """

    def __init__(self, store: ProfileStore, cache: Optional[AccessCache] = None,
                 feed: Optional[ChangeFeed] = None):
        self.store = store
        self.cache = cache or AccessCache()
        self.feed = feed
        self._inflight: Dict[str, "asyncio.Task[AccessStatus]"] = {}
        self._callbacks: Dict[str, Set[StatusCallback]] = {}
        self._upstream: Dict[str, Subscription] = {}

    async def resolve(self, user_id: Optional[str]) -> AccessStatus:
        """Return the current AccessStatus for user_id. Never raises."""
        if not user_id:
            return AccessStatus.free("", AccessSource.NO_USER)

        cached = self.cache.get(user_id)
        if cached is not None:
            return replace(cached, source=AccessSource.CACHE_HIT)

        task = self._inflight.get(user_id)
        if task is None:
            task = asyncio.ensure_future(self._resolve_uncached(user_id))
            self._inflight[user_id] = task
            task.add_done_callback(lambda t, uid=user_id: self._forget(uid, t))
        # a cancelled caller must not cancel the shared read
        return await asyncio.shield(task)

    def _forget(self, user_id: str, task: "asyncio.Task[AccessStatus]") -> None:
        if self._inflight.get(user_id) is task:
            del self._inflight[user_id]

    async def _resolve_uncached(self, user_id: str) -> AccessStatus:
        try:
            profile = await asyncio.to_thread(self.store.get_profile, user_id)
            if profile is None:
                logger.warning("[access] no profile found", extra={"user_id": user_id})
                return AccessStatus.free(user_id, AccessSource.NO_PROFILE)

            source = AccessSource.FRESH
            if not profile.tier_flags.agrees_with(profile.plan):
                if await self._repair(profile):
                    source = AccessSource.REPAIRED
            status = status_from_profile(profile, source)
        except StoreError as e:
            logger.error(
                "[access] store failure, denying premium",
                extra={"user_id": user_id, "error": str(e)},
            )
            return AccessStatus.free(user_id, AccessSource.STORE_ERROR)
        except Exception:
            logger.exception("[access] unexpected failure, denying premium",
                             extra={"user_id": user_id})
            return AccessStatus.free(user_id, AccessSource.EXCEPTION)

        # invalidate() detaches the in-flight task; a detached answer may be stale
        if self._inflight.get(user_id) is asyncio.current_task():
            self.cache.put(user_id, status)
        return status

    async def _repair(self, profile: UserProfile) -> bool:
        """Write tier flags that agree with the plan. Returns True on success."""
        conflict = ReconciliationConflict(
            profile.id,
            profile.plan.value,
            {
                "is_premium": profile.tier_flags.is_premium,
                "is_paid": profile.tier_flags.is_paid,
                "current_tier": profile.tier_flags.current_tier,
            },
        )
        logger.info("[access] repairing tier flags: %s", conflict,
                    extra={"user_id": profile.id, "plan": profile.plan.value})
        try:
            await asyncio.to_thread(
                self.store.write_tier_flags, profile.id, TierFlags.for_plan(profile.plan)
            )
        except StoreError as e:
            logger.warning(
                "[access] tier flag repair failed, will retry on next resolve",
                extra={"user_id": profile.id, "error": str(e)},
            )
            return False
        return True

    def invalidate(self, user_id: Optional[str] = None) -> None:
        """Drop cached state so the next resolve re-reads the store.

        Any resolution already in flight is detached: its answer is still
        returned to the callers waiting on it but is not cached.
        """
        if user_id is None:
            self.cache.clear()
            self._inflight.clear()
            return
        self.cache.delete(user_id)
        self._inflight.pop(user_id, None)

    async def refresh(self, user_id: str) -> AccessStatus:
        """Force a store read, bypassing the cache."""
        self.invalidate(user_id)
        return await self.resolve(user_id)

    def subscribe(self, user_id: str, callback: StatusCallback) -> Callable[[], None]:
        """Register for fresh statuses whenever the profile changes upstream.

        All callbacks for one identity share a single upstream feed
        subscription, closed when the last callback unsubscribes. Must be
        called from a running event loop.

        Returns:
            A function that removes this callback
        """
        if self.feed is None:
            raise RuntimeError("AccessResolver has no change feed to subscribe to")
        if not user_id:
            raise ValueError("user_id is required")

        self._callbacks.setdefault(user_id, set()).add(callback)
        if user_id not in self._upstream:
            async def on_change(_payload, uid=user_id):
                await self._on_profile_changed(uid)

            self._upstream[user_id] = self.feed.subscribe(user_id, on_change)
            logger.debug("[access] upstream subscription opened", extra={"user_id": user_id})

        def unsubscribe() -> None:
            callbacks = self._callbacks.get(user_id)
            if not callbacks:
                return
            callbacks.discard(callback)
            if not callbacks:
                del self._callbacks[user_id]
                subscription = self._upstream.pop(user_id, None)
                if subscription is not None:
                    subscription.close()
                    logger.debug("[access] upstream subscription closed",
                                 extra={"user_id": user_id})

        return unsubscribe

    def active_subscriptions(self) -> int:
        return len(self._upstream)

    async def _on_profile_changed(self, user_id: str) -> None:
        # the event is only a trigger; always re-read
        self.invalidate(user_id)
        status = await self.resolve(user_id)
        for callback in list(self._callbacks.get(user_id, ())):
            try:
                result = callback(status)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("[access] status callback failed",
                                 extra={"user_id": user_id})
