"""
Realtime profile change feed.

An in-process push channel keyed by identity. Events say only that
something about a profile changed; subscribers must re-read the store
rather than trust the payload.
"""

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set


logger = logging.getLogger(__name__)

ChangeHandler = Callable[[Optional[Dict[str, Any]]], Awaitable[None]]


class Subscription:
    """Handle for one upstream listener on the feed."""

    def __init__(self, feed: "ChangeFeed", user_id: str, handler: ChangeHandler,
                 loop: asyncio.AbstractEventLoop):
        self.feed = feed
        self.user_id = user_id
        self.handler = handler
        self.loop = loop
        self.closed = False
        # handler tasks still running; the loop keeps only weak references
        self.pending: Set[asyncio.Task] = set()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.feed._remove(self)

    def _deliver(self, payload: Optional[Dict[str, Any]]) -> None:
        if self.closed:
            return
        task = self.loop.create_task(self.handler(payload))
        self.pending.add(task)
        task.add_done_callback(self.pending.discard)
        task.add_done_callback(self._log_failure)

    def _log_failure(self, task: "asyncio.Task") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "[change_feed] handler failed",
                extra={"user_id": self.user_id, "error": repr(error)},
            )


class ChangeFeed:
    """Publish/subscribe channel of profile change events.

    publish() is safe to call from worker threads: delivery is scheduled
    on the loop each subscription was opened on.
    """

    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, user_id: str, handler: ChangeHandler) -> Subscription:
        """Register an async handler for changes to one profile.

        Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        subscription = Subscription(self, user_id, handler, loop)
        with self._lock:
            self._subscriptions.setdefault(user_id, []).append(subscription)
        logger.debug("[change_feed] subscribed", extra={"user_id": user_id})
        return subscription

    def publish(self, user_id: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """Notify every open subscription for user_id.

        Returns:
            Number of subscriptions the event was scheduled for
        """
        with self._lock:
            targets = list(self._subscriptions.get(user_id, ()))

        delivered = 0
        for subscription in targets:
            if subscription.loop.is_closed():
                continue
            try:
                subscription.loop.call_soon_threadsafe(subscription._deliver, payload)
            except RuntimeError:
                # loop closed between the check and the call
                continue
            delivered += 1
        return delivered

    def subscriber_count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._subscriptions.get(user_id, ()))
            return sum(len(subs) for subs in self._subscriptions.values())

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(subscription.user_id)
            if not subs:
                return
            if subscription in subs:
                subs.remove(subscription)
            if not subs:
                del self._subscriptions[subscription.user_id]
        logger.debug("[change_feed] unsubscribed", extra={"user_id": subscription.user_id})
