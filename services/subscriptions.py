"""
Live holding subscriptions.
Views register a callback and receive the user's persisted holdings every time
they change. Each snapshot is the full current state read back from the
database; subscribers never apply diffs or optimistic updates.
"""

import inspect
import itertools
import logging
import threading
import weakref
from typing import Callable, Dict, List, Optional, Tuple

from models import Holding
from repositories import HoldingRepository

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[List[Holding]], None]
HoldingFilter = Callable[[Holding], bool]
Unsubscribe = Callable[[], None]
CallbackRef = Callable[[], Optional[SnapshotCallback]]


class HoldingFeed:
    """
    Publish/subscribe hub for holding snapshots, keyed by user.
    Thread-safe: the price-sync job publishes from the scheduler thread.
    """

    def __init__(self, loader: Callable[[str], List[Holding]] = HoldingRepository.get_by_user):
        self._loader = loader
        self._subscribers: Dict[str, Dict[int, Tuple[CallbackRef, Optional[HoldingFilter]]]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(
        self,
        user_id: str,
        callback: SnapshotCallback,
        holding_filter: Optional[HoldingFilter] = None,
        weak: bool = False
    ) -> Unsubscribe:
        """
        Register a callback for a user's holdings.
        The callback is invoked immediately with the current snapshot.

        Args:
            user_id: Whose holdings to watch
            callback: Receives the (filtered) list of holdings
            holding_filter: Optional predicate, e.g. one ticker for a detail view
            weak: Hold the callback by weak reference; the subscription ends
                by itself once the callback's owner is garbage collected

        Returns:
            A function that removes the subscription; calling it twice is harmless
        """
        ref = _weak_ref(callback) if weak else _strong_ref(callback)

        with self._lock:
            subscription_id = next(self._ids)
            self._subscribers.setdefault(user_id, {})[subscription_id] = (ref, holding_filter)

        self._deliver(callback, holding_filter, self._loader(user_id))

        def unsubscribe():
            with self._lock:
                subscribers = self._subscribers.get(user_id, {})
                subscribers.pop(subscription_id, None)
                if not subscribers:
                    self._subscribers.pop(user_id, None)

        return unsubscribe

    def _live_subscribers(self, user_id: str) -> List[Tuple[SnapshotCallback, Optional[HoldingFilter]]]:
        """Resolve the user's subscriptions, dropping those whose owner is gone."""
        with self._lock:
            subscribers = self._subscribers.get(user_id, {})
            live = []
            for subscription_id, (ref, holding_filter) in list(subscribers.items()):
                callback = ref()
                if callback is None:
                    del subscribers[subscription_id]
                else:
                    live.append((callback, holding_filter))
            if not subscribers:
                self._subscribers.pop(user_id, None)
        return live

    def subscriber_count(self, user_id: str) -> int:
        return len(self._live_subscribers(user_id))

    def publish(self, user_id: str) -> None:
        """Reload the user's holdings and push the snapshot to every subscriber."""
        subscribers = self._live_subscribers(user_id)
        if not subscribers:
            return

        snapshot = self._loader(user_id)
        for callback, holding_filter in subscribers:
            self._deliver(callback, holding_filter, snapshot)

    @staticmethod
    def _deliver(callback: SnapshotCallback, holding_filter: Optional[HoldingFilter], snapshot: List[Holding]):
        holdings = [h for h in snapshot if holding_filter(h)] if holding_filter else list(snapshot)
        try:
            callback(holdings)
        except Exception:
            logger.exception("Holding subscriber raised while handling a snapshot")


def _strong_ref(callback: SnapshotCallback) -> CallbackRef:
    def ref() -> SnapshotCallback:
        return callback
    return ref


def _weak_ref(callback: SnapshotCallback) -> CallbackRef:
    # Bound methods are recreated on every attribute access, so track the instance
    if inspect.ismethod(callback):
        return weakref.WeakMethod(callback)
    return weakref.ref(callback)
