from __future__ import annotations

import asyncio
import logging
from enum import Enum
from itertools import count
from typing import Any, Dict, Iterable, List, Optional, Set

from .models import WatchFilter

logger = logging.getLogger("taskwatch.registry")


class SubscriptionState(str, Enum):
    REGISTERED = "registered"
    STREAMING = "streaming"
    CANCELLED = "cancelled"
    CLOSED_TOO_SLOW = "too_slow"
    CLOSED_NOT_FOUND = "not_found"
    CLOSED_SHUTDOWN = "shutdown"


TERMINAL_STATES = frozenset(
    {
        SubscriptionState.CANCELLED,
        SubscriptionState.CLOSED_TOO_SLOW,
        SubscriptionState.CLOSED_NOT_FOUND,
        SubscriptionState.CLOSED_SHUTDOWN,
    }
)


class Subscription:
    """One observer: bounded outbound buffer, watermark and lifecycle state."""

    def __init__(
        self,
        subscription_id: int,
        *,
        capacity: int,
        watch_filter: Optional[WatchFilter] = None,
        task_id: Optional[int] = None,
    ) -> None:
        self.id = subscription_id
        self.capacity = max(1, int(capacity))
        self.filter = watch_filter or WatchFilter()
        self.task_id = task_id
        self.queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=self.capacity)
        self.state = SubscriptionState.REGISTERED
        self.watermark = 0
        self.seq = 0
        self.lag_ticks = 0
        self.coalesced_total = 0
        self.delivered_total = 0
        # Entity ids already handed to this subscriber as new and not yet evicted.
        self.known_ids: Set[int] = set()
        self._closed = asyncio.Event()

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_task_details(self) -> bool:
        return self.task_id is not None

    @property
    def close_reason(self) -> Optional[str]:
        return self.state.value if self.is_terminal else None

    def mark_streaming(self) -> None:
        if self.state is SubscriptionState.REGISTERED:
            self.state = SubscriptionState.STREAMING

    def remember(self, new_ids: Iterable[int], evicted_ids: Iterable[int] = ()) -> None:
        self.known_ids.update(new_ids)
        self.known_ids.difference_update(evicted_ids)

    def close(self, state: SubscriptionState) -> bool:
        if state not in TERMINAL_STATES:
            raise ValueError(f"{state.value} is not a terminal subscription state.")
        if self.is_terminal:
            return False
        self.state = state
        while not self.queue.empty():
            self.queue.get_nowait()
        self._closed.set()
        return True

    async def next_update(self) -> Optional[Any]:
        """Next buffered update, or None once the subscription is closed."""
        if self.is_terminal:
            return None
        if not self.queue.empty():
            return self.queue.get_nowait()

        getter = asyncio.ensure_future(self.queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (getter, closer):
                if not waiter.done():
                    waiter.cancel()
        if getter in done and not getter.cancelled() and not self.is_terminal:
            return getter.result()
        return None


class SubscriptionRegistry:
    """Tracks active subscribers and applies the slow-consumer policy.

    A full buffer never blocks publication: the oldest queued update is folded
    into its successor so order is kept. A subscriber that stays full for more than
    ``slow_consumer_threshold`` consecutive offers is closed as too slow.
    """

    def __init__(
        self,
        *,
        buffer_capacity: int = 64,
        slow_consumer_threshold: int = 10,
    ) -> None:
        self.buffer_capacity = max(1, int(buffer_capacity))
        self.slow_consumer_threshold = max(1, int(slow_consumer_threshold))
        self._subscriptions: Dict[int, Subscription] = {}
        self._ids = count(start=1)
        self.closed_too_slow_total = 0

    def __len__(self) -> int:
        return len(self._subscriptions)

    def register(
        self,
        watch_filter: Optional[WatchFilter] = None,
        *,
        task_id: Optional[int] = None,
    ) -> Subscription:
        subscription = Subscription(
            next(self._ids),
            capacity=self.buffer_capacity,
            watch_filter=watch_filter,
            task_id=task_id,
        )
        self._subscriptions[subscription.id] = subscription
        logger.info(
            "SUBSCRIBER_REGISTERED id=%s task_id=%s filter=%s",
            subscription.id,
            task_id,
            subscription.filter,
        )
        return subscription

    def deregister(
        self,
        subscription: Subscription,
        state: SubscriptionState = SubscriptionState.CANCELLED,
    ) -> None:
        self._subscriptions.pop(subscription.id, None)
        if subscription.close(state):
            logger.info("SUBSCRIBER_CLOSED id=%s reason=%s", subscription.id, state.value)

    def get(self, subscription_id: int) -> Optional[Subscription]:
        return self._subscriptions.get(subscription_id)

    def watchers(self) -> List[Subscription]:
        return [sub for sub in self._subscriptions.values() if not sub.is_task_details]

    def task_watchers(self) -> List[Subscription]:
        return [sub for sub in self._subscriptions.values() if sub.is_task_details]

    def min_watermark(self) -> Optional[int]:
        watermarks = [sub.watermark for sub in self.watchers()]
        return min(watermarks) if watermarks else None

    def offer(self, subscription: Subscription, update: Any, *, revision: Optional[int] = None) -> bool:
        """Enqueue without waiting; returns False if the subscriber is (now) closed."""
        if subscription.is_terminal:
            return False

        queue = subscription.queue
        if queue.full():
            displaced = _coalesce_head(queue)
            if displaced is not None:
                update = update.absorb(displaced)
            subscription.coalesced_total += 1
            subscription.lag_ticks += 1
            if subscription.lag_ticks > self.slow_consumer_threshold:
                self.closed_too_slow_total += 1
                logger.warning(
                    "SUBSCRIBER_TOO_SLOW id=%s lag_ticks=%s capacity=%s",
                    subscription.id,
                    subscription.lag_ticks,
                    subscription.capacity,
                )
                self.deregister(subscription, SubscriptionState.CLOSED_TOO_SLOW)
                return False
        else:
            subscription.lag_ticks = 0

        subscription.seq += 1
        update.seq = subscription.seq
        queue.put_nowait(update)
        subscription.delivered_total += 1
        if revision is not None:
            subscription.watermark = revision
        subscription.mark_streaming()
        return True

    def close_all(self, state: SubscriptionState = SubscriptionState.CLOSED_SHUTDOWN) -> None:
        for subscription in list(self._subscriptions.values()):
            self.deregister(subscription, state)


def _coalesce_head(queue: "asyncio.Queue[Any]") -> Optional[Any]:
    """Free one slot by folding the oldest queued update into its successor.

    Delivery order is preserved: the merged update takes the head position.
    With a single queued update there is no successor, so it is returned for
    the caller to fold into the incoming one.
    """
    pending = []
    while not queue.empty():
        pending.append(queue.get_nowait())
    if len(pending) == 1:
        return pending[0]
    if pending:
        pending[1] = pending[1].absorb(pending[0])
    for item in pending[1:]:
        queue.put_nowait(item)
    return None
