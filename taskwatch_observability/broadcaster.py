from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from taskwatch.entities import Entity, Task
from taskwatch.events import TimeAnchor
from taskwatch.ingest import IngestionChannel
from taskwatch.retention import RetentionManager
from taskwatch.store import AggregatorStore, InvariantViolation

from .models import TEMPORALITY_LIVE, TEMPORALITY_PAUSED, ConsoleState, Diagnostics, WatchFilter
from .publisher import UpdatePublisher
from .registry import Subscription, SubscriptionRegistry, SubscriptionState

logger = logging.getLogger("taskwatch.broadcaster")


class WatchBroadcaster:
    """Single-writer tick loop: drain ingestion, fold, retain, publish."""

    def __init__(
        self,
        *,
        channel: IngestionChannel,
        store: AggregatorStore,
        registry: SubscriptionRegistry,
        publish_interval: float = 1.0,
        retention: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
        on_fatal: Optional[Callable[[BaseException], Any]] = None,
    ) -> None:
        self._channel = channel
        self._store = store
        self._registry = registry
        self._clock = clock
        self._publish_interval = max(0.01, float(publish_interval))
        self._retention = RetentionManager(retention)
        self._publisher = UpdatePublisher(store=store, registry=registry, anchor=TimeAnchor.now(clock))
        self._on_fatal = on_fatal
        self._tasks: List[asyncio.Task[Any]] = []
        self._running = False
        self._paused = False
        self._flush_requested: Optional[asyncio.Event] = None
        self._pending_evicted: Dict[int, Entity] = {}
        self.failure: Optional[BaseException] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def temporality(self) -> str:
        return TEMPORALITY_PAUSED if self._paused else TEMPORALITY_LIVE

    async def start(self) -> None:
        if self._running:
            return

        loop = asyncio.get_running_loop()
        flush_requested = asyncio.Event()
        self._flush_requested = flush_requested

        def _request_flush() -> None:
            loop.call_soon_threadsafe(flush_requested.set)

        self._channel.set_flush_notifier(_request_flush)
        self._running = True
        self._tasks = [asyncio.create_task(self._tick_loop(), name="taskwatch-tick")]
        logger.info(
            "BROADCASTER_START publish_interval=%s retention=%s",
            self._publish_interval,
            self._retention.linger,
        )

    async def stop(self) -> None:
        if not self._running and not self._tasks:
            return

        self._running = False
        self._channel.set_flush_notifier(None)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._registry.close_all(SubscriptionState.CLOSED_SHUTDOWN)
        logger.info("BROADCASTER_STOP ticks=%s", self.ticks)

    def subscribe(self, watch_filter: Optional[WatchFilter] = None) -> Subscription:
        self.drain()
        subscription = self._registry.register(watch_filter)
        self._publisher.send_snapshot(
            subscription,
            now=self._clock(),
            diagnostics=self.diagnostics(),
            temporality=self.temporality,
        )
        return subscription

    def subscribe_task_details(self, task_id: int) -> Optional[Subscription]:
        self.drain()
        if not isinstance(self._store.get(task_id), Task):
            return None
        subscription = self._registry.register(task_id=task_id)
        self._publisher.send_task_details(subscription, now=self._clock())
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._registry.deregister(subscription, SubscriptionState.CANCELLED)

    def pause(self) -> None:
        if not self._paused:
            self._paused = True
            logger.info("TEMPORALITY_CHANGED temporality=%s", self.temporality)

    def resume(self) -> None:
        if self._paused:
            self._paused = False
            logger.info("TEMPORALITY_CHANGED temporality=%s", self.temporality)

    def drain(self) -> int:
        """Fold the ingestion backlog into the store.

        Every drained event is applied even when one of them violates a store
        invariant; the first violation is then treated as fatal and re-raised.
        """
        if self.failure is not None:
            raise self.failure
        events = self._channel.drain()
        violation: Optional[InvariantViolation] = None
        for event in events:
            try:
                self._store.apply(event)
            except InvariantViolation as exc:
                if violation is None:
                    violation = exc
        if violation is not None:
            self._fail(violation)
            raise violation
        return len(events)

    def _fail(self, exc: BaseException) -> None:
        if self.failure is not None:
            return
        self.failure = exc
        self._running = False
        logger.critical("AGGREGATOR_INVARIANT_VIOLATED error=%s", exc)
        self._registry.close_all(SubscriptionState.CLOSED_SHUTDOWN)
        if self._on_fatal is not None:
            self._on_fatal(exc)

    def tick(self) -> int:
        """One publish cycle: fold pending events, evict, then publish."""
        self.drain()
        now = self._clock()
        has_watchers = bool(self._registry.watchers())
        evicted = self._retention.run(
            self._store,
            now,
            published_through=self._registry.min_watermark() if has_watchers else None,
        )
        self.ticks += 1
        if not has_watchers:
            self._pending_evicted.clear()
            return 0
        for entity in evicted:
            self._pending_evicted[entity.id] = entity
        if self._paused:
            return 0

        pending_evicted = list(self._pending_evicted.values())
        self._pending_evicted.clear()
        return self._publisher.publish(
            now=now,
            evicted=pending_evicted,
            diagnostics=self.diagnostics(),
            temporality=self.temporality,
        )

    def diagnostics(self) -> Dict[str, int]:
        counts = self._store.diagnostics()
        counts["malformed_event_count"] += self._channel.rejected_event_count
        counts["dropped_event_count"] = self._channel.dropped_event_count
        return counts

    def state(self) -> ConsoleState:
        return ConsoleState(
            temporality=self.temporality,
            running=self._running and self.failure is None,
            subscribers=len(self._registry),
            tracked_entities=len(self._store),
            revision=self._store.revision,
            event_queue_size=self._channel.qsize(),
            diagnostics=Diagnostics(**self.diagnostics()),
        )

    async def _tick_loop(self) -> None:
        loop = asyncio.get_running_loop()
        flush_requested = self._flush_requested
        next_tick = loop.time() + self._publish_interval
        while self._running:
            timeout = max(0.0, next_tick - loop.time())
            flushed = False
            if flush_requested is not None:
                try:
                    await asyncio.wait_for(flush_requested.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass
                if flush_requested.is_set():
                    flush_requested.clear()
                    flushed = True
            else:
                await asyncio.sleep(timeout)

            due = loop.time() >= next_tick
            try:
                if due:
                    self.tick()
                elif flushed:
                    drained = self.drain()
                    logger.debug("FLUSH_EARLY drained=%d", drained)
            except asyncio.CancelledError:
                raise
            except InvariantViolation as exc:
                self._fail(exc)
                raise
            except Exception:
                logger.exception("TICK_FAILED tick=%s", self.ticks)
            if due:
                next_tick = loop.time() + self._publish_interval
