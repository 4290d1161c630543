from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from taskwatch.entities import Entity, Task
from taskwatch.events import TimeAnchor
from taskwatch.store import AggregatorStore

from .models import TEMPORALITY_LIVE, Diagnostics, TaskDetails, WatchUpdate, utc_now_iso
from .registry import Subscription, SubscriptionRegistry, SubscriptionState

logger = logging.getLogger("taskwatch.publisher")


@dataclass(slots=True)
class PendingUpdate:
    """Mergeable per-subscriber update; serialized only when delivered."""

    revision: int
    now: str
    snapshot: bool = False
    temporality: str = TEMPORALITY_LIVE
    records: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    new_ids: Set[int] = field(default_factory=set)
    dropped_ids: Set[int] = field(default_factory=set)
    evicted_ids: Set[int] = field(default_factory=set)
    diagnostics: Dict[str, int] = field(default_factory=dict)
    seq: int = 0
    coalesced: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.records or self.dropped_ids or self.evicted_ids or self.snapshot)

    def absorb(self, older: "PendingUpdate") -> "PendingUpdate":
        """Fold an older, undelivered update into this one (newest state wins)."""
        records = dict(older.records)
        records.update(self.records)
        new_ids = older.new_ids | self.new_ids
        dropped_ids = older.dropped_ids | self.dropped_ids
        evicted_ids = older.evicted_ids | self.evicted_ids

        for entity_id in evicted_ids:
            records.pop(entity_id, None)
        # Created and evicted inside the merged window: the client never saw it.
        for entity_id in new_ids & evicted_ids:
            dropped_ids.discard(entity_id)
            evicted_ids.discard(entity_id)
        new_ids -= older.evicted_ids | self.evicted_ids

        self.records = records
        self.new_ids = new_ids
        self.dropped_ids = dropped_ids
        self.evicted_ids = evicted_ids
        self.snapshot = self.snapshot or older.snapshot
        self.coalesced += older.coalesced + 1
        return self

    def to_model(self) -> WatchUpdate:
        new_entities: List[Dict[str, Any]] = []
        stats_updates: List[Dict[str, Any]] = []
        for entity_id in sorted(self.records):
            record = self.records[entity_id]
            if entity_id in self.new_ids:
                new_entities.append(record)
            else:
                stats_updates.append(
                    {
                        "id": record["id"],
                        "kind": record["kind"],
                        "fields": record["fields"],
                        "stats": record["stats"],
                    }
                )
        return WatchUpdate(
            seq=self.seq,
            snapshot=self.snapshot,
            coalesced=self.coalesced,
            now=self.now,
            temporality=self.temporality,
            new_entities=new_entities,
            stats_updates=stats_updates,
            dropped_ids=sorted(self.dropped_ids),
            evicted_ids=sorted(self.evicted_ids),
            diagnostics=Diagnostics(**self.diagnostics),
        )


@dataclass(slots=True)
class PendingTaskDetails:
    task_id: int
    now: str
    poll_count: int
    busy_time: float
    histogram: Dict[str, Any]
    seq: int = 0
    coalesced: int = 0

    def absorb(self, older: "PendingTaskDetails") -> "PendingTaskDetails":
        self.coalesced += older.coalesced + 1
        return self

    def to_model(self) -> TaskDetails:
        return TaskDetails(
            seq=self.seq,
            task_id=self.task_id,
            now=self.now,
            poll_count=self.poll_count,
            busy_time=self.busy_time,
            poll_times_histogram=self.histogram,
        )


class UpdatePublisher:
    """Builds snapshot/delta updates from the store for each subscriber."""

    def __init__(
        self,
        *,
        store: AggregatorStore,
        registry: SubscriptionRegistry,
        anchor: TimeAnchor,
    ) -> None:
        self._store = store
        self._registry = registry
        self._anchor = anchor

    def send_snapshot(self, subscription: Subscription, *, now: float, diagnostics: Dict[str, int], temporality: str) -> bool:
        revision = self._store.revision
        update = PendingUpdate(
            revision=revision,
            now=self._anchor.to_iso(now) or utc_now_iso(),
            snapshot=True,
            temporality=temporality,
            diagnostics=dict(diagnostics),
        )
        for entity in self._store.snapshot():
            if not subscription.filter.matches(entity, self._store.resolve):
                continue
            update.records[entity.id] = entity.to_record(self._anchor, now)
            update.new_ids.add(entity.id)
        sent_ids = set(update.new_ids)
        if not self._registry.offer(subscription, update, revision=revision):
            return False
        subscription.remember(sent_ids)
        return True

    def send_task_details(self, subscription: Subscription, *, now: float) -> bool:
        task = self._store.get(subscription.task_id) if subscription.task_id is not None else None
        if not isinstance(task, Task):
            self._registry.deregister(subscription, SubscriptionState.CLOSED_NOT_FOUND)
            return False
        details = PendingTaskDetails(
            task_id=task.id,
            now=self._anchor.to_iso(now) or utc_now_iso(),
            poll_count=task.poll_count,
            busy_time=task.busy_time(now),
            histogram=task.poll_histogram.to_dict(),
        )
        return self._registry.offer(subscription, details, revision=self._store.revision)

    def publish(
        self,
        *,
        now: float,
        evicted: Iterable[Entity],
        diagnostics: Dict[str, int],
        temporality: str,
    ) -> int:
        """Offer one update to every watcher; returns how many were enqueued."""
        revision = self._store.revision
        now_iso = self._anchor.to_iso(now) or utc_now_iso()
        evicted_list = list(evicted)
        changed_by_watermark: Dict[int, List[Entity]] = {}
        delivered = 0

        for subscription in self._registry.watchers():
            changed = changed_by_watermark.get(subscription.watermark)
            if changed is None:
                changed = self._store.changed_since(subscription.watermark)
                changed_by_watermark[subscription.watermark] = changed
            update = self._build(subscription, changed, evicted_list, now, now_iso, revision, diagnostics, temporality)
            new_ids, evicted_ids = set(update.new_ids), set(update.evicted_ids)
            if self._registry.offer(subscription, update, revision=revision):
                subscription.remember(new_ids, evicted_ids)
                delivered += 1

        for subscription in self._registry.task_watchers():
            if self.send_task_details(subscription, now=now):
                delivered += 1

        if changed_by_watermark:
            logger.debug(
                "PUBLISH revision=%s watchers=%d watermarks=%d evicted=%d",
                revision,
                len(self._registry),
                len(changed_by_watermark),
                len(evicted_list),
            )
        return delivered

    def _build(
        self,
        subscription: Subscription,
        changed: List[Entity],
        evicted: List[Entity],
        now: float,
        now_iso: str,
        revision: int,
        diagnostics: Dict[str, int],
        temporality: str,
    ) -> PendingUpdate:
        watermark = subscription.watermark
        known_ids = subscription.known_ids
        watch_filter = subscription.filter
        update = PendingUpdate(
            revision=revision,
            now=now_iso,
            temporality=temporality,
            diagnostics=dict(diagnostics),
        )
        for entity in changed:
            if not watch_filter.matches(entity, self._store.resolve):
                continue
            update.records[entity.id] = entity.to_record(self._anchor, now)
            if entity.id not in known_ids:
                update.new_ids.add(entity.id)
            if entity.dropped_rev > watermark:
                update.dropped_ids.add(entity.id)
        for entity in evicted:
            if entity.id in known_ids:
                update.evicted_ids.add(entity.id)
        return update
