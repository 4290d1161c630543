from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Union

from .entities import UNKNOWN, AsyncOp, Entity, Resource, Task, _Unknown
from .events import (
    AsyncOpNew,
    Drop,
    EventKind,
    FieldUpdate,
    PollEnd,
    PollStart,
    ResourceNew,
    Spawn,
    Wake,
    WakerClone,
    WakerDrop,
)

logger = logging.getLogger("taskwatch.store")


class InvariantViolation(RuntimeError):
    """Raised when folding would corrupt the entity table."""


class AggregatorStore:
    """Authoritative entity table; every mutation goes through ``apply``.

    Exactly one consumer may call ``apply``/``apply_all``/``evict``. Readers get
    entity objects they must treat as read-only, or serialized records.
    """

    def __init__(self) -> None:
        self._entities: Dict[int, Entity] = {}
        self.revision = 0
        self.events_applied = 0
        self.malformed_event_count = 0
        self.unknown_id_event_count = 0
        self.waker_underflow_count = 0
        self.discarded_poll_count = 0
        self._handlers: Dict[EventKind, Callable[[Any, int], bool]] = {
            EventKind.SPAWN: self._on_spawn,
            EventKind.RESOURCE_NEW: self._on_resource_new,
            EventKind.ASYNC_OP_NEW: self._on_async_op_new,
            EventKind.POLL_START: self._on_poll_start,
            EventKind.POLL_END: self._on_poll_end,
            EventKind.WAKE: self._on_wake,
            EventKind.WAKER_CLONE: self._on_waker_clone,
            EventKind.WAKER_DROP: self._on_waker_drop,
            EventKind.FIELD_UPDATE: self._on_field_update,
            EventKind.DROP: self._on_drop,
        }

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entities

    def apply(self, event: Any) -> bool:
        """Fold one event; returns True when the entity table changed."""
        self.events_applied += 1
        handler = self._handlers.get(getattr(event, "kind", None))
        if handler is None:
            self.malformed_event_count += 1
            return False
        revision = self.revision + 1
        changed = handler(event, revision)
        if changed:
            self.revision = revision
        return changed

    def apply_all(self, events: Iterable[Any]) -> int:
        changed = 0
        for event in events:
            if self.apply(event):
                changed += 1
        return changed

    def get(self, entity_id: int) -> Optional[Entity]:
        return self._entities.get(entity_id)

    def resolve(self, entity_id: Optional[int]) -> Union[Entity, _Unknown]:
        """Look up a weak reference; a missing target is UNKNOWN, not an error."""
        if entity_id is None:
            return UNKNOWN
        entity = self._entities.get(entity_id)
        return entity if entity is not None else UNKNOWN

    def snapshot(self) -> List[Entity]:
        return list(self._entities.values())

    def changed_since(self, revision: int) -> List[Entity]:
        return [entity for entity in self._entities.values() if entity.updated_rev > revision]

    def completed(self) -> Iterator[Entity]:
        for entity in self._entities.values():
            if entity.dropped_at is not None:
                yield entity

    def evict(self, entity_ids: Iterable[int]) -> List[Entity]:
        evicted: List[Entity] = []
        for entity_id in entity_ids:
            entity = self._entities.get(entity_id)
            if entity is None:
                continue
            if entity.dropped_at is None:
                raise InvariantViolation(f"refusing to evict live entity id={entity_id}")
            evicted.append(self._entities.pop(entity_id))
        return evicted

    def diagnostics(self) -> Dict[str, int]:
        return {
            "malformed_event_count": self.malformed_event_count,
            "unknown_id_event_count": self.unknown_id_event_count,
            "waker_underflow_count": self.waker_underflow_count,
            "discarded_poll_count": self.discarded_poll_count,
        }

    def _insert(self, entity: Entity, revision: int) -> bool:
        existing = self._entities.get(entity.id)
        if existing is not None:
            raise InvariantViolation(
                f"entity id={entity.id} already tracked as {existing.kind.value}; "
                f"cannot register {entity.kind.value}"
            )
        entity.created_rev = revision
        entity.updated_rev = revision
        self._entities[entity.id] = entity
        return True

    def _lookup(self, entity_id: int) -> Optional[Entity]:
        entity = self._entities.get(entity_id)
        if entity is None:
            self.unknown_id_event_count += 1
        return entity

    def _lookup_task(self, entity_id: int) -> Optional[Task]:
        entity = self._lookup(entity_id)
        if entity is None:
            return None
        if not isinstance(entity, Task):
            self.malformed_event_count += 1
            return None
        return entity

    def _on_spawn(self, event: Spawn, revision: int) -> bool:
        task = Task(
            id=event.id,
            created_at=event.at,
            fields=dict(event.fields),
            location=event.location,
            name=event.name,
        )
        return self._insert(task, revision)

    def _on_resource_new(self, event: ResourceNew, revision: int) -> bool:
        resource = Resource(
            id=event.id,
            created_at=event.at,
            fields=dict(event.fields),
            location=event.location,
            kind_name=str(event.resource_kind),
            concrete_type=str(event.concrete_type),
            is_internal=bool(event.is_internal),
            parent_id=event.parent_id,
        )
        return self._insert(resource, revision)

    def _on_async_op_new(self, event: AsyncOpNew, revision: int) -> bool:
        async_op = AsyncOp(
            id=event.id,
            created_at=event.at,
            fields=dict(event.fields),
            location=event.location,
            resource_id=event.resource_id,
            parent_task_id=event.parent_task_id,
            op_kind=str(event.op_kind),
        )
        return self._insert(async_op, revision)

    def _on_poll_start(self, event: PollStart, revision: int) -> bool:
        task = self._lookup_task(event.id)
        if task is None:
            return False
        if task.is_completed:
            self.malformed_event_count += 1
            return False
        if task.first_poll_at is None:
            task.first_poll_at = event.at
        if task.woken_since_poll and task.last_wake_at is not None:
            task.scheduled_count += 1
            task.scheduled_total_time += max(0.0, event.at - task.last_wake_at)
        task.woken_since_poll = False
        task.last_poll_started_at = event.at
        task.poll_count += 1
        task.updated_rev = revision
        return True

    def _on_poll_end(self, event: PollEnd, revision: int) -> bool:
        task = self._lookup_task(event.id)
        if task is None:
            return False
        started = task.last_poll_started_at
        if started is None:
            self.malformed_event_count += 1
            return False
        elapsed = max(0.0, event.at - started)
        task.poll_total_time += elapsed
        task.poll_histogram.record(elapsed)
        task.last_poll_started_at = None
        task.last_poll_ended_at = event.at
        task.updated_rev = revision
        return True

    def _on_wake(self, event: Wake, revision: int) -> bool:
        task = self._lookup_task(event.id)
        if task is None:
            return False
        task.wake_count += 1
        if event.self_wake:
            task.self_wake_count += 1
        if task.last_wake_at is None or event.at > task.last_wake_at:
            task.last_wake_at = event.at
        task.woken_since_poll = True
        task.updated_rev = revision
        return True

    def _on_waker_clone(self, event: WakerClone, revision: int) -> bool:
        task = self._lookup_task(event.id)
        if task is None:
            return False
        task.waker_clones += 1
        task.waker_refs += 1
        task.updated_rev = revision
        return True

    def _on_waker_drop(self, event: WakerDrop, revision: int) -> bool:
        task = self._lookup_task(event.id)
        if task is None:
            return False
        task.waker_drops += 1
        if task.waker_refs == 0:
            self.waker_underflow_count += 1
            self.malformed_event_count += 1
        else:
            task.waker_refs -= 1
        task.updated_rev = revision
        return True

    def _on_field_update(self, event: FieldUpdate, revision: int) -> bool:
        entity = self._lookup(event.id)
        if entity is None:
            return False
        key = str(event.key)
        current = entity.fields.get(key)
        if key in entity.fields and type(current) is type(event.value) and current == event.value:
            return False
        entity.fields[key] = event.value
        entity.updated_rev = revision
        return True

    def _on_drop(self, event: Drop, revision: int) -> bool:
        entity = self._lookup(event.id)
        if entity is None:
            return False
        if entity.dropped_at is not None:
            return False
        if isinstance(entity, Task) and entity.last_poll_started_at is not None:
            self.discarded_poll_count += 1
            logger.debug("POLL_DISCARDED task=%s", entity.id)
            entity.last_poll_started_at = None
        entity.dropped_at = event.at
        entity.dropped_rev = revision
        entity.updated_rev = revision
        return True
