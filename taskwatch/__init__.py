"""taskwatch: live aggregation of task-scheduler instrumentation events."""

from .config import ConsoleConfig
from .entities import UNKNOWN, AsyncOp, Entity, EntityKind, LifecycleState, Resource, Task
from .events import (
    AsyncOpNew,
    Drop,
    EventKind,
    FieldUpdate,
    IdAllocator,
    Location,
    PollEnd,
    PollStart,
    ResourceNew,
    Spawn,
    Wake,
    WakerClone,
    WakerDrop,
    coerce_event,
)
from .ingest import IngestionChannel
from .retention import RetentionManager
from .store import AggregatorStore, InvariantViolation

__all__ = [
    "AggregatorStore",
    "AsyncOp",
    "AsyncOpNew",
    "ConsoleConfig",
    "Drop",
    "Entity",
    "EntityKind",
    "EventKind",
    "FieldUpdate",
    "IdAllocator",
    "IngestionChannel",
    "InvariantViolation",
    "LifecycleState",
    "Location",
    "PollEnd",
    "PollStart",
    "Resource",
    "ResourceNew",
    "RetentionManager",
    "Spawn",
    "Task",
    "UNKNOWN",
    "Wake",
    "WakerClone",
    "WakerDrop",
    "coerce_event",
]
