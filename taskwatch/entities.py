from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .events import FieldValue, Location, TimeAnchor, encode_field_value

_HISTOGRAM_BUCKETS = 64


class EntityKind(str, Enum):
    TASK = "task"
    RESOURCE = "resource"
    ASYNC_OP = "async_op"


class LifecycleState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"


class _Unknown:
    """Resolution result for a weak reference whose target is gone."""

    __slots__ = ()

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNKNOWN"


UNKNOWN = _Unknown()


@dataclass(slots=True)
class PollHistogram:
    """Log2-bucketed histogram of completed poll durations (nanosecond buckets)."""

    buckets: List[int] = field(default_factory=lambda: [0] * _HISTOGRAM_BUCKETS)
    count: int = 0
    min_ns: Optional[int] = None
    max_ns: Optional[int] = None

    def record(self, seconds: float) -> None:
        nanos = max(0, int(seconds * 1_000_000_000))
        index = min(_HISTOGRAM_BUCKETS - 1, max(0, nanos.bit_length() - 1))
        self.buckets[index] += 1
        self.count += 1
        self.min_ns = nanos if self.min_ns is None else min(self.min_ns, nanos)
        self.max_ns = nanos if self.max_ns is None else max(self.max_ns, nanos)

    def percentile(self, quantile: float) -> Optional[float]:
        """Upper bound, in seconds, of the bucket holding the given quantile."""
        if self.count == 0:
            return None
        rank = max(1, int(round(min(max(quantile, 0.0), 1.0) * self.count)))
        seen = 0
        for index, bucket_count in enumerate(self.buckets):
            seen += bucket_count
            if seen >= rank:
                upper_ns = (1 << (index + 1)) - 1
                if self.max_ns is not None:
                    upper_ns = min(upper_ns, self.max_ns)
                return upper_ns / 1_000_000_000
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "min": None if self.min_ns is None else self.min_ns / 1_000_000_000,
            "max": None if self.max_ns is None else self.max_ns / 1_000_000_000,
            "p50": self.percentile(0.5),
            "p90": self.percentile(0.9),
            "p99": self.percentile(0.99),
            "buckets": [
                [(1 << index) / 1_000_000_000, bucket_count]
                for index, bucket_count in enumerate(self.buckets)
                if bucket_count
            ],
        }


@dataclass(slots=True)
class Entity:
    id: int
    created_at: float
    fields: Dict[str, FieldValue] = field(default_factory=dict)
    location: Optional[Location] = None
    dropped_at: Optional[float] = None
    created_rev: int = 0
    updated_rev: int = 0
    dropped_rev: int = 0

    kind = EntityKind.TASK

    @property
    def lifecycle_state(self) -> LifecycleState:
        return LifecycleState.COMPLETED if self.dropped_at is not None else LifecycleState.RUNNING

    @property
    def is_completed(self) -> bool:
        return self.dropped_at is not None

    def to_record(self, anchor: TimeAnchor, now: float) -> Dict[str, Any]:
        record = {
            "id": self.id,
            "kind": self.kind.value,
            "created_at": anchor.to_iso(self.created_at),
            "location": self.location.to_dict() if self.location is not None else None,
            "fields": self.fields_record(),
            "stats": self.stats_record(anchor, now),
        }
        record.update(self._static_record())
        return record

    def fields_record(self) -> List[Dict[str, Any]]:
        return [
            {"name": name, "value": encode_field_value(value), "type": _field_type(value)}
            for name, value in self.fields.items()
        ]

    def stats_record(self, anchor: TimeAnchor, now: float) -> Dict[str, Any]:
        return {
            "lifecycle_state": self.lifecycle_state.value,
            "dropped_at": anchor.to_iso(self.dropped_at),
        }

    def _static_record(self) -> Dict[str, Any]:
        return {}


@dataclass(slots=True)
class Task(Entity):
    name: Optional[str] = None
    poll_count: int = 0
    poll_total_time: float = 0.0
    scheduled_count: int = 0
    scheduled_total_time: float = 0.0
    wake_count: int = 0
    self_wake_count: int = 0
    waker_refs: int = 0
    waker_clones: int = 0
    waker_drops: int = 0
    last_poll_started_at: Optional[float] = None
    first_poll_at: Optional[float] = None
    last_poll_ended_at: Optional[float] = None
    last_wake_at: Optional[float] = None
    woken_since_poll: bool = False
    poll_histogram: PollHistogram = field(default_factory=PollHistogram)

    kind = EntityKind.TASK

    @property
    def is_polling(self) -> bool:
        return self.last_poll_started_at is not None

    def busy_time(self, now: float) -> float:
        """Total poll time, including the in-flight poll if one is running."""
        busy = self.poll_total_time
        if self.last_poll_started_at is not None:
            busy += max(0.0, now - self.last_poll_started_at)
        return busy

    @property
    def run_state(self) -> str:
        if self.is_completed:
            return "completed"
        return "polling" if self.is_polling else "idle"

    @property
    def lost_waker(self) -> bool:
        return (
            not self.is_completed
            and not self.is_polling
            and self.poll_count > 0
            and self.waker_refs == 0
        )

    def stats_record(self, anchor: TimeAnchor, now: float) -> Dict[str, Any]:
        stats = Entity.stats_record(self, anchor, now)
        stats.update(
            {
                "state": self.run_state,
                "poll_count": self.poll_count,
                "poll_total_time": self.poll_total_time,
                "busy_time": self.busy_time(now),
                "scheduled_count": self.scheduled_count,
                "scheduled_total_time": self.scheduled_total_time,
                "wake_count": self.wake_count,
                "self_wake_count": self.self_wake_count,
                "waker_refs": self.waker_refs,
                "waker_clones": self.waker_clones,
                "waker_drops": self.waker_drops,
                "last_poll_started_at": anchor.to_iso(self.last_poll_started_at),
                "first_poll_at": anchor.to_iso(self.first_poll_at),
                "last_poll_ended_at": anchor.to_iso(self.last_poll_ended_at),
                "last_wake_at": anchor.to_iso(self.last_wake_at),
                "lost_waker": self.lost_waker,
            }
        )
        return stats

    def _static_record(self) -> Dict[str, Any]:
        return {"name": self.name}


@dataclass(slots=True)
class Resource(Entity):
    kind_name: str = ""
    concrete_type: str = ""
    is_internal: bool = False
    parent_id: Optional[int] = None

    kind = EntityKind.RESOURCE

    def _static_record(self) -> Dict[str, Any]:
        return {
            "resource_kind": self.kind_name,
            "concrete_type": self.concrete_type,
            "is_internal": self.is_internal,
            "parent_id": self.parent_id,
        }


@dataclass(slots=True)
class AsyncOp(Entity):
    resource_id: int = 0
    parent_task_id: Optional[int] = None
    op_kind: str = ""

    kind = EntityKind.ASYNC_OP

    def _static_record(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "parent_task_id": self.parent_task_id,
            "op_kind": self.op_kind,
        }


def _field_type(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "float"
    if isinstance(value, str):
        return "str"
    return "duration"
