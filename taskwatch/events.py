from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from itertools import count
from typing import Any, ClassVar, Dict, Mapping, Optional, Union

FieldValue = Union[str, int, float, bool, timedelta]


def monotonic_now() -> float:
    return time.monotonic()


class EventKind(str, Enum):
    SPAWN = "SPAWN"
    RESOURCE_NEW = "RESOURCE_NEW"
    ASYNC_OP_NEW = "ASYNC_OP_NEW"
    POLL_START = "POLL_START"
    POLL_END = "POLL_END"
    WAKE = "WAKE"
    WAKER_CLONE = "WAKER_CLONE"
    WAKER_DROP = "WAKER_DROP"
    FIELD_UPDATE = "FIELD_UPDATE"
    DROP = "DROP"


@dataclass(slots=True, frozen=True)
class Location:
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    module_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "module_path": self.module_path,
        }

    @classmethod
    def coerce(cls, raw: Any) -> Optional["Location"]:
        if raw is None or isinstance(raw, cls):
            return raw
        if not isinstance(raw, Mapping):
            raise ValueError("Location must be a mapping.")
        return cls(
            file=_optional_str(raw.get("file")),
            line=_optional_int(raw.get("line")),
            column=_optional_int(raw.get("column")),
            module_path=_optional_str(raw.get("module_path")),
        )


class _EventDict:
    __slots__ = ()

    kind: ClassVar[EventKind]

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.kind.value}
        for item in fields(self):  # type: ignore[arg-type]
            value = getattr(self, item.name)
            if isinstance(value, Location):
                value = value.to_dict()
            elif item.name == "fields":
                value = {key: encode_field_value(raw) for key, raw in value.items()}
            elif item.name == "value":
                value = encode_field_value(value)
            out[item.name] = value
        return out


@dataclass(slots=True, frozen=True)
class Spawn(_EventDict):
    kind: ClassVar[EventKind] = EventKind.SPAWN

    id: int
    fields: Mapping[str, FieldValue] = field(default_factory=dict)
    location: Optional[Location] = None
    name: Optional[str] = None
    at: float = field(default_factory=monotonic_now)


@dataclass(slots=True, frozen=True)
class ResourceNew(_EventDict):
    kind: ClassVar[EventKind] = EventKind.RESOURCE_NEW

    id: int
    resource_kind: str
    fields: Mapping[str, FieldValue] = field(default_factory=dict)
    parent_id: Optional[int] = None
    concrete_type: str = ""
    is_internal: bool = False
    location: Optional[Location] = None
    at: float = field(default_factory=monotonic_now)


@dataclass(slots=True, frozen=True)
class AsyncOpNew(_EventDict):
    kind: ClassVar[EventKind] = EventKind.ASYNC_OP_NEW

    id: int
    resource_id: int
    parent_task_id: Optional[int]
    op_kind: str
    fields: Mapping[str, FieldValue] = field(default_factory=dict)
    location: Optional[Location] = None
    at: float = field(default_factory=monotonic_now)


@dataclass(slots=True, frozen=True)
class PollStart(_EventDict):
    kind: ClassVar[EventKind] = EventKind.POLL_START

    id: int
    at: float = field(default_factory=monotonic_now)


@dataclass(slots=True, frozen=True)
class PollEnd(_EventDict):
    kind: ClassVar[EventKind] = EventKind.POLL_END

    id: int
    at: float = field(default_factory=monotonic_now)


@dataclass(slots=True, frozen=True)
class Wake(_EventDict):
    kind: ClassVar[EventKind] = EventKind.WAKE

    id: int
    at: float = field(default_factory=monotonic_now)
    self_wake: bool = False


@dataclass(slots=True, frozen=True)
class WakerClone(_EventDict):
    kind: ClassVar[EventKind] = EventKind.WAKER_CLONE

    id: int
    at: float = field(default_factory=monotonic_now)


@dataclass(slots=True, frozen=True)
class WakerDrop(_EventDict):
    kind: ClassVar[EventKind] = EventKind.WAKER_DROP

    id: int
    at: float = field(default_factory=monotonic_now)


@dataclass(slots=True, frozen=True)
class FieldUpdate(_EventDict):
    kind: ClassVar[EventKind] = EventKind.FIELD_UPDATE

    id: int
    key: str
    value: FieldValue
    at: float = field(default_factory=monotonic_now)


@dataclass(slots=True, frozen=True)
class Drop(_EventDict):
    kind: ClassVar[EventKind] = EventKind.DROP

    id: int
    at: float = field(default_factory=monotonic_now)


InstrumentEvent = Union[
    Spawn,
    ResourceNew,
    AsyncOpNew,
    PollStart,
    PollEnd,
    Wake,
    WakerClone,
    WakerDrop,
    FieldUpdate,
    Drop,
]

EVENT_TYPES: Dict[EventKind, type] = {
    EventKind.SPAWN: Spawn,
    EventKind.RESOURCE_NEW: ResourceNew,
    EventKind.ASYNC_OP_NEW: AsyncOpNew,
    EventKind.POLL_START: PollStart,
    EventKind.POLL_END: PollEnd,
    EventKind.WAKE: Wake,
    EventKind.WAKER_CLONE: WakerClone,
    EventKind.WAKER_DROP: WakerDrop,
    EventKind.FIELD_UPDATE: FieldUpdate,
    EventKind.DROP: Drop,
}

_EVENT_CLASSES = tuple(EVENT_TYPES.values())


def coerce_event(raw: Any) -> InstrumentEvent:
    """Normalize a typed event or a ``{"type": ..., "id": ...}`` mapping."""
    if isinstance(raw, _EVENT_CLASSES):
        return raw
    if hasattr(raw, "to_dict") and callable(raw.to_dict):
        raw = raw.to_dict()
    if not isinstance(raw, Mapping):
        raise TypeError("Instrument events must be event records or mappings.")

    raw_type = raw.get("type")
    try:
        kind = raw_type if isinstance(raw_type, EventKind) else EventKind(str(raw_type).strip().upper())
    except ValueError as exc:
        raise ValueError(f"Unknown event type: {raw_type!r}") from exc

    event_cls = EVENT_TYPES[kind]
    kwargs: Dict[str, Any] = {}
    for item in fields(event_cls):
        if item.name not in raw:
            continue
        value = raw[item.name]
        if item.name == "location":
            value = Location.coerce(value)
        elif item.name == "fields":
            if not isinstance(value, Mapping):
                raise ValueError("Event fields must be a mapping.")
            value = {str(key): decode_field_value(raw_value) for key, raw_value in value.items()}
        elif item.name == "value":
            value = decode_field_value(value)
        elif item.name in {"id", "resource_id"}:
            value = _require_id(value, item.name)
        elif item.name in {"parent_id", "parent_task_id"}:
            value = None if value is None else _require_id(value, item.name)
        elif item.name == "at":
            value = float(value)
        kwargs[item.name] = value

    if "id" not in kwargs:
        raise ValueError("Event must include an integer 'id'.")
    try:
        return event_cls(**kwargs)
    except TypeError as exc:
        raise ValueError(f"Invalid {kind.value} event: {exc}") from exc


def encode_field_value(value: Any) -> Any:
    if isinstance(value, timedelta):
        return {"duration_secs": value.total_seconds()}
    return value


def decode_field_value(value: Any) -> FieldValue:
    if isinstance(value, Mapping) and "duration_secs" in value:
        return timedelta(seconds=float(value["duration_secs"]))
    if isinstance(value, (str, int, float, bool, timedelta)):
        return value
    raise ValueError(f"Unsupported field value type: {type(value).__name__}")


class IdAllocator:
    """Thread-safe, process-unique entity id source for instrumented runtimes."""

    def __init__(self, start: int = 1) -> None:
        self._counter = count(start=max(1, int(start)))
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            return next(self._counter)


class TimeAnchor:
    """Pins the monotonic clock to wall-clock time for wire timestamps."""

    def __init__(self, *, monotonic: float, wall: datetime) -> None:
        self.monotonic = float(monotonic)
        self.wall = wall

    @classmethod
    def now(cls, clock=monotonic_now) -> "TimeAnchor":
        return cls(monotonic=clock(), wall=datetime.now(timezone.utc))

    def to_iso(self, at: Optional[float]) -> Optional[str]:
        if at is None:
            return None
        return (self.wall + timedelta(seconds=at - self.monotonic)).isoformat()


def _require_id(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Event '{name}' must be an integer id.")
    return value


def _optional_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _optional_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None
