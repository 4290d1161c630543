from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from taskwatch.entities import AsyncOp, Entity, EntityKind, Resource

MESSAGE_UPDATE = "update"
MESSAGE_TASK_DETAILS = "task_details"
MESSAGE_CLOSED = "closed"

TEMPORALITY_LIVE = "live"
TEMPORALITY_PAUSED = "paused"

_ENTITY_KINDS = {kind.value for kind in EntityKind}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Diagnostics(BaseModel):
    dropped_event_count: int = 0
    malformed_event_count: int = 0
    unknown_id_event_count: int = 0
    waker_underflow_count: int = 0
    discarded_poll_count: int = 0

    class Config:
        extra = "ignore"


class WatchFilter(BaseModel):
    """Subscriber-side view restriction supplied when a watch starts."""

    kinds: Optional[List[str]] = None
    ids: Optional[List[int]] = None
    include_internal: bool = False

    class Config:
        extra = "ignore"

    @classmethod
    def from_query(cls, params: Mapping[str, Any]) -> "WatchFilter":
        """Parse query params; unusable kinds or ids leave that dimension unrestricted."""
        kinds = _split_csv(params.get("kinds"))
        normalized_kinds = [kind.lower() for kind in kinds if kind.lower() in _ENTITY_KINDS] if kinds else None
        if not normalized_kinds:
            normalized_kinds = None

        ids: Optional[List[int]] = None
        raw_ids = _split_csv(params.get("ids"))
        if raw_ids:
            ids = []
            for raw in raw_ids:
                try:
                    ids.append(int(raw))
                except ValueError:
                    continue

        include_internal = str(params.get("include_internal", "")).strip().lower() in {"1", "true", "yes", "on"}
        return cls(kinds=normalized_kinds, ids=ids or None, include_internal=include_internal)

    def matches(self, entity: Entity, resolve: Optional[Any] = None) -> bool:
        if self.kinds is not None and entity.kind.value not in self.kinds:
            return False
        if self.ids is not None and entity.id not in self.ids:
            return False
        if self.include_internal:
            return True
        if isinstance(entity, Resource):
            return not entity.is_internal
        if isinstance(entity, AsyncOp) and resolve is not None:
            target = resolve(entity.resource_id)
            return not (isinstance(target, Resource) and target.is_internal)
        return True


class WatchUpdate(BaseModel):
    type: str = MESSAGE_UPDATE
    seq: int = 0
    snapshot: bool = False
    coalesced: int = 0
    now: str = Field(default_factory=utc_now_iso)
    temporality: str = TEMPORALITY_LIVE
    new_entities: List[Dict[str, Any]] = Field(default_factory=list)
    stats_updates: List[Dict[str, Any]] = Field(default_factory=list)
    dropped_ids: List[int] = Field(default_factory=list)
    evicted_ids: List[int] = Field(default_factory=list)
    diagnostics: Diagnostics = Field(default_factory=Diagnostics)

    class Config:
        extra = "ignore"


class TaskDetails(BaseModel):
    type: str = MESSAGE_TASK_DETAILS
    seq: int = 0
    task_id: int
    now: str = Field(default_factory=utc_now_iso)
    poll_count: int = 0
    busy_time: float = 0.0
    poll_times_histogram: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        extra = "ignore"


class ClosedMessage(BaseModel):
    type: str = MESSAGE_CLOSED
    reason: str
    now: str = Field(default_factory=utc_now_iso)

    class Config:
        extra = "ignore"


class ConsoleState(BaseModel):
    temporality: str = TEMPORALITY_LIVE
    running: bool = False
    subscribers: int = 0
    tracked_entities: int = 0
    revision: int = 0
    event_queue_size: int = 0
    diagnostics: Diagnostics = Field(default_factory=Diagnostics)
    timestamp: str = Field(default_factory=utc_now_iso)

    class Config:
        extra = "ignore"


def model_to_dict(model: object) -> dict:
    dump = getattr(model, "model_dump", None)
    if callable(dump):
        return dict(dump())
    as_dict = getattr(model, "dict", None)
    if callable(as_dict):
        return dict(as_dict())
    return dict(model)  # type: ignore[arg-type]


def _split_csv(value: Any) -> List[str]:
    if value is None:
        return []
    return [part.strip() for part in str(value).split(",") if part.strip()]
