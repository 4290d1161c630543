from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, List, Optional

from .events import InstrumentEvent, coerce_event

logger = logging.getLogger("taskwatch.ingest")


class IngestionChannel:
    """Bounded multi-producer / single-consumer event buffer.

    ``submit`` never waits on the consumer and never raises. When the buffer is
    full the *new* event is dropped and counted; queued events are kept.
    """

    def __init__(self, capacity: int = 10240) -> None:
        self.capacity = max(1, int(capacity))
        self._flush_threshold = max(1, self.capacity // 2)
        self._buffer: Deque[InstrumentEvent] = deque()
        self._lock = threading.Lock()
        self._accepted = 0
        self._dropped = 0
        self._rejected = 0
        self._flush_armed = True
        self._flush_notifier: Optional[Callable[[], None]] = None

    def submit(self, event: Any) -> bool:
        try:
            normalized = coerce_event(event)
        except (TypeError, ValueError):
            with self._lock:
                self._rejected += 1
            return False

        notify = False
        with self._lock:
            if len(self._buffer) >= self.capacity:
                self._dropped += 1
                return False
            self._buffer.append(normalized)
            self._accepted += 1
            if self._flush_armed and len(self._buffer) >= self._flush_threshold:
                self._flush_armed = False
                notify = True

        if notify:
            self._notify_flush()
        return True

    def drain(self, max_items: Optional[int] = None) -> List[InstrumentEvent]:
        with self._lock:
            if max_items is None or max_items >= len(self._buffer):
                drained = list(self._buffer)
                self._buffer.clear()
            else:
                drained = [self._buffer.popleft() for _ in range(max(0, int(max_items)))]
            if len(self._buffer) < self._flush_threshold:
                self._flush_armed = True
        return drained

    def set_flush_notifier(self, notifier: Optional[Callable[[], None]]) -> None:
        self._flush_notifier = notifier

    def qsize(self) -> int:
        with self._lock:
            return len(self._buffer)

    @property
    def accepted_event_count(self) -> int:
        return self._accepted

    @property
    def dropped_event_count(self) -> int:
        return self._dropped

    @property
    def rejected_event_count(self) -> int:
        return self._rejected

    def _notify_flush(self) -> None:
        notifier = self._flush_notifier
        if notifier is None:
            return
        try:
            notifier()
        except Exception:
            logger.debug("FLUSH_NOTIFY_FAILED", exc_info=True)
