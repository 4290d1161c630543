from __future__ import annotations

import logging
from typing import List, Optional

from .entities import Entity
from .store import AggregatorStore

logger = logging.getLogger("taskwatch.retention")


class RetentionManager:
    """Evicts completed entities once they have lingered past the retention window."""

    def __init__(self, linger: float = 3600.0) -> None:
        self.linger = max(0.0, float(linger))
        self.evicted_total = 0

    def eligible(
        self,
        store: AggregatorStore,
        now: float,
        *,
        published_through: Optional[int] = None,
    ) -> List[int]:
        out: List[int] = []
        for entity in store.completed():
            dropped_at = entity.dropped_at
            if dropped_at is None or now - dropped_at <= self.linger:
                continue
            # Hold back until every live subscriber has received the final state.
            if published_through is not None and entity.updated_rev > published_through:
                continue
            out.append(entity.id)
        return out

    def run(
        self,
        store: AggregatorStore,
        now: float,
        *,
        published_through: Optional[int] = None,
    ) -> List[Entity]:
        evicted = store.evict(self.eligible(store, now, published_through=published_through))
        if evicted:
            self.evicted_total += len(evicted)
            logger.debug("RETENTION_PASS evicted=%d remaining=%d", len(evicted), len(store))
        return evicted
