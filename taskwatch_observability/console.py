from __future__ import annotations

from typing import Any, Callable, Optional

from taskwatch.config import ConsoleConfig
from taskwatch.events import IdAllocator
from taskwatch.ingest import IngestionChannel
from taskwatch.store import AggregatorStore

from .broadcaster import WatchBroadcaster
from .registry import SubscriptionRegistry


class Console:
    """Wires the ingestion channel, store, registry and tick loop together.

    The instrumented runtime only needs ``submit`` and ``next_id``; everything
    else is driven by the broadcaster once ``start`` runs inside an event loop.
    """

    def __init__(
        self,
        config: Optional[ConsoleConfig] = None,
        *,
        on_fatal: Optional[Callable[[BaseException], Any]] = None,
    ) -> None:
        self.config = config or ConsoleConfig()
        self.ids = IdAllocator()
        self.channel = IngestionChannel(self.config.event_buffer_capacity)
        self.store = AggregatorStore()
        self.registry = SubscriptionRegistry(
            buffer_capacity=self.config.client_buffer_capacity,
            slow_consumer_threshold=self.config.slow_consumer_threshold,
        )
        self.broadcaster = WatchBroadcaster(
            channel=self.channel,
            store=self.store,
            registry=self.registry,
            publish_interval=self.config.publish_interval,
            retention=self.config.retention,
            on_fatal=on_fatal,
        )

    def submit(self, event: Any) -> bool:
        return self.channel.submit(event)

    def next_id(self) -> int:
        return self.ids.next_id()

    async def start(self) -> None:
        await self.broadcaster.start()

    async def stop(self) -> None:
        await self.broadcaster.stop()
