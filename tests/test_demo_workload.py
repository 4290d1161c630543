from __future__ import annotations

import time
import unittest

from taskwatch.demo import SyntheticWorkload
from taskwatch.entities import AsyncOp, Resource, Task
from taskwatch.events import IdAllocator
from taskwatch.ingest import IngestionChannel
from taskwatch.store import AggregatorStore


class TestSyntheticWorkload(unittest.TestCase):
    def test_workers_emit_well_formed_event_streams(self) -> None:
        channel = IngestionChannel(capacity=100_000)
        workload = SyntheticWorkload(
            channel.submit,
            ids=IdAllocator(),
            workers=3,
            max_live_tasks=4,
            step_interval=0.001,
            seed=7,
        )
        workload.start()
        time.sleep(0.2)
        workload.stop()

        store = AggregatorStore()
        store.apply_all(channel.drain())
        diagnostics = store.diagnostics()

        self.assertEqual(workload.rejected, 0)
        self.assertEqual(diagnostics["malformed_event_count"], 0)
        self.assertEqual(diagnostics["unknown_id_event_count"], 0)
        self.assertEqual(diagnostics["waker_underflow_count"], 0)
        entities = store.snapshot()
        self.assertEqual(sum(isinstance(entity, Resource) for entity in entities), 12)
        self.assertTrue(any(isinstance(entity, Task) and entity.poll_count > 0 for entity in entities))
        self.assertTrue(all(entity.is_completed for entity in entities))
        for entity in entities:
            if isinstance(entity, AsyncOp):
                self.assertIsInstance(store.resolve(entity.resource_id), Resource)


if __name__ == "__main__":
    unittest.main()
