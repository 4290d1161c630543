from __future__ import annotations

import threading
import unittest
from datetime import datetime, timedelta, timezone

from taskwatch.events import (
    Drop,
    EventKind,
    FieldUpdate,
    IdAllocator,
    Location,
    ResourceNew,
    Spawn,
    TimeAnchor,
    Wake,
    coerce_event,
)


class TestCoerceEvent(unittest.TestCase):
    def test_typed_event_passes_through(self) -> None:
        event = Spawn(id=1, name="worker", at=1.0)
        self.assertIs(coerce_event(event), event)

    def test_mapping_is_normalized(self) -> None:
        event = coerce_event(
            {
                "type": "resource_new",
                "id": 7,
                "resource_kind": "mutex",
                "is_internal": True,
                "fields": {"size": 4, "timeout": {"duration_secs": 1.5}},
                "location": {"file": "app.py", "line": "12"},
                "at": 3,
            }
        )
        self.assertIsInstance(event, ResourceNew)
        self.assertEqual(event.kind, EventKind.RESOURCE_NEW)
        self.assertEqual(event.fields["timeout"], timedelta(seconds=1.5))
        self.assertEqual(event.location, Location(file="app.py", line=12))
        self.assertEqual(event.at, 3.0)
        self.assertTrue(event.is_internal)

    def test_to_dict_round_trips_through_coerce(self) -> None:
        event = FieldUpdate(id=3, key="budget", value=timedelta(milliseconds=5), at=2.0)
        payload = event.to_dict()
        self.assertEqual(payload["type"], "FIELD_UPDATE")
        self.assertEqual(payload["value"], {"duration_secs": 0.005})
        self.assertEqual(coerce_event(payload), event)

    def test_rejects_unknown_type(self) -> None:
        with self.assertRaises(ValueError):
            coerce_event({"type": "TELEPORT", "id": 1})

    def test_rejects_non_integer_id(self) -> None:
        for raw_id in ("1", 1.0, True, None):
            with self.subTest(raw_id=raw_id):
                with self.assertRaises(ValueError):
                    coerce_event({"type": "DROP", "id": raw_id})

    def test_rejects_missing_required_fields(self) -> None:
        with self.assertRaises(ValueError):
            coerce_event({"type": "RESOURCE_NEW", "id": 2})
        with self.assertRaises(ValueError):
            coerce_event({"type": "DROP"})

    def test_rejects_unsupported_field_values(self) -> None:
        with self.assertRaises(ValueError):
            coerce_event({"type": "SPAWN", "id": 1, "fields": {"tags": ["a", "b"]}})

    def test_rejects_non_mapping(self) -> None:
        with self.assertRaises(TypeError):
            coerce_event(["SPAWN", 1])

    def test_wake_keeps_self_wake_flag(self) -> None:
        event = coerce_event({"type": "WAKE", "id": 4, "self_wake": True, "at": 1.0})
        self.assertEqual(event, Wake(id=4, at=1.0, self_wake=True))

    def test_events_are_immutable(self) -> None:
        event = Drop(id=1, at=1.0)
        with self.assertRaises(Exception):
            event.id = 2  # type: ignore[misc]


class TestIdAllocator(unittest.TestCase):
    def test_ids_are_unique_across_threads(self) -> None:
        allocator = IdAllocator()
        seen = []
        lock = threading.Lock()

        def _worker() -> None:
            local = [allocator.next_id() for _ in range(500)]
            with lock:
                seen.extend(local)

        threads = [threading.Thread(target=_worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(seen), 2000)
        self.assertEqual(len(set(seen)), 2000)
        self.assertEqual(min(seen), 1)


class TestTimeAnchor(unittest.TestCase):
    def test_maps_monotonic_offsets_to_wall_clock(self) -> None:
        anchor = TimeAnchor(monotonic=100.0, wall=datetime(2026, 1, 1, tzinfo=timezone.utc))
        self.assertEqual(anchor.to_iso(102.5), "2026-01-01T00:00:02.500000+00:00")
        self.assertIsNone(anchor.to_iso(None))


if __name__ == "__main__":
    unittest.main()
