from __future__ import annotations

import unittest

from taskwatch_observability.watch_client import ClientView, build_watch_uri


def _record(entity_id: int, kind: str = "task", **stats) -> dict:
    return {"id": entity_id, "kind": kind, "fields": [], "stats": dict(stats)}


class TestClientView(unittest.TestCase):
    def test_applies_snapshot_and_deltas(self) -> None:
        view = ClientView()
        view.apply(
            {
                "type": "update",
                "seq": 1,
                "snapshot": True,
                "new_entities": [_record(1, poll_count=0, dropped_at=None), _record(2, "resource", dropped_at=None)],
                "stats_updates": [],
                "evicted_ids": [],
                "diagnostics": {"dropped_event_count": 0},
            }
        )
        view.apply(
            {
                "type": "update",
                "seq": 2,
                "snapshot": False,
                "new_entities": [_record(3, dropped_at=None)],
                "stats_updates": [_record(1, poll_count=4, dropped_at="2026-01-01T00:00:00+00:00")],
                "evicted_ids": [2],
                "temporality": "paused",
                "diagnostics": {"dropped_event_count": 3},
            }
        )
        self.assertEqual(sorted(view.entities), [1, 3])
        self.assertEqual(view.entities[1]["stats"]["poll_count"], 4)
        self.assertEqual([record["id"] for record in view.live("task")], [3])
        self.assertEqual(view.temporality, "paused")
        self.assertEqual(view.summary()["diagnostics"], {"dropped_event_count": 3})
        self.assertEqual(view.gaps, 0)

    def test_snapshot_replaces_previous_view(self) -> None:
        view = ClientView()
        view.apply({"type": "update", "seq": 1, "snapshot": True, "new_entities": [_record(1)]})
        view.apply({"type": "update", "seq": 2, "snapshot": True, "new_entities": [_record(5)]})
        self.assertEqual(sorted(view.entities), [5])

    def test_counts_sequence_gaps_and_orphan_stats(self) -> None:
        view = ClientView()
        view.apply({"type": "update", "seq": 1, "snapshot": True})
        view.apply({"type": "update", "seq": 3, "stats_updates": [_record(9)]})
        self.assertEqual(view.gaps, 2)
        self.assertNotIn(9, view.entities)

    def test_closed_message_records_reason(self) -> None:
        view = ClientView()
        view.apply({"type": "closed", "reason": "too_slow"})
        self.assertEqual(view.closed_reason, "too_slow")

    def test_task_details_message(self) -> None:
        view = ClientView()
        view.apply({"type": "task_details", "seq": 1, "task_id": 4, "poll_count": 2})
        self.assertEqual(view.task_details["task_id"], 4)
        self.assertEqual(view.entities, {})


class TestBuildWatchUri(unittest.TestCase):
    def test_watch_uri_with_filters(self) -> None:
        uri = build_watch_uri("ws://127.0.0.1:6669/", kinds="task,resource", include_internal=True)
        self.assertEqual(uri, "ws://127.0.0.1:6669/ws/watch?kinds=task%2Cresource&include_internal=true")

    def test_plain_and_task_uris(self) -> None:
        self.assertEqual(build_watch_uri("ws://host:1"), "ws://host:1/ws/watch")
        self.assertEqual(build_watch_uri("ws://host:1", task_id=12), "ws://host:1/ws/tasks/12")


if __name__ == "__main__":
    unittest.main()
