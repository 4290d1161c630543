from __future__ import annotations

import asyncio
import time
import unittest

from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from taskwatch.config import ConsoleConfig
from taskwatch.events import PollStart, ResourceNew, Spawn
from taskwatch_observability.console import Console
from taskwatch_observability.models import ConsoleState, model_to_dict
from taskwatch_observability.server import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_NOT_FOUND,
    CLOSE_TOO_SLOW,
    _build_parser,
    create_app,
)


def _wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class TestServerRoutes(unittest.TestCase):
    def test_state_route_uses_stable_contract(self) -> None:
        console = Console(ConsoleConfig(publish_interval=60.0))
        app = create_app(console=console)
        routes = [route for route in app.routes if getattr(route, "path", "") == "/api/state"]
        self.assertEqual(len(routes), 1)
        payload = model_to_dict(asyncio.run(routes[0].endpoint()))
        self.assertEqual(
            sorted(payload.keys()),
            [
                "diagnostics",
                "event_queue_size",
                "revision",
                "running",
                "subscribers",
                "temporality",
                "timestamp",
                "tracked_entities",
            ],
        )
        self.assertFalse(payload["running"])
        self.assertEqual(payload["temporality"], "live")

    def test_health_pause_and_resume(self) -> None:
        console = Console(ConsoleConfig(publish_interval=0.05))
        with TestClient(create_app(console=console)) as client:
            health = client.get("/api/health").json()
            self.assertEqual(health["status"], "ok")
            self.assertTrue(health["running"])

            paused = ConsoleState(**client.post("/api/pause").json())
            self.assertEqual(paused.temporality, "paused")
            resumed = ConsoleState(**client.post("/api/resume").json())
            self.assertEqual(resumed.temporality, "live")

            console.submit(Spawn(id=1, at=time.monotonic()))
            self.assertTrue(_wait_until(lambda: client.get("/api/state").json()["tracked_entities"] == 1))
        self.assertFalse(console.broadcaster.running)


class TestWatchWebSocket(unittest.TestCase):
    def setUp(self) -> None:
        self.console = Console(ConsoleConfig(publish_interval=0.05))
        self.console.submit(Spawn(id=1, name="main"))
        self.console.submit(ResourceNew(id=2, resource_kind="mutex"))
        self.console.submit(ResourceNew(id=3, resource_kind="timer", is_internal=True))

    def test_first_message_is_snapshot_then_deltas(self) -> None:
        with TestClient(create_app(console=self.console)) as client:
            with client.websocket_connect("/ws/watch") as ws:
                first = ws.receive_json()
                self.assertEqual(first["type"], "update")
                self.assertTrue(first["snapshot"])
                self.assertEqual(first["seq"], 1)
                self.assertEqual([record["id"] for record in first["new_entities"]], [1, 2])

                self.console.submit(PollStart(id=1))
                seen = None
                for _ in range(20):
                    message = ws.receive_json()
                    self.assertFalse(message["snapshot"])
                    if message["stats_updates"]:
                        seen = message
                        break
                self.assertIsNotNone(seen)
                self.assertEqual(seen["stats_updates"][0]["id"], 1)
                self.assertEqual(seen["stats_updates"][0]["stats"]["state"], "polling")

    def test_query_filter_is_applied(self) -> None:
        with TestClient(create_app(console=self.console)) as client:
            with client.websocket_connect("/ws/watch?kinds=resource&include_internal=true") as ws:
                first = ws.receive_json()
                self.assertEqual([record["id"] for record in first["new_entities"]], [2, 3])

    def test_unrecognised_kinds_fall_back_to_default_view(self) -> None:
        with TestClient(create_app(console=self.console)) as client:
            with client.websocket_connect("/ws/watch?kinds=bogus&ids=abc") as ws:
                first = ws.receive_json()
                self.assertEqual([record["id"] for record in first["new_entities"]], [1, 2])

    def test_cancel_releases_subscription(self) -> None:
        with TestClient(create_app(console=self.console)) as client:
            with client.websocket_connect("/ws/watch") as ws:
                ws.receive_json()
                self.assertEqual(len(self.console.registry), 1)
                ws.send_json({"action": "cancel"})
            self.assertTrue(_wait_until(lambda: len(self.console.registry) == 0))

    def test_disconnect_releases_subscription(self) -> None:
        with TestClient(create_app(console=self.console)) as client:
            with client.websocket_connect("/ws/watch") as ws:
                ws.receive_json()
            self.assertTrue(_wait_until(lambda: len(self.console.registry) == 0))

    def test_task_details_stream(self) -> None:
        with TestClient(create_app(console=self.console)) as client:
            with client.websocket_connect("/ws/tasks/1") as ws:
                details = ws.receive_json()
                self.assertEqual(details["type"], "task_details")
                self.assertEqual(details["task_id"], 1)
                self.assertIn("poll_times_histogram", details)

    def test_task_details_for_missing_task_closes_not_found(self) -> None:
        with TestClient(create_app(console=self.console)) as client:
            with client.websocket_connect("/ws/tasks/404") as ws:
                closed = ws.receive_json()
                self.assertEqual(closed["type"], "closed")
                self.assertEqual(closed["reason"], "not_found")
                with self.assertRaises(WebSocketDisconnect) as ctx:
                    ws.receive_json()
                self.assertEqual(ctx.exception.code, CLOSE_NOT_FOUND)

    def test_slow_consumer_is_closed_with_reason_and_code(self) -> None:
        console = Console(ConsoleConfig(publish_interval=60.0, client_buffer_capacity=1, slow_consumer_threshold=1))
        console.submit(Spawn(id=1, name="main"))
        with TestClient(create_app(console=console)) as client:
            with client.websocket_connect("/ws/watch") as ws:
                self.assertTrue(ws.receive_json()["snapshot"])
                client.portal.call(lambda: [console.broadcaster.tick() for _ in range(3)])

                message = ws.receive_json()
                while message["type"] != "closed":
                    message = ws.receive_json()
                self.assertEqual(message["reason"], "too_slow")
                with self.assertRaises(WebSocketDisconnect) as ctx:
                    ws.receive_json()
                self.assertEqual(ctx.exception.code, CLOSE_TOO_SLOW)
            self.assertEqual(len(console.registry), 0)
            self.assertEqual(console.registry.closed_too_slow_total, 1)

    def test_backlog_violation_at_connect_closes_with_shutdown(self) -> None:
        console = Console(ConsoleConfig(publish_interval=60.0))
        console.submit(Spawn(id=1))
        console.submit(Spawn(id=1))
        console.submit(Spawn(id=2))
        with TestClient(create_app(console=console)) as client:
            with client.websocket_connect("/ws/watch") as ws:
                closed = ws.receive_json()
                self.assertEqual(closed["type"], "closed")
                self.assertEqual(closed["reason"], "shutdown")
                with self.assertRaises(WebSocketDisconnect) as ctx:
                    ws.receive_json()
                self.assertEqual(ctx.exception.code, CLOSE_INTERNAL_ERROR)
            self.assertEqual(len(console.registry), 0)
            self.assertEqual(client.get("/api/health").json()["status"], "failed")
        self.assertIn(2, console.store)


class TestServerCli(unittest.TestCase):
    def test_parser_defaults_follow_config(self) -> None:
        parser = _build_parser(ConsoleConfig(port=7001))
        args = parser.parse_args(["--demo-workers", "2", "--retention", "30s"])
        self.assertEqual(args.port, 7001)
        self.assertEqual(args.demo_workers, 2)
        self.assertEqual(args.retention, "30s")
        self.assertEqual(args.host, "127.0.0.1")


if __name__ == "__main__":
    unittest.main()
