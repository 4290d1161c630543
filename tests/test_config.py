from __future__ import annotations

import unittest

from taskwatch.config import (
    DEFAULT_EVENT_BUFFER_CAPACITY,
    DEFAULT_PORT,
    ConsoleConfig,
    parse_bind,
    parse_duration,
)


class TestDurations(unittest.TestCase):
    def test_parses_human_durations(self) -> None:
        self.assertEqual(parse_duration("500ms"), 0.5)
        self.assertEqual(parse_duration("2s"), 2.0)
        self.assertEqual(parse_duration("5m"), 300.0)
        self.assertEqual(parse_duration("1h"), 3600.0)
        self.assertEqual(parse_duration("1.5"), 1.5)
        self.assertEqual(parse_duration(3), 3.0)

    def test_rejects_garbage(self) -> None:
        for raw in ("soon", "-1s", "1d", ""):
            with self.subTest(raw=raw):
                with self.assertRaises(ValueError):
                    parse_duration(raw)

    def test_parse_bind(self) -> None:
        self.assertEqual(parse_bind("0.0.0.0:7000"), ("0.0.0.0", 7000))
        self.assertEqual(parse_bind("[::1]:6669"), ("::1", 6669))
        with self.assertRaises(ValueError):
            parse_bind("localhost")


class TestConsoleConfig(unittest.TestCase):
    def test_defaults(self) -> None:
        config = ConsoleConfig()
        self.assertEqual(config.event_buffer_capacity, 10240)
        self.assertEqual(config.client_buffer_capacity, 64)
        self.assertEqual(config.publish_interval, 1.0)
        self.assertEqual(config.retention, 3600.0)
        self.assertEqual(config.port, 6669)

    def test_clamps_out_of_range_values(self) -> None:
        config = ConsoleConfig(client_buffer_capacity=0, event_buffer_capacity=-5, publish_interval=0, retention=-1)
        self.assertEqual(config.client_buffer_capacity, 1)
        self.assertEqual(config.event_buffer_capacity, 1)
        self.assertEqual(config.publish_interval, 0.01)
        self.assertEqual(config.retention, 0.0)

    def test_from_env_reads_prefixed_values(self) -> None:
        config = ConsoleConfig.from_env(
            {
                "TASKWATCH_RETENTION": "10m",
                "TASKWATCH_PUBLISH_INTERVAL": "250ms",
                "TASKWATCH_CLIENT_BUFFER_CAPACITY": "8",
                "TASKWATCH_BIND": "0.0.0.0:7000",
                "UNRELATED": "x",
            }
        )
        self.assertEqual(config.retention, 600.0)
        self.assertEqual(config.publish_interval, 0.25)
        self.assertEqual(config.client_buffer_capacity, 8)
        self.assertEqual((config.host, config.port), ("0.0.0.0", 7000))

    def test_invalid_env_values_fall_back_with_warning(self) -> None:
        with self.assertLogs("taskwatch.config", level="WARNING") as captured:
            config = ConsoleConfig.from_env(
                {
                    "TASKWATCH_EVENT_BUFFER_CAPACITY": "lots",
                    "TASKWATCH_BIND": "nowhere",
                }
            )
        self.assertEqual(config.event_buffer_capacity, DEFAULT_EVENT_BUFFER_CAPACITY)
        self.assertEqual(config.port, DEFAULT_PORT)
        self.assertTrue(any("CONFIG_IGNORED" in line for line in captured.output))

    def test_from_mapping_ignores_non_mapping(self) -> None:
        self.assertEqual(ConsoleConfig.from_mapping(None), ConsoleConfig())


if __name__ == "__main__":
    unittest.main()
