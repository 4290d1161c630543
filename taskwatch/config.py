from __future__ import annotations

import logging
import os
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

logger = logging.getLogger("taskwatch.config")

DEFAULT_EVENT_BUFFER_CAPACITY = 1024 * 10
DEFAULT_CLIENT_BUFFER_CAPACITY = 64
DEFAULT_PUBLISH_INTERVAL = 1.0
DEFAULT_RETENTION = 60.0 * 60.0
DEFAULT_SLOW_CONSUMER_THRESHOLD = 10
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 6669

ENV_PREFIX = "TASKWATCH_"

_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.IGNORECASE)


def parse_duration(value: Any) -> float:
    """Parse ``"500ms"``, ``"2s"``, ``"5m"``, ``"1h"`` or bare seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if match is None:
        raise ValueError(f"Invalid duration: {value!r}")
    unit = (match.group(2) or "s").lower()
    return float(match.group(1)) * _DURATION_UNITS[unit]


def parse_bind(value: str) -> Tuple[str, int]:
    host, sep, port = str(value).strip().rpartition(":")
    if not sep or not host:
        raise ValueError(f"Bind address must look like host:port, got {value!r}")
    return host.strip("[]"), int(port)


@dataclass(slots=True)
class ConsoleConfig:
    """Static settings for the aggregation and streaming engine."""

    event_buffer_capacity: int = DEFAULT_EVENT_BUFFER_CAPACITY
    client_buffer_capacity: int = DEFAULT_CLIENT_BUFFER_CAPACITY
    publish_interval: float = DEFAULT_PUBLISH_INTERVAL
    retention: float = DEFAULT_RETENTION
    slow_consumer_threshold: int = DEFAULT_SLOW_CONSUMER_THRESHOLD
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    def __post_init__(self) -> None:
        self.event_buffer_capacity = max(1, int(self.event_buffer_capacity))
        self.client_buffer_capacity = max(1, int(self.client_buffer_capacity))
        self.publish_interval = max(0.01, float(self.publish_interval))
        self.retention = max(0.0, float(self.retention))
        self.slow_consumer_threshold = max(1, int(self.slow_consumer_threshold))
        self.host = str(self.host).strip() or DEFAULT_HOST
        self.port = max(1, int(self.port))

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "ConsoleConfig":
        source = raw if isinstance(raw, Mapping) else {}
        base = cls()
        return cls(
            event_buffer_capacity=_as_int(source.get("event_buffer_capacity"), default=base.event_buffer_capacity),
            client_buffer_capacity=_as_int(source.get("client_buffer_capacity"), default=base.client_buffer_capacity),
            publish_interval=_as_duration(source.get("publish_interval"), default=base.publish_interval),
            retention=_as_duration(source.get("retention"), default=base.retention),
            slow_consumer_threshold=_as_int(
                source.get("slow_consumer_threshold"), default=base.slow_consumer_threshold
            ),
            host=str(source.get("host") or base.host),
            port=_as_int(source.get("port"), default=base.port),
        )

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        *,
        base: Optional["ConsoleConfig"] = None,
    ) -> "ConsoleConfig":
        env = os.environ if environ is None else environ
        values = (base or cls()).to_dict()
        for key in (
            "event_buffer_capacity",
            "client_buffer_capacity",
            "publish_interval",
            "retention",
            "slow_consumer_threshold",
        ):
            raw = env.get(ENV_PREFIX + key.upper())
            if raw is not None and raw.strip():
                values[key] = raw
        bind = env.get(ENV_PREFIX + "BIND")
        if bind:
            try:
                values["host"], values["port"] = parse_bind(bind)
            except ValueError:
                logger.warning("CONFIG_IGNORED key=%sBIND value=%r", ENV_PREFIX, bind)
        return cls.from_mapping(values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _as_int(value: Any, *, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("CONFIG_IGNORED value=%r fallback=%s", value, default)
        return default


def _as_duration(value: Any, *, default: float) -> float:
    if value is None:
        return default
    try:
        return parse_duration(value)
    except ValueError:
        logger.warning("CONFIG_IGNORED value=%r fallback=%s", value, default)
        return default
