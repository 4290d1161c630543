from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional, TextIO
from urllib.parse import urlencode

import websockets

from .models import MESSAGE_CLOSED, MESSAGE_TASK_DETAILS, MESSAGE_UPDATE

logger = logging.getLogger("taskwatch.watch_client")


class ClientView:
    """Client-side mirror of the server's entity set, rebuilt from updates."""

    def __init__(self) -> None:
        self.entities: Dict[int, Dict[str, Any]] = {}
        self.last_seq = 0
        self.temporality = "live"
        self.diagnostics: Dict[str, int] = {}
        self.closed_reason: Optional[str] = None
        self.task_details: Optional[Dict[str, Any]] = None
        self.gaps = 0

    def apply(self, message: Dict[str, Any]) -> None:
        message_type = str(message.get("type", ""))
        if message_type == MESSAGE_CLOSED:
            self.closed_reason = str(message.get("reason", ""))
            return
        if message_type == MESSAGE_TASK_DETAILS:
            self._track_seq(message)
            self.task_details = dict(message)
            return
        if message_type != MESSAGE_UPDATE:
            logger.debug("CLIENT_IGNORED type=%s", message_type)
            return

        self._track_seq(message)
        if message.get("snapshot"):
            self.entities = {}
        for record in message.get("new_entities", []):
            self.entities[int(record["id"])] = dict(record)
        for record in message.get("stats_updates", []):
            entity_id = int(record["id"])
            current = self.entities.get(entity_id)
            if current is None:
                # Stats for an entity whose creation we never saw.
                self.gaps += 1
                continue
            current["fields"] = record.get("fields", current.get("fields", {}))
            current["stats"] = record.get("stats", current.get("stats", {}))
        for entity_id in message.get("evicted_ids", []):
            self.entities.pop(int(entity_id), None)
        self.temporality = str(message.get("temporality", self.temporality))
        self.diagnostics = dict(message.get("diagnostics") or {})

    def live(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            record
            for record in self.entities.values()
            if (kind is None or record.get("kind") == kind) and record.get("stats", {}).get("dropped_at") is None
        ]

    def summary(self) -> Dict[str, Any]:
        by_kind: Dict[str, int] = {}
        for record in self.entities.values():
            kind = str(record.get("kind", "unknown"))
            by_kind[kind] = by_kind.get(kind, 0) + 1
        return {
            "seq": self.last_seq,
            "temporality": self.temporality,
            "entities": by_kind,
            "live_tasks": len(self.live("task")),
            "diagnostics": self.diagnostics,
        }

    def _track_seq(self, message: Dict[str, Any]) -> None:
        seq = int(message.get("seq", 0) or 0)
        if seq and self.last_seq and seq != self.last_seq + 1:
            self.gaps += 1
        self.last_seq = seq


def build_watch_uri(
    base: str,
    *,
    kinds: Optional[str] = None,
    ids: Optional[str] = None,
    include_internal: bool = False,
    task_id: Optional[int] = None,
) -> str:
    root = base.rstrip("/")
    if task_id is not None:
        return f"{root}/ws/tasks/{int(task_id)}"
    params: Dict[str, str] = {}
    if kinds:
        params["kinds"] = kinds
    if ids:
        params["ids"] = ids
    if include_internal:
        params["include_internal"] = "true"
    query = urlencode(params)
    return f"{root}/ws/watch" + (f"?{query}" if query else "")


async def watch(
    uri: str,
    *,
    max_messages: int = 0,
    raw: bool = False,
    out: TextIO = sys.stdout,
) -> ClientView:
    view = ClientView()
    received = 0
    async with websockets.connect(uri, open_timeout=5, ping_interval=20, ping_timeout=20) as ws:
        while True:
            try:
                message = await ws.recv()
            except websockets.ConnectionClosed:
                break
            payload = json.loads(message)
            view.apply(payload)
            received += 1
            if raw:
                out.write(json.dumps(payload, sort_keys=True) + "\n")
            elif payload.get("type") == MESSAGE_TASK_DETAILS:
                out.write(
                    json.dumps(
                        {
                            "seq": payload.get("seq"),
                            "task_id": payload.get("task_id"),
                            "poll_count": payload.get("poll_count"),
                            "busy_time": payload.get("busy_time"),
                        },
                        sort_keys=True,
                    )
                    + "\n"
                )
            else:
                out.write(json.dumps(view.summary(), sort_keys=True) + "\n")
            out.flush()
            if view.closed_reason is not None:
                logger.warning("WATCH_CLOSED reason=%s", view.closed_reason)
                break
            if max_messages and received >= max_messages:
                await ws.send(json.dumps({"action": "cancel"}))
                break
    return view


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stream taskwatch updates to stdout.")
    parser.add_argument("--url", type=str, default="ws://127.0.0.1:6669")
    parser.add_argument("--kinds", type=str, default=None, help="Comma separated: task,resource,async_op")
    parser.add_argument("--ids", type=str, default=None, help="Comma separated entity ids.")
    parser.add_argument("--include-internal", action="store_true")
    parser.add_argument("--task", type=int, default=None, help="Stream poll details for one task instead.")
    parser.add_argument("--max-messages", type=int, default=0)
    parser.add_argument("--raw", action="store_true", help="Print every message verbatim.")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    uri = build_watch_uri(
        args.url,
        kinds=args.kinds,
        ids=args.ids,
        include_internal=args.include_internal,
        task_id=args.task,
    )
    view = asyncio.run(watch(uri, max_messages=max(0, int(args.max_messages)), raw=args.raw))
    if view.closed_reason == "too_slow":
        raise SystemExit(2)


if __name__ == "__main__":
    main()
