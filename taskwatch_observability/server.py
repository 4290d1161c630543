from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from taskwatch.config import ConsoleConfig
from taskwatch.demo import SyntheticWorkload
from taskwatch.store import InvariantViolation

from .broadcaster import WatchBroadcaster
from .console import Console
from .models import ClosedMessage, ConsoleState, WatchFilter, model_to_dict
from .registry import Subscription, SubscriptionState

logger = logging.getLogger("taskwatch.server")

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_INTERNAL_ERROR = 1011
CLOSE_NOT_FOUND = 4004
CLOSE_TOO_SLOW = 4008

_CLOSE_CODES = {
    SubscriptionState.CANCELLED: CLOSE_NORMAL,
    SubscriptionState.CLOSED_SHUTDOWN: CLOSE_GOING_AWAY,
    SubscriptionState.CLOSED_NOT_FOUND: CLOSE_NOT_FOUND,
    SubscriptionState.CLOSED_TOO_SLOW: CLOSE_TOO_SLOW,
}


def create_app(
    *,
    console: Optional[Console] = None,
    config: Optional[ConsoleConfig] = None,
    workload: Optional[SyntheticWorkload] = None,
) -> FastAPI:
    resolved_console = console or Console(config)
    broadcaster = resolved_console.broadcaster

    @asynccontextmanager
    async def _lifespan(_: FastAPI):
        await resolved_console.start()
        if workload is not None:
            workload.start()
        try:
            yield
        finally:
            if workload is not None:
                await asyncio.to_thread(workload.stop)
            await resolved_console.stop()

    app = FastAPI(
        title="taskwatch",
        description="Live task, resource and async-op telemetry for a concurrent scheduler.",
        version="0.1.0",
        lifespan=_lifespan,
    )
    app.state.console = resolved_console

    @app.get("/api/health")
    async def health() -> dict:
        failure = broadcaster.failure
        return {
            "status": "failed" if failure is not None else "ok",
            "running": broadcaster.running,
            "ticks": broadcaster.ticks,
            "error": str(failure) if failure is not None else None,
        }

    @app.get("/api/state", response_model=ConsoleState)
    async def state() -> ConsoleState:
        return broadcaster.state()

    @app.post("/api/pause", response_model=ConsoleState)
    async def pause() -> ConsoleState:
        broadcaster.pause()
        return broadcaster.state()

    @app.post("/api/resume", response_model=ConsoleState)
    async def resume() -> ConsoleState:
        broadcaster.resume()
        return broadcaster.state()

    @app.websocket("/ws/watch")
    async def ws_watch(websocket: WebSocket) -> None:
        watch_filter = WatchFilter.from_query(websocket.query_params)
        await websocket.accept()
        try:
            subscription = broadcaster.subscribe(watch_filter)
        except InvariantViolation:
            await _close_with_reason(websocket, SubscriptionState.CLOSED_SHUTDOWN, CLOSE_INTERNAL_ERROR)
            return
        await _stream_subscription(websocket, subscription, broadcaster)

    @app.websocket("/ws/tasks/{task_id}")
    async def ws_task_details(websocket: WebSocket, task_id: int) -> None:
        await websocket.accept()
        try:
            subscription = broadcaster.subscribe_task_details(task_id)
        except InvariantViolation:
            await _close_with_reason(websocket, SubscriptionState.CLOSED_SHUTDOWN, CLOSE_INTERNAL_ERROR)
            return
        if subscription is None:
            await _close_with_reason(websocket, SubscriptionState.CLOSED_NOT_FOUND, CLOSE_NOT_FOUND)
            return
        await _stream_subscription(websocket, subscription, broadcaster)

    return app


async def _close_with_reason(websocket: WebSocket, state: SubscriptionState, code: int) -> None:
    await websocket.send_json(model_to_dict(ClosedMessage(reason=state.value)))
    await websocket.close(code=code)


async def _stream_subscription(
    websocket: WebSocket,
    subscription: Subscription,
    broadcaster: WatchBroadcaster,
) -> None:
    client_cancel = asyncio.create_task(_wait_for_client_cancel(websocket))
    try:
        while True:
            next_update = asyncio.create_task(subscription.next_update())
            done, _ = await asyncio.wait({next_update, client_cancel}, return_when=asyncio.FIRST_COMPLETED)
            if client_cancel in done:
                next_update.cancel()
                if client_cancel.result() == "cancel":
                    await websocket.close(code=CLOSE_NORMAL)
                return

            update = next_update.result()
            if update is None:
                reason = subscription.close_reason or SubscriptionState.CLOSED_SHUTDOWN.value
                await websocket.send_json(model_to_dict(ClosedMessage(reason=reason)))
                await websocket.close(code=_CLOSE_CODES.get(subscription.state, CLOSE_NORMAL))
                return
            await websocket.send_json(model_to_dict(update.to_model()))
    except WebSocketDisconnect:
        return
    finally:
        client_cancel.cancel()
        broadcaster.unsubscribe(subscription)


async def _wait_for_client_cancel(websocket: WebSocket) -> str:
    while True:
        try:
            message = await websocket.receive()
        except (WebSocketDisconnect, RuntimeError):
            return "disconnect"
        if message.get("type") == "websocket.disconnect":
            return "disconnect"
        text = message.get("text")
        if not text:
            continue
        try:
            payload = json.loads(text)
        except ValueError:
            continue
        if isinstance(payload, dict) and str(payload.get("action", "")).strip().lower() == "cancel":
            return "cancel"


def _abort_process(exc: BaseException) -> None:
    logger.critical("ABORTING reason=%s", exc)
    os.kill(os.getpid(), signal.SIGTERM)


def _configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    root = logging.getLogger("taskwatch")
    root.handlers = [handler]
    root.setLevel(str(level).upper())
    root.propagate = False


def _build_parser(defaults: ConsoleConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the taskwatch aggregation and streaming server.")
    parser.add_argument("--host", type=str, default=defaults.host)
    parser.add_argument("--port", type=int, default=defaults.port)
    parser.add_argument("--event-buffer-capacity", type=int, default=defaults.event_buffer_capacity)
    parser.add_argument("--client-buffer-capacity", type=int, default=defaults.client_buffer_capacity)
    parser.add_argument("--publish-interval", type=str, default=str(defaults.publish_interval))
    parser.add_argument("--retention", type=str, default=str(defaults.retention))
    parser.add_argument("--slow-consumer-threshold", type=int, default=defaults.slow_consumer_threshold)
    parser.add_argument("--demo-workers", type=int, default=0, help="Synthetic producer threads (0 disables).")
    parser.add_argument("--demo-tasks", type=int, default=16, help="Max live synthetic tasks per worker.")
    parser.add_argument("--log-level", type=str, default="info")
    return parser


def main(argv: Optional[Any] = None) -> None:
    parser = _build_parser(ConsoleConfig.from_env())
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    config = ConsoleConfig.from_mapping(
        {
            "host": args.host,
            "port": args.port,
            "event_buffer_capacity": args.event_buffer_capacity,
            "client_buffer_capacity": args.client_buffer_capacity,
            "publish_interval": args.publish_interval,
            "retention": args.retention,
            "slow_consumer_threshold": args.slow_consumer_threshold,
        }
    )
    console = Console(config, on_fatal=_abort_process)
    workload = None
    if args.demo_workers > 0:
        workload = SyntheticWorkload(
            console.submit,
            ids=console.ids,
            workers=args.demo_workers,
            max_live_tasks=args.demo_tasks,
        )
    app = create_app(console=console, workload=workload)
    import uvicorn

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=str(args.log_level),
    )


if __name__ == "__main__":
    main()
