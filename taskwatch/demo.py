from __future__ import annotations

import logging
import random
import threading
import time
from datetime import timedelta
from typing import Any, Callable, List, Optional

from .events import (
    AsyncOpNew,
    Drop,
    FieldUpdate,
    IdAllocator,
    Location,
    PollEnd,
    PollStart,
    ResourceNew,
    Spawn,
    Wake,
    WakerClone,
    WakerDrop,
)

logger = logging.getLogger("taskwatch.demo")

_RESOURCE_KINDS = ("mutex", "semaphore", "timer", "rwlock")
_OP_KINDS = {
    "mutex": "lock",
    "semaphore": "acquire",
    "timer": "poll_elapsed",
    "rwlock": "read",
}


class SyntheticWorkload:
    """Multi-threaded fake scheduler that emits instrumentation events.

    Each worker thread plays the part of a runtime worker: it spawns tasks,
    polls them against shared resources, wakes and finally drops them.
    """

    def __init__(
        self,
        submit: Callable[[Any], bool],
        *,
        ids: Optional[IdAllocator] = None,
        workers: int = 2,
        max_live_tasks: int = 16,
        step_interval: float = 0.05,
        seed: Optional[int] = None,
    ) -> None:
        self._submit = submit
        self._ids = ids or IdAllocator()
        self.workers = max(1, int(workers))
        self.max_live_tasks = max(1, int(max_live_tasks))
        self.step_interval = max(0.001, float(step_interval))
        self._seed = seed
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self.rejected = 0

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for index in range(self.workers):
            seed = None if self._seed is None else self._seed + index
            thread = threading.Thread(
                target=self._run_worker,
                args=(index, random.Random(seed)),
                name=f"taskwatch-demo-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("DEMO_START workers=%s max_live_tasks=%s", self.workers, self.max_live_tasks)

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("DEMO_STOP rejected=%s", self.rejected)

    def _emit(self, event: Any) -> None:
        if not self._submit(event):
            self.rejected += 1

    def _run_worker(self, worker_index: int, rng: random.Random) -> None:
        resources = []
        for kind in _RESOURCE_KINDS:
            resource_id = self._ids.next_id()
            self._emit(
                ResourceNew(
                    id=resource_id,
                    resource_kind=kind,
                    concrete_type=f"demo::{kind.title()}",
                    is_internal=kind == "timer",
                    fields={"worker": worker_index},
                    location=Location(file=__file__, line=0, module_path=__name__),
                )
            )
            resources.append((resource_id, kind))

        live: List[int] = []
        while not self._stop.is_set():
            if len(live) < self.max_live_tasks and rng.random() < 0.4:
                live.append(self._spawn(worker_index, rng))
            for task_id in list(live):
                if self._stop.is_set():
                    break
                self._step(task_id, resources, rng)
                if rng.random() < 0.08:
                    self._emit(WakerDrop(id=task_id))
                    self._emit(Drop(id=task_id))
                    live.remove(task_id)
            time.sleep(self.step_interval)

        for task_id in live:
            self._emit(Drop(id=task_id))
        for resource_id, _ in resources:
            self._emit(Drop(id=resource_id))

    def _spawn(self, worker_index: int, rng: random.Random) -> int:
        task_id = self._ids.next_id()
        self._emit(
            Spawn(
                id=task_id,
                name=f"demo-task-{task_id}",
                fields={
                    "worker": worker_index,
                    "kind": "task",
                    "budget": timedelta(milliseconds=rng.randint(1, 50)),
                },
                location=Location(file=__file__, line=0, module_path=__name__),
            )
        )
        self._emit(WakerClone(id=task_id))
        return task_id

    def _step(self, task_id: int, resources: List[tuple], rng: random.Random) -> None:
        self._emit(Wake(id=task_id, self_wake=rng.random() < 0.1))
        self._emit(PollStart(id=task_id))
        op_id: Optional[int] = None
        if rng.random() < 0.3:
            resource_id, kind = rng.choice(resources)
            op_id = self._ids.next_id()
            self._emit(
                AsyncOpNew(
                    id=op_id,
                    resource_id=resource_id,
                    parent_task_id=task_id,
                    op_kind=_OP_KINDS[kind],
                )
            )
        time.sleep(rng.uniform(0.0, 0.002))
        self._emit(PollEnd(id=task_id))
        if op_id is not None:
            self._emit(Drop(id=op_id))
        if rng.random() < 0.05:
            self._emit(FieldUpdate(id=task_id, key="phase", value=rng.choice(("io", "cpu", "idle"))))
