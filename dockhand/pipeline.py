"""
Sync Pipeline
=============

Collector -> bounded queue -> single uploader.

  CycleScheduler  ticks every `interval` seconds; each tick fans the
                  collection tasks out and joins them before the next tick
  WorkQueue       bounded FIFO; a full queue blocks the collecting task,
                  which is the only backpressure in the system
  Uploader        one thread, POSTs units to the remote service in
                  enqueue order; failures are logged and the unit dropped

At most one cycle is outstanding. Ticks that fall due while a cycle is
still running (a slow runtime, or a full queue) are dropped.
"""

from __future__ import annotations
import json
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

import requests

from .collectors import WorkUnit
from .config import AgentConfig
from .errors import MalformedPayloadError, UploadError

log = logging.getLogger(__name__)

_CLOSED = object()

# ─── Work Queue ───────────────────────────────────────────────────────────────

class WorkQueue:
    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"queue capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self._queue: queue.Queue = queue.Queue(maxsize=capacity)

    def put(self, unit: WorkUnit, timeout: Optional[float] = None):
        """Enqueue a unit, blocking while the queue is full."""
        self._queue.put(unit, timeout=timeout)

    def get(self) -> Optional[WorkUnit]:
        """Next unit in FIFO order, or None once the queue has been closed."""
        item = self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def close(self):
        """Let the consumer finish: it stops after draining what was queued."""
        self._queue.put(_CLOSED)

    def qsize(self) -> int:
        return self._queue.qsize()

    def __iter__(self) -> Iterator[WorkUnit]:
        while True:
            unit = self.get()
            if unit is None:
                return
            yield unit

# ─── Uploader ─────────────────────────────────────────────────────────────────

class Uploader:
    def __init__(
        self,
        config:  AgentConfig,
        work:    WorkQueue,
        session: Optional[requests.Session] = None,
        name:    str = "uploader",
    ):
        self.config    = config
        self.work      = work
        self.session   = session or requests.Session()
        self.name      = name
        self.delivered = 0
        self.dropped   = 0
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._thread is not None:
            raise RuntimeError(f"{self.name} already started")
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def join(self, timeout: Optional[float] = None):
        """Wait until the queue is closed and the last upload has finished."""
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self):
        for unit in self.work:
            try:
                self.upload(unit)
                self.delivered += 1
            except (UploadError, MalformedPayloadError) as e:
                self.dropped += 1
                log.error(f"[{self.name}] dropping {unit.path}: {e}")
            except Exception:
                self.dropped += 1
                log.exception(f"[{self.name}] unexpected error uploading {unit.path}, dropping")
        log.info(f"[{self.name}] queue closed — {self.delivered} delivered, {self.dropped} dropped")

    def upload(self, unit: WorkUnit):
        try:
            body = json.dumps(unit.payload)
        except (TypeError, ValueError) as e:
            raise MalformedPayloadError(f"cannot encode payload for {unit.path}: {e}") from e

        url = self.config.remote_url + unit.path
        try:
            resp = self.session.post(
                url,
                data    = body,
                headers = {**self.config.auth_headers(), "Content-Type": "application/json"},
                timeout = self.config.request_timeout,
            )
        except requests.RequestException as e:
            raise UploadError(unit.path, e) from e

        resp.close()
        if not resp.ok:
            raise UploadError(unit.path, f"remote returned {resp.status_code}", resp.status_code)

# ─── Fan-out / Fan-in ─────────────────────────────────────────────────────────

@dataclass
class TaskOutcome:
    name:   str
    result: Any                     = None
    error:  Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def fan_out(tasks: dict[str, Callable[[], Any]]) -> list[TaskOutcome]:
    """Run every task concurrently, wait for all of them, never raise."""
    outcomes = {name: TaskOutcome(name=name) for name in tasks}

    def run(name: str, fn: Callable[[], Any]):
        try:
            outcomes[name].result = fn()
        except Exception as e:
            outcomes[name].error = e

    # daemon threads: a task blocked on a full queue must not hold the process open
    threads = [
        threading.Thread(target=run, args=(name, fn), name=f"task-{name}", daemon=True)
        for name, fn in tasks.items()
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return list(outcomes.values())

# ─── Cycle Scheduler ──────────────────────────────────────────────────────────

class CycleScheduler:
    def __init__(
        self,
        name:     str,
        tasks:    dict[str, Callable[[], WorkUnit]],
        work:     WorkQueue,
        interval: float,
    ):
        self.name     = name
        self.tasks    = tasks
        self.work     = work
        self.interval = interval
        self.cycles   = 0
        self._stop    = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _enqueueing(self, produce: Callable[[], WorkUnit]) -> Callable[[], WorkUnit]:
        def task():
            unit = produce()
            self.work.put(unit)
            return unit
        return task

    def run_cycle(self) -> list[TaskOutcome]:
        outcomes = fan_out({name: self._enqueueing(fn) for name, fn in self.tasks.items()})
        for outcome in outcomes:
            if outcome.ok:
                log.debug(f"[{self.name}] {outcome.name} queued {outcome.result.path}")
            else:
                log.error(f"[{self.name}] {outcome.name} failed this cycle: {outcome.error}")
        return outcomes

    def run(self):
        """
        Tick at a fixed rate until stop() is called.
        A cycle runs to completion before the next tick is taken, so at most
        one cycle is outstanding; ticks missed while it ran are dropped.
        """
        log.info(f"[{self.name}] every {self.interval}s: {', '.join(self.tasks)}")
        next_tick = time.monotonic() + self.interval
        while not self._stop.wait(max(0.0, next_tick - time.monotonic())):
            self.cycles += 1
            self.run_cycle()

            next_tick += self.interval
            now = time.monotonic()
            if next_tick <= now:
                missed = int((now - next_tick) // self.interval) + 1
                next_tick += missed * self.interval
                log.warning(f"[{self.name}] cycle {self.cycles} overran, skipped {missed} tick(s)")

    def start(self):
        self._thread = threading.Thread(target=self.run, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        """Stop ticking and wait for the running cycle, if any, to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
