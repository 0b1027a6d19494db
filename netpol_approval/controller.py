"""
Approval Controller
Drives the grant materializer and the orphan collector.

Two threads:
  watch   streams approval-request events into the work queue
  worker  periodic resync, due work items, periodic sweep

Each work item is one request name. Failures are mapped to requeue delays
(errors.reconcile_result_for) with a per-name failure counter that resets
on success.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from netpol_approval.approval_requests import APPROVAL_LABEL
from netpol_approval.collector import OrphanCollector, SweepReport
from netpol_approval.config import GateConfig
from netpol_approval.errors import (
    GateError,
    NotReadyError,
    ReconcileResult,
    backoff_delay,
    reconcile_result_for,
)
from netpol_approval.materializer import GrantMaterializer, ReconcileOutcome
from netpol_approval.store import ResourceStore

logger = logging.getLogger(__name__)

REQUEST_SELECTOR = {APPROVAL_LABEL: "true"}
WATCH_TIMEOUT_SECONDS = 300.0
_MAX_IDLE_WAIT = 1.0


# ---------------------------------------------------------------------------
# Work queue
# ---------------------------------------------------------------------------

class WorkQueue:
    """Delayed, deduplicating queue of keys.

    Adding a key that is already queued keeps the earlier due time, so a
    fresh watch event overrides a long backoff.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._cond = threading.Condition()
        self._due: dict[str, float] = {}

    def add(self, key: str, delay: float = 0.0) -> None:
        due = self._clock() + max(delay, 0.0)
        with self._cond:
            current = self._due.get(key)
            if current is None or due < current:
                self._due[key] = due
            self._cond.notify_all()

    def pop_due(self, now: Optional[float] = None) -> list[str]:
        now = self._clock() if now is None else now
        with self._cond:
            ready = sorted(
                (due, key) for key, due in self._due.items() if due <= now
            )
            for _, key in ready:
                del self._due[key]
        return [key for _, key in ready]

    def next_due(self) -> Optional[float]:
        with self._cond:
            return min(self._due.values()) if self._due else None

    def wait(self, timeout: float) -> None:
        with self._cond:
            self._cond.wait(timeout)

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def __contains__(self, key: str) -> bool:
        with self._cond:
            return key in self._due

    def __len__(self) -> int:
        with self._cond:
            return len(self._due)


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class ApprovalController:
    def __init__(
        self,
        store: ResourceStore,
        config: GateConfig,
        materializer: GrantMaterializer,
        collector: OrphanCollector,
        queue: Optional[WorkQueue] = None,
        clock: Callable[[], float] = time.monotonic,
        watch_timeout_seconds: float = WATCH_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.watch_timeout_seconds = watch_timeout_seconds
        self.config = config
        self.materializer = materializer
        self.collector = collector
        self.clock = clock
        self.queue = queue or WorkQueue(clock)
        self.last_sweep: Optional[SweepReport] = None
        self._failures: dict[str, int] = {}
        self._next_resync: Optional[float] = None
        self._next_sweep: Optional[float] = None
        self._sweep_requested = threading.Event()
        self._threads: list[threading.Thread] = []

    def failures(self, name: str) -> int:
        return self._failures.get(name, 0)

    def resync(self) -> int:
        """Enqueue every approval request. Returns how many were queued."""
        requests = self.store.list_requests(REQUEST_SELECTOR)
        for request in requests:
            self.queue.add(request.metadata.name)
        logger.debug("resync queued %d approval request(s)", len(requests))
        return len(requests)

    def request_sweep(self) -> None:
        self._sweep_requested.set()
        self.queue.wake()

    def sweep(self) -> SweepReport:
        self._sweep_requested.clear()
        report = self.collector.sweep()
        self.last_sweep = report
        return report

    def process(self, name: str) -> ReconcileResult:
        try:
            outcome = self.materializer.reconcile(name)
        except Exception as exc:
            attempt = self._failures.get(name, 0) + 1
            result = reconcile_result_for(
                exc, attempt,
                self.config.backoff_base_seconds,
                self.config.backoff_max_seconds,
            )
            if result.permanent:
                self._failures.pop(name, None)
                logger.error("reconcile of %s failed permanently: %s", name, exc)
            elif isinstance(exc, NotReadyError):
                logger.info("%s; checking again in %ss", exc, result.requeue_after)
            else:
                self._failures[name] = attempt
                logger.warning(
                    "reconcile of %s failed (attempt %d), retrying in %ss: %s",
                    name, attempt, result.requeue_after, exc,
                    exc_info=not isinstance(exc, GateError),
                )
            if result.requeue:
                self.queue.add(name, result.requeue_after)
            return result

        self._failures.pop(name, None)
        if outcome == ReconcileOutcome.REQUEST_GONE:
            self.request_sweep()
        return ReconcileResult()

    def run_once(self, now: Optional[float] = None) -> int:
        """One worker pass. Returns the number of work items processed."""
        now = self.clock() if now is None else now

        if self._next_resync is None or now >= self._next_resync:
            try:
                self.resync()
            except Exception as exc:
                logger.warning("resync failed: %s", exc, exc_info=not isinstance(exc, GateError))
            self._next_resync = now + self.config.resync_interval_seconds

        processed = 0
        for name in self.queue.pop_due(now):
            self.process(name)
            processed += 1

        if (
            self._sweep_requested.is_set()
            or self._next_sweep is None
            or now >= self._next_sweep
        ):
            try:
                self.sweep()
            except Exception as exc:
                logger.warning("sweep failed: %s", exc, exc_info=not isinstance(exc, GateError))
            self._next_sweep = now + self.config.sweep_interval_seconds

        return processed

    def _idle_wait(self) -> float:
        now = self.clock()
        candidates = [t for t in (self._next_resync, self._next_sweep, self.queue.next_due()) if t is not None]
        if not candidates:
            return _MAX_IDLE_WAIT
        return min(max(min(candidates) - now, 0.0), _MAX_IDLE_WAIT)

    def run(self, stop_event: threading.Event) -> None:
        logger.info("approval controller started")
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("approval controller pass failed")
            if not self._sweep_requested.is_set():
                self.queue.wait(self._idle_wait())
        logger.info("approval controller stopped")

    def watch(self, stop_event: threading.Event) -> None:
        attempt = 0
        while not stop_event.is_set():
            try:
                for event in self.store.watch_requests(REQUEST_SELECTOR, self.watch_timeout_seconds):
                    attempt = 0
                    if stop_event.is_set():
                        return
                    name = event.request.metadata.name
                    if event.type == "DELETED":
                        logger.info("approval request %s deleted", name)
                        self.request_sweep()
                    else:
                        self.queue.add(name)
            except Exception as exc:
                attempt += 1
                delay = backoff_delay(
                    attempt, self.config.backoff_base_seconds, self.config.backoff_max_seconds,
                )
                logger.warning(
                    "watch of approval requests failed, retrying in %ss: %s", delay, exc,
                    exc_info=not isinstance(exc, GateError),
                )
                stop_event.wait(delay)

    def start(self, stop_event: threading.Event) -> list[threading.Thread]:
        self._threads = [
            threading.Thread(target=self.watch, args=(stop_event,), name="approval-watch", daemon=True),
            threading.Thread(target=self.run, args=(stop_event,), name="approval-worker", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        return self._threads

    def stop(self, stop_event: threading.Event, timeout: float = 5.0) -> None:
        stop_event.set()
        self.queue.wake()
        for thread in self._threads:
            thread.join(timeout)
