"""Work queue, reconcile-result mapping, and the approval controller loop."""

from __future__ import annotations

import threading
import time

import pytest

from netpol_approval.admission import Operation
from netpol_approval.collector import SweepReport
from netpol_approval.config import GateConfig
from netpol_approval.controller import ApprovalController, WorkQueue
from netpol_approval.errors import (
    ConflictError,
    DeadlineExceeded,
    FingerprintError,
    MalformedRequestError,
    NotFoundError,
    NotReadyError,
    TransientStoreError,
    backoff_delay,
    reconcile_result_for,
)
from netpol_approval.materializer import GrantMaterializer, ReconcileOutcome
from netpol_approval.models import ApprovalRequest, ObjectMeta
from netpol_approval.store import WatchEvent

from conftest import FakeClock

NAME = "np-approval-shop-allow-frontend"


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

def test_backoff_doubles_up_to_the_cap():
    assert [backoff_delay(n, 1, 10) for n in range(1, 7)] == [1, 2, 4, 8, 10, 10]
    assert backoff_delay(0, 1, 10) == 1


def test_backoff_survives_long_failure_streaks():
    assert backoff_delay(5000, 1, 300) == 300
    assert reconcile_result_for(TransientStoreError("t"), 10_000, 1, 300).requeue_after == 300


def test_reconcile_result_mapping():
    assert not reconcile_result_for(NotFoundError("gone"), 1, 1, 300).requeue

    permanent = reconcile_result_for(FingerprintError("bad"), 1, 1, 300)
    assert permanent.permanent and not permanent.requeue

    not_ready = reconcile_result_for(NotReadyError("wait", requeue_after=30), 5, 1, 300)
    assert not_ready.requeue_after == 30

    for exc in (ConflictError("c"), TransientStoreError("t"), DeadlineExceeded("d")):
        result = reconcile_result_for(exc, 3, 1, 300)
        assert result.requeue_after == 4 and not result.permanent


# ---------------------------------------------------------------------------
# Work queue
# ---------------------------------------------------------------------------

def test_queue_deduplicates_and_keeps_the_earliest_due_time():
    clock = FakeClock(0)
    queue = WorkQueue(clock)
    queue.add("a", delay=60)
    queue.add("a", delay=5)
    queue.add("a", delay=100)
    assert len(queue) == 1
    assert queue.next_due() == 5


def test_queue_releases_items_when_due_in_due_order():
    clock = FakeClock(0)
    queue = WorkQueue(clock)
    queue.add("late", delay=10)
    queue.add("early", delay=1)
    queue.add("now")

    assert queue.pop_due() == ["now"]
    clock.advance(10)
    assert queue.pop_due() == ["early", "late"]
    assert len(queue) == 0 and queue.next_due() is None


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------

class ScriptedMaterializer:
    """Raises or returns the scripted results in order."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls: list[str] = []

    def reconcile(self, name):
        self.calls.append(name)
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


def _controller(store, config, collector, clock, materializer) -> ApprovalController:
    return ApprovalController(store, config, materializer, collector, clock=clock)


def test_transient_failures_back_off_and_reset_on_success(store, config, collector, clock):
    scripted = ScriptedMaterializer(
        TransientStoreError("t1"), TransientStoreError("t2"), TransientStoreError("t3"),
        ReconcileOutcome.MATERIALIZED,
    )
    controller = _controller(store, config, collector, clock, scripted)

    delays = [controller.process(NAME).requeue_after for _ in range(3)]
    assert delays == [1, 2, 4]
    assert controller.failures(NAME) == 3
    assert NAME in controller.queue

    result = controller.process(NAME)
    assert not result.requeue
    assert controller.failures(NAME) == 0


def test_not_ready_uses_the_fixed_delay(store, config, collector, clock):
    scripted = ScriptedMaterializer(*[NotReadyError("no cert", 30) for _ in range(3)])
    controller = _controller(store, config, collector, clock, scripted)

    assert [controller.process(NAME).requeue_after for _ in range(3)] == [30, 30, 30]
    assert controller.queue.next_due() == clock.now + 30


def test_permanent_failure_is_not_requeued(store, config, collector, clock):
    scripted = ScriptedMaterializer(MalformedRequestError("missing annotation"))
    controller = _controller(store, config, collector, clock, scripted)

    result = controller.process(NAME)
    assert result.permanent and not result.requeue
    assert NAME not in controller.queue


def test_request_gone_triggers_a_sweep(store, config, clock):
    class CountingCollector:
        sweeps = 0

        def sweep(self):
            CountingCollector.sweeps += 1
            return SweepReport()

    collector = CountingCollector()
    scripted = ScriptedMaterializer(ReconcileOutcome.REQUEST_GONE)
    controller = _controller(store, config, collector, clock, scripted)

    controller.run_once()                   # first pass: resync + scheduled sweep
    assert collector.sweeps == 1
    controller.queue.add(NAME)
    controller.run_once()                   # REQUEST_GONE requests another sweep
    assert collector.sweeps == 2
    controller.run_once()
    assert collector.sweeps == 2


# ---------------------------------------------------------------------------
# Worker pass
# ---------------------------------------------------------------------------

def test_run_once_resyncs_materializes_and_sweeps(controller, gate, store, decide, make_policy, clock):
    gate.admit(Operation.CREATE, make_policy())
    decide(NAME)

    assert controller.run_once() == 1
    assert store.get_token("shop", NAME)
    assert controller.last_sweep is not None and controller.last_sweep.ok

    # nothing due until the resync interval passes
    assert controller.run_once() == 0
    clock.advance(60)
    assert controller.run_once() == 1


def test_orphan_is_collected_on_schedule(controller, gate, store, decide, make_policy, clock):
    gate.admit(Operation.CREATE, make_policy())
    decide(NAME)
    controller.run_once()
    store.delete_request(NAME)

    clock.advance(300)
    controller.run_once()
    with pytest.raises(NotFoundError):
        store.get_token("shop", NAME)


def test_not_ready_request_is_retried_after_the_delay(controller, gate, store, decide, make_policy, clock):
    gate.admit(Operation.CREATE, make_policy())
    decide(NAME, certificate=b"")
    controller.run_once()
    assert store.list_tokens({}) == []

    decide(NAME)
    clock.advance(29)
    controller.run_once()
    assert store.list_tokens({}) == []
    clock.advance(1)
    controller.run_once()
    assert store.get_token("shop", NAME)


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------

def test_watch_and_worker_threads_materialize_grants(store, gate, decide, make_policy):
    config = GateConfig(resync_interval_seconds=0.5)
    materializer = GrantMaterializer(store, config)

    class NullCollector:
        def sweep(self):
            return SweepReport()

    controller = ApprovalController(
        store, config, materializer, NullCollector(), watch_timeout_seconds=0.2,
    )
    stop = threading.Event()
    controller.start(stop)
    try:
        gate.admit(Operation.CREATE, make_policy())
        decide(NAME)
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline and not store.list_tokens({}):
            time.sleep(0.05)
    finally:
        controller.stop(stop)

    assert store.get_token("shop", NAME)


def test_unexpected_failure_requeues_without_dropping_other_items(store, config, collector, clock):
    scripted = ScriptedMaterializer(RuntimeError("audit db down"), ReconcileOutcome.MATERIALIZED)
    controller = _controller(store, config, collector, clock, scripted)
    controller.queue.add("np-approval-shop-a")
    controller.queue.add("np-approval-shop-b")

    assert controller.run_once() == 2
    assert scripted.calls == ["np-approval-shop-a", "np-approval-shop-b"]
    assert "np-approval-shop-a" in controller.queue
    assert "np-approval-shop-b" not in controller.queue
    assert controller.failures("np-approval-shop-a") == 1
    assert controller.queue.next_due() == clock.now + 1


def test_watch_recovers_from_unexpected_errors(store, collector):
    config = GateConfig(backoff_base_seconds=0.01, backoff_max_seconds=0.01)
    stop = threading.Event()

    class BrokenOnceStore:
        calls = 0

        def watch_requests(self, labels, timeout_seconds):
            BrokenOnceStore.calls += 1
            if BrokenOnceStore.calls == 1:
                raise ValueError("Expecting value: line 1 column 1 (char 0)")
            if BrokenOnceStore.calls == 2:
                return iter([WatchEvent("ADDED", ApprovalRequest(metadata=ObjectMeta(name=NAME)))])
            stop.set()
            return iter([])

    controller = ApprovalController(
        BrokenOnceStore(), config, ScriptedMaterializer(), collector,
    )
    controller.watch(stop)

    assert BrokenOnceStore.calls == 3
    assert NAME in controller.queue
