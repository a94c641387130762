"""Unit tests for reconcile request delivery."""

import asyncio
import threading

import pytest

from htnn_controller.services.scheduler import (
    RECONCILE_PLACEHOLDER,
    GenerationChangedPredicate,
    ReconcileQueue,
    ReconcileRequest,
    ReconcileResult,
    trigger_reconciliation,
)


def body(name="vs", namespace="default", generation=1):
    return {"metadata": {"name": name, "namespace": namespace, "generation": generation}}


@pytest.mark.unit
class TestGenerationChangedPredicate:
    def test_first_sighting_passes(self):
        predicate = GenerationChangedPredicate()

        assert predicate(body(), type="ADDED") is True

    def test_same_generation_is_filtered(self):
        predicate = GenerationChangedPredicate()
        predicate(body(), type="ADDED")

        assert predicate(body(), type="MODIFIED") is False

    def test_new_generation_passes(self):
        predicate = GenerationChangedPredicate()
        predicate(body(), type="ADDED")

        assert predicate(body(generation=2), type="MODIFIED") is True
        assert predicate(body(generation=2), type="MODIFIED") is False

    def test_deletion_always_passes_and_forgets(self):
        predicate = GenerationChangedPredicate()
        predicate(body(), type="ADDED")

        assert predicate(body(), type="DELETED") is True
        assert predicate(body(), type="ADDED") is True

    def test_objects_are_tracked_separately(self):
        predicate = GenerationChangedPredicate()
        predicate(body(name="a"), type="ADDED")

        assert predicate(body(name="b"), type="ADDED") is True


@pytest.mark.unit
def test_trigger_reconciliation_uses_placeholder():
    assert trigger_reconciliation() == [RECONCILE_PLACEHOLDER]


@pytest.mark.unit
class TestReconcileQueue:
    @pytest.mark.asyncio
    async def test_pending_requests_are_coalesced(self):
        calls = []
        queue = ReconcileQueue(lambda request: calls.append(request) or ReconcileResult())
        queue.start()
        try:
            for _ in range(3):
                queue.trigger(trigger_reconciliation())
            await queue.join()
        finally:
            await queue.stop()

        assert calls == [RECONCILE_PLACEHOLDER]

    @pytest.mark.asyncio
    async def test_reconciliations_never_overlap(self):
        lock = threading.Lock()
        overlaps = []

        def reconcile(request):
            if not lock.acquire(blocking=False):
                overlaps.append(request)
                return ReconcileResult()
            try:
                threading.Event().wait(0.01)
            finally:
                lock.release()
            return ReconcileResult()

        queue = ReconcileQueue(reconcile)
        queue.start()
        try:
            queue.trigger([ReconcileRequest("ns", str(i)) for i in range(5)])
            await queue.join()
        finally:
            await queue.stop()

        assert overlaps == []

    @pytest.mark.asyncio
    async def test_failure_is_retried(self):
        attempts = []
        done = asyncio.Event()
        loop = asyncio.get_running_loop()

        def reconcile(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise RuntimeError("api server unavailable")
            loop.call_soon_threadsafe(done.set)
            return ReconcileResult()

        queue = ReconcileQueue(reconcile, base_delay=0.01, max_delay=0.05)
        queue.start()
        try:
            queue.trigger(trigger_reconciliation())
            await asyncio.wait_for(done.wait(), timeout=5)
        finally:
            await queue.stop()

        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_requeue_result_is_honoured(self):
        attempts = []
        done = asyncio.Event()
        loop = asyncio.get_running_loop()

        def reconcile(request):
            attempts.append(request)
            if len(attempts) == 1:
                return ReconcileResult(requeue=True, requeue_after=0.01)
            loop.call_soon_threadsafe(done.set)
            return ReconcileResult()

        queue = ReconcileQueue(reconcile)
        queue.start()
        try:
            queue.trigger(trigger_reconciliation())
            await asyncio.wait_for(done.wait(), timeout=5)
        finally:
            await queue.stop()

        assert len(attempts) == 2

    def test_backoff_is_capped(self):
        queue = ReconcileQueue(lambda request: ReconcileResult(), base_delay=1, max_delay=10)

        delays = []
        for failures in range(1, 7):
            queue._failures = failures
            delays.append(queue.next_delay())

        assert delays == [1, 2, 4, 8, 10, 10]

    def test_trigger_before_start_fails(self):
        queue = ReconcileQueue(lambda request: ReconcileResult())

        with pytest.raises(RuntimeError):
            queue.trigger(trigger_reconciliation())

    @pytest.mark.asyncio
    async def test_join_before_start_fails(self):
        queue = ReconcileQueue(lambda request: ReconcileResult())

        with pytest.raises(RuntimeError, match="not started"):
            await queue.join()
