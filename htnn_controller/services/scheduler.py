"""Delivery of reconcile requests to the reconciler.

Every trigger funnels into one queue drained by a single worker, so at most
one reconciliation runs at any time. Requests waiting in the queue are
coalesced, and failed runs are retried with capped exponential backoff.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional, Set

from htnn_controller.core.logging import get_logger
from htnn_controller.models.keys import object_key

logger = get_logger(__name__)


class ReconcileRequest(NamedTuple):
    namespace: str
    name: str


@dataclass(frozen=True)
class ReconcileResult:
    requeue: bool = False
    requeue_after: Optional[float] = None


# Every reconciliation rebuilds everything, so all triggers share one request.
RECONCILE_PLACEHOLDER = ReconcileRequest(namespace="", name="httpfilterpolicies")


def trigger_reconciliation() -> List[ReconcileRequest]:
    return [RECONCILE_PLACEHOLDER]


class GenerationChangedPredicate:
    """Pass watch events only when metadata.generation moved.

    Status and metadata-only updates keep the generation, so they are
    dropped. Deletions always pass.
    """

    def __init__(self):
        self._generations: Dict[str, Any] = {}

    def __call__(self, body: Mapping[str, Any], **kwargs: Any) -> bool:
        metadata = body.get("metadata") or {}
        key = object_key(metadata.get("namespace", ""), metadata.get("name", ""))

        if kwargs.get("type") == "DELETED":
            self._generations.pop(key, None)
            return True

        generation = metadata.get("generation")
        seen = key in self._generations
        previous = self._generations.get(key)
        self._generations[key] = generation
        return not seen or previous != generation


class ReconcileQueue:
    """Single-worker queue in front of a blocking reconcile function."""

    def __init__(
        self,
        reconcile: Callable[[ReconcileRequest], ReconcileResult],
        base_delay: float = 1.0,
        max_delay: float = 300.0,
    ):
        self._reconcile = reconcile
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._queue: Optional[asyncio.Queue] = None
        self._pending: Set[ReconcileRequest] = set()
        self._failures = 0
        self._worker: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    def trigger(self, requests: Iterable[ReconcileRequest]) -> None:
        if self._queue is None:
            raise RuntimeError("reconcile queue is not started")
        for request in requests:
            if request in self._pending:
                continue
            self._pending.add(request)
            self._queue.put_nowait(request)

    async def join(self) -> None:
        """Wait until every queued request has been processed."""
        if self._queue is None:
            raise RuntimeError("reconcile queue is not started")
        await self._queue.join()

    def next_delay(self) -> float:
        return min(self.base_delay * (2 ** max(self._failures - 1, 0)), self.max_delay)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            request = await self._queue.get()
            self._pending.discard(request)
            try:
                await self._process(loop, request)
            finally:
                self._queue.task_done()

    async def _process(self, loop: asyncio.AbstractEventLoop, request: ReconcileRequest) -> None:
        try:
            result = await loop.run_in_executor(None, self._reconcile, request)
        except Exception as e:
            self._failures += 1
            delay = self.next_delay()
            logger.error(f"Reconciliation failed, retrying in {delay:.1f}s: {e}", exc_info=True)
            loop.call_later(delay, self.trigger, [request])
            return

        self._failures = 0
        if result is not None and result.requeue:
            delay = result.requeue_after if result.requeue_after is not None else self.base_delay
            loop.call_later(delay, self.trigger, [request])
