"""De-duplicating work queue and the bounded worker pool draining it.

The queue holds Stage keys, never Stages: a key is reconciled from the
store's latest state whenever it is processed, so any number of adds while a
key is waiting collapse into one reconciliation.

Guarantees:
    - A key is queued at most once at a time.
    - A key is processed by at most one worker at a time. A key added while
      being processed is queued again once its worker calls ``done``.
    - Delayed adds (``add_after``) become ready at their due time; an earlier
      due time for the same key wins.

Example:
    >>> queue = WorkQueue()
    >>> queue.add(ObjectKey("demo", "test"))
    >>> queue.add(ObjectKey("demo", "test"))
    >>> len(queue)
    1
"""

from __future__ import annotations

import heapq
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import TYPE_CHECKING, Generic, TypeVar

import structlog

from railyard_core.resilience import Backoff

if TYPE_CHECKING:
    from collections.abc import Callable, Hashable

    from railyard_core.config import BackoffConfig
    from railyard_core.schemas.meta import ObjectKey
    from railyard_core.stages.dispatch import StageReconciler

logger = structlog.get_logger(__name__)

K = TypeVar("K", bound="Hashable")


class WorkQueue(Generic[K]):
    """Thread-safe, de-duplicating queue of keys with delayed adds.

    Args:
        backoff: Per-key backoff used by ``add_rate_limited``.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        backoff: Backoff | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backoff = backoff or Backoff()
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: list[K] = []
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._waiting: list[tuple[float, int, K]] = []
        self._due: dict[K, float] = {}
        self._seq = 0
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        """Return whether ``shutdown`` has been called."""
        with self._cond:
            return self._shutting_down

    def add(self, key: K) -> None:
        """Queue a key for processing unless it is already queued."""
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: K) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: K, delay: timedelta | float) -> None:
        """Queue a key once the delay has passed."""
        seconds = delay.total_seconds() if isinstance(delay, timedelta) else delay
        if seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due = self._clock() + seconds
            current = self._due.get(key)
            if current is not None and current <= due:
                return
            self._due[key] = due
            self._seq += 1
            heapq.heappush(self._waiting, (due, self._seq, key))
            self._cond.notify()

    def add_rate_limited(self, key: K) -> float:
        """Queue a key after its next backoff delay.

        Returns:
            The delay applied, in seconds.
        """
        delay = self._backoff.next_delay(key)
        self.add_after(key, delay)
        return delay

    def forget(self, key: K) -> None:
        """Reset the backoff of a key after it was processed successfully."""
        self._backoff.reset(key)

    def num_requeues(self, key: K) -> int:
        """Return the number of consecutive rate-limited adds of a key."""
        return self._backoff.failures(key)

    def get(self, timeout: float | None = None) -> K | None:
        """Take the next ready key, waiting for one if necessary.

        The caller must call ``done`` with the key when finished with it.

        Returns:
            The key, or None on shutdown or when the timeout expires.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_due_locked()
                if self._queue:
                    key = self._queue.pop(0)
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutting_down:
                    return None
                now = self._clock()
                if deadline is not None and deadline <= now:
                    return None
                self._cond.wait(self._next_wait_locked(now, deadline))

    def done(self, key: K) -> None:
        """Mark a key as processed, re-queueing it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        """Stop accepting keys and wake every waiting consumer."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def _promote_due_locked(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            due, _, key = heapq.heappop(self._waiting)
            if self._due.get(key) != due:
                continue
            del self._due[key]
            self._add_locked(key)

    def _next_wait_locked(self, now: float, deadline: float | None) -> float | None:
        candidates = []
        if self._waiting:
            candidates.append(self._waiting[0][0] - now)
        if deadline is not None:
            candidates.append(deadline - now)
        if not candidates:
            return None
        return max(min(candidates), 0.0)


# =============================================================================
# Worker pool
# =============================================================================


class ReconcileWorkerPool:
    """Bounded pool of workers draining one queue through one reconciler.

    Each processed key follows the reconciler's result: an error requeues it
    with backoff, ``requeue`` queues it again right away and
    ``requeue_after`` schedules it after the delay. Every other outcome
    resets the key's backoff.

    Args:
        reconciler: Reconciler invoked for every key.
        queue: Queue to drain.
        max_workers: Number of concurrent workers.
    """

    def __init__(
        self,
        reconciler: StageReconciler,
        queue: WorkQueue[ObjectKey],
        max_workers: int,
    ) -> None:
        self._reconciler = reconciler
        self._queue = queue
        self._max_workers = max_workers
        self._executor: ThreadPoolExecutor | None = None
        self._log = logger.bind(kind=str(reconciler.kind), max_workers=max_workers)

    @property
    def queue(self) -> WorkQueue[ObjectKey]:
        """Return the queue drained by this pool."""
        return self._queue

    def start(self) -> None:
        """Start the workers."""
        if self._executor is not None:
            return
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix=f"railyard-{self._reconciler.kind}",
        )
        for _ in range(self._max_workers):
            self._executor.submit(self._run)
        self._log.info("worker_pool_started")

    def stop(self, wait: bool = True) -> None:
        """Shut the queue down and wait for in-flight keys to finish."""
        self._queue.shutdown()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        self._log.info("worker_pool_stopped")

    def _run(self) -> None:
        while self.process_next():
            pass

    def process_next(self, timeout: float | None = None) -> bool:
        """Process one key from the queue.

        Returns:
            False once the queue is shut down (or the timeout expired with
            nothing to do), True otherwise.
        """
        key = self._queue.get(timeout)
        if key is None:
            return False
        try:
            self._process(key)
        finally:
            self._queue.done(key)
        return True

    def _process(self, key: ObjectKey) -> None:
        log = self._log.bind(namespace=key.namespace, stage=key.name)
        try:
            result = self._reconciler.reconcile(key)
        except Exception as e:
            log.exception("reconcile_panicked", error=str(e))
            self._queue.add_rate_limited(key)
            return

        if result.error is not None:
            delay = self._queue.add_rate_limited(key)
            log.error("reconcile_failed", error=str(result.error), retry_in_seconds=delay)
            return

        self._queue.forget(key)
        if result.requeue:
            self._queue.add(key)
        elif result.requeue_after is not None:
            self._queue.add_after(key, result.requeue_after)


def new_work_queue(config: BackoffConfig | None = None) -> WorkQueue[ObjectKey]:
    """Return a Stage key queue with the configured error backoff."""
    return WorkQueue(Backoff(config))


__all__ = ["ReconcileWorkerPool", "WorkQueue", "new_work_queue"]
