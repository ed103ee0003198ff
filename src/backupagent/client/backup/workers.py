"""Bounded worker groups for concurrent transfer operations.

This module provides:
- ConcurrencyLimiter: Counting limiter shared by transfer workers
- TransferGroup: Worker threads fed by a bounded queue, with
  cooperative cancellation and an outcome collector
- GroupOutcome: What a group produced once drained
- ProgressTracker: Thread-safe byte counter feeding a ProgressCallback

Usage:
    limiter = ConcurrencyLimiter(4)
    with TransferGroup("upload", workers=4, limiter=limiter) as group:
        for chunk in chunks:
            if not group.submit(chunk.offset, lambda c=chunk: upload(c)):
                break  # a task failed, stop producing
    outcome = group.outcome
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

from backupagent.client.backup.types import ProgressCallback, TransferProgress

logger = logging.getLogger(__name__)


class ConcurrencyLimiter:
    """Counting limiter bounding in-flight transfer operations.

    Safe for concurrent acquire/release from any thread. Tracks the
    current and peak number of holders.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self._limit = limit
        self._semaphore = threading.BoundedSemaphore(limit)
        self._lock = threading.Lock()
        self._in_flight = 0
        self._peak = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_flight(self) -> int:
        """Get number of current holders."""
        with self._lock:
            return self._in_flight

    @property
    def peak(self) -> int:
        """Get the highest number of simultaneous holders seen."""
        with self._lock:
            return self._peak

    def acquire(self) -> None:
        self._semaphore.acquire()
        with self._lock:
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)

    def release(self) -> None:
        with self._lock:
            self._in_flight -= 1
        self._semaphore.release()

    def __enter__(self) -> ConcurrencyLimiter:
        self.acquire()
        return self

    def __exit__(self, *args: object) -> None:
        self.release()


class ProgressTracker:
    """Accumulates transferred bytes from worker threads and reports them.

    The callback runs under the tracker's lock so reports arrive in
    increasing bytes_done order.
    """

    def __init__(
        self,
        path: str,
        operation: str,
        total: int | None,
        callback: ProgressCallback | None,
    ) -> None:
        self._path = path
        self._operation = operation
        self._total = total
        self._callback = callback
        self._lock = threading.Lock()
        self._done = 0

    @property
    def bytes_done(self) -> int:
        with self._lock:
            return self._done

    def advance(self, count: int) -> None:
        """Record count more bytes and notify the callback."""
        with self._lock:
            self._done += count
            if self._callback:
                self._callback(
                    TransferProgress(
                        path=self._path,
                        operation=self._operation,
                        bytes_done=self._done,
                        total=self._total,
                    )
                )


class GroupState(Enum):
    """State of a transfer group."""

    IDLE = auto()
    RUNNING = auto()
    DRAINED = auto()


@dataclass
class _Task:
    key: Any
    func: Callable[[], Any]


@dataclass
class _Outcome:
    key: Any
    result: Any = None
    error: BaseException | None = None
    skipped: bool = False


@dataclass
class GroupOutcome:
    """Results gathered from a drained group.

    Attributes:
        results: (key, value) pairs of tasks that succeeded.
        errors: (key, error) pairs of tasks that failed.
        skipped: Keys of tasks dropped after cancellation.
    """

    results: list[tuple[Any, Any]] = field(default_factory=list)
    errors: list[tuple[Any, BaseException]] = field(default_factory=list)
    skipped: list[Any] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors and not self.skipped

    @property
    def first_error(self) -> tuple[Any, BaseException] | None:
        return self.errors[0] if self.errors else None


class TransferGroup:
    """Pool of worker threads processing tasks from a bounded queue.

    The producer calls submit() from its own thread; submit() blocks once
    the queue is full. The first failing task sets the shared cancel
    signal: workers then drop queued tasks without running them, while
    tasks already running finish normally. Results and errors flow
    through a collector queue and are read back with wait().
    """

    def __init__(
        self,
        name: str,
        workers: int,
        limiter: ConcurrencyLimiter | None = None,
        queue_size: int = 0,
    ) -> None:
        """Initialize the group.

        Args:
            name: Name used for threads and logs.
            workers: Number of worker threads.
            limiter: Optional limiter shared with other groups.
            queue_size: Bound of the task queue. Defaults to twice the workers.
        """
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._name = name
        self._workers_count = workers
        self._limiter = limiter or ConcurrencyLimiter(workers)
        self._tasks: queue.Queue[_Task | None] = queue.Queue(maxsize=queue_size or workers * 2)
        self._outcomes: queue.Queue[_Outcome] = queue.Queue()
        self._cancel = threading.Event()
        self._threads: list[threading.Thread] = []
        self._state = GroupState.IDLE
        self._outcome: GroupOutcome | None = None

    @property
    def state(self) -> GroupState:
        return self._state

    @property
    def limiter(self) -> ConcurrencyLimiter:
        return self._limiter

    @property
    def cancelled(self) -> bool:
        """Check if the group was cancelled."""
        return self._cancel.is_set()

    @property
    def outcome(self) -> GroupOutcome:
        """Get the outcome of a drained group."""
        if self._outcome is None:
            raise RuntimeError(f"{self._name} group has not been drained")
        return self._outcome

    def start(self) -> None:
        """Start the worker threads."""
        if self._state != GroupState.IDLE:
            raise RuntimeError(f"{self._name} group already started")
        self._state = GroupState.RUNNING
        for i in range(self._workers_count):
            thread = threading.Thread(
                target=self._worker_loop,
                name=f"{self._name}-{i}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.debug(f"{self._name} group started with {self._workers_count} workers")

    def cancel(self) -> None:
        """Stop starting new tasks; running tasks finish."""
        if not self._cancel.is_set():
            logger.debug(f"{self._name} group cancelled")
        self._cancel.set()

    def submit(self, key: Any, func: Callable[[], Any]) -> bool:
        """Queue a task, blocking while the queue is full.

        Args:
            key: Identifier reported back with the task's outcome.
            func: Work to run on a worker thread.

        Returns:
            True if queued, False if the group is cancelled.
        """
        if self._state != GroupState.RUNNING:
            raise RuntimeError(f"{self._name} group is not running")
        if self._cancel.is_set():
            return False
        self._tasks.put(_Task(key=key, func=func))
        return True

    def wait(self) -> GroupOutcome:
        """Wait for every queued task and return the collected outcome."""
        if self._state == GroupState.DRAINED:
            return self.outcome
        if self._state == GroupState.IDLE:
            self._state = GroupState.DRAINED
            self._outcome = GroupOutcome()
            return self._outcome

        # Poison pills stop the workers once the queue is empty
        for _ in self._threads:
            self._tasks.put(None)
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        self._state = GroupState.DRAINED

        outcome = GroupOutcome()
        while not self._outcomes.empty():
            item = self._outcomes.get_nowait()
            if item.skipped:
                outcome.skipped.append(item.key)
            elif item.error is not None:
                outcome.errors.append((item.key, item.error))
            else:
                outcome.results.append((item.key, item.result))
        self._outcome = outcome
        return outcome

    def __enter__(self) -> TransferGroup:
        self.start()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        if exc is not None:
            self.cancel()
        self.wait()

    def _worker_loop(self) -> None:
        """Main loop for worker threads."""
        while True:
            task = self._tasks.get()
            if task is None:
                break

            if self._cancel.is_set():
                self._outcomes.put(_Outcome(key=task.key, skipped=True))
                continue

            try:
                with self._limiter:
                    result = task.func()
            except Exception as e:
                logger.debug(f"{self._name} task {task.key!r} failed: {e}")
                self._outcomes.put(_Outcome(key=task.key, error=e))
                self._cancel.set()
            else:
                self._outcomes.put(_Outcome(key=task.key, result=result))
