"""FIFO work queue with a bounded-concurrency worker loop.

:class:`QueueManager` owns every admitted :class:`GenerationRequest` from the
moment it is enqueued until a worker claims it.  Each entry gets its own
future, created at enqueue time and resolved by the worker loop when the
entry reaches a terminal state.

Ordering
--------
Entries *begin* processing in enqueue order.  With ``concurrency=1`` (the
default) the queue is a single lane and entries also finish in order; with a
higher concurrency they may finish out of order.

Failure isolation
-----------------
If the worker function raises (or exceeds ``task_timeout``), only that
entry's future is rejected.  The loop keeps draining.

Lifecycle
---------
::

    queue = QueueManager(concurrency=1)
    queue.start(worker_fn)
    result = await queue.enqueue(request)
    await queue.shutdown()

On shutdown, new enqueues are refused, entries still waiting are failed with
:class:`QueueShutdownError`, and entries already processing run to
completion.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from imageharvest.core.config import HarvestConfig
from imageharvest.core.errors import QueueFullError, QueueShutdownError, QueueTimeoutError
from imageharvest.core.models import EntryState, GenerationRequest

logger = logging.getLogger(__name__)

WorkerFn = Callable[[GenerationRequest], Awaitable[Any]]


@dataclass
class QueueEntry:
    request: GenerationRequest
    future: asyncio.Future
    state: EntryState = EntryState.QUEUED
    started_at: float | None = None
    finished_at: float | None = None
    error: BaseException | None = field(default=None, repr=False)


class QueueManager:
    """Serializes admitted requests and drives the worker loop.

    Args:
        concurrency: Maximum entries processing at once.
        max_size: Maximum waiting entries; ``0`` means unbounded.
        task_timeout: Seconds one entry may spend in the worker.
    """

    def __init__(
        self,
        concurrency: int = 1,
        *,
        max_size: int = 0,
        task_timeout: float = 300.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.max_size = max_size
        self.task_timeout = task_timeout

        self._entries: deque[QueueEntry] = deque()
        self._wakeup = asyncio.Event()
        self._slots = asyncio.Semaphore(concurrency)
        self._inflight: set[asyncio.Task] = set()
        self._runner: asyncio.Task | None = None
        self._closed = False

        self._processing = 0
        self._succeeded = 0
        self._failed = 0

    @classmethod
    def from_config(cls, config: HarvestConfig) -> QueueManager:
        return cls(
            config.queue_concurrency,
            max_size=config.max_queue_size,
            task_timeout=config.task_timeout,
        )

    # -- Producer side ------------------------------------------------------

    def enqueue(self, request: GenerationRequest) -> asyncio.Future:
        """Append *request* to the queue.

        Returns:
            A future resolved with the worker's return value, or rejected with
            the worker's exception.

        Raises:
            QueueShutdownError: The queue is shutting down.
            QueueFullError: ``max_size`` entries are already waiting.
        """
        if self._closed:
            raise QueueShutdownError("Queue is shutting down")
        if self.max_size and len(self._entries) >= self.max_size:
            raise QueueFullError(f"Queue is full ({self.max_size} waiting)")

        future = asyncio.get_running_loop().create_future()
        self._entries.append(QueueEntry(request=request, future=future))
        self._wakeup.set()
        logger.debug(
            "Enqueued %s (waiting=%d)", request.request_id, len(self._entries)
        )
        return future

    # -- Consumer side ------------------------------------------------------

    async def process_queue(self, worker_fn: WorkerFn, *, stop_when_empty: bool = False) -> None:
        """Drain the queue, invoking *worker_fn* once per entry in FIFO order.

        Args:
            worker_fn: Coroutine function called with each request.
            stop_when_empty: Return once the queue is empty and in-flight work
                has finished, instead of waiting for more entries.
        """
        while True:
            await self._slots.acquire()
            entry = await self._next_entry(stop_when_empty)
            if entry is None:
                self._slots.release()
                break

            entry.state = EntryState.PROCESSING
            entry.started_at = time.monotonic()
            self._processing += 1
            task = asyncio.create_task(self._run(entry, worker_fn))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def _next_entry(self, stop_when_empty: bool) -> QueueEntry | None:
        while not self._entries:
            if self._closed or stop_when_empty:
                return None
            self._wakeup.clear()
            await self._wakeup.wait()
        return self._entries.popleft()

    async def _run(self, entry: QueueEntry, worker_fn: WorkerFn) -> None:
        request_id = entry.request.request_id
        try:
            result = await asyncio.wait_for(worker_fn(entry.request), timeout=self.task_timeout)
        except asyncio.TimeoutError:
            logger.error("Queue entry %s timed out after %.1fs", request_id, self.task_timeout)
            self._fail(entry, QueueTimeoutError(f"Request timed out after {self.task_timeout}s"))
        except asyncio.CancelledError:
            self._fail(entry, QueueShutdownError("Request cancelled during shutdown"))
            raise
        except Exception as exc:
            logger.exception("Worker failed for queue entry %s", request_id)
            self._fail(entry, exc)
        else:
            entry.state = EntryState.SUCCEEDED
            entry.finished_at = time.monotonic()
            self._succeeded += 1
            if not entry.future.done():
                entry.future.set_result(result)
        finally:
            self._processing -= 1
            self._slots.release()

    def _fail(self, entry: QueueEntry, exc: BaseException) -> None:
        entry.state = EntryState.FAILED
        entry.finished_at = time.monotonic()
        entry.error = exc
        self._failed += 1
        if not entry.future.done():
            entry.future.set_exception(exc)

    # -- Lifecycle ----------------------------------------------------------

    def start(self, worker_fn: WorkerFn) -> asyncio.Task:
        """Run :meth:`process_queue` as a background task."""
        if self._runner is not None and not self._runner.done():
            raise RuntimeError("Queue worker loop already running")
        self._closed = False
        self._runner = asyncio.create_task(self.process_queue(worker_fn), name="queue-worker")
        logger.info("Queue worker started (concurrency=%d)", self.concurrency)
        return self._runner

    async def shutdown(self, timeout: float | None = None) -> None:
        """Refuse new work, fail waiting entries, and let in-flight entries finish."""
        self._closed = True
        while self._entries:
            entry = self._entries.popleft()
            self._fail(entry, QueueShutdownError("Queue shut down before processing"))
        self._wakeup.set()

        if self._inflight:
            _, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if self._runner is not None:
            await asyncio.gather(self._runner, return_exceptions=True)
            self._runner = None
        logger.info("Queue shut down (succeeded=%d, failed=%d)", self._succeeded, self._failed)

    @property
    def is_running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def stats(self) -> dict[str, int | bool]:
        return {
            "queued": len(self._entries),
            "processing": self._processing,
            "succeeded": self._succeeded,
            "failed": self._failed,
            "concurrency": self.concurrency,
            "running": self.is_running,
        }

    def __len__(self) -> int:
        return len(self._entries)
