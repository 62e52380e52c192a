"""
Background Job Worker
=====================

A single persistent thread that runs submitted jobs one at a time. TagForge
uses it to serialise long-running lifecycle jobs (catalog scans, downloads,
conversions) so they never run against each other.

Key Features:
-------------
- Single Persistent Thread: One worker thread handles all submitted jobs
- Futures: Every submission returns a ``concurrent.futures.Future``
- Replacement: ``submit_replacing`` supersedes a pending job with the same id
  (e.g. a new scan request replaces one that has not started yet)
- Cancellation: Pending jobs can be cancelled without touching the running one

Usage:
------
    >>> worker = BackgroundWorker(name="ConversionWorker")
    >>> future = worker.submit(orchestrator.convert, model_id, src, out)
    >>> result = future.result()
    >>> worker.shutdown()
"""

import logging
import queue
import threading
from concurrent.futures import Future
from typing import Callable, Dict, Optional


class BackgroundWorker:
    """
    Single-thread job executor with replacement and cancellation.

    Attributes:
        name: Identifier for logging purposes
    """

    def __init__(self, name: str = "BackgroundWorker"):
        self.name = name
        self.logger = logging.getLogger(__name__)

        self._queue: queue.Queue = queue.Queue()
        self._running = True
        self._lock = threading.Lock()

        # task_id -> Future of the pending job registered under that id
        self._pending_replaceable: Dict[str, Future] = {}

        self._thread = threading.Thread(
            target=self._process_queue,
            name=f"{name}-Thread",
            daemon=True
        )
        self._thread.start()
        self.logger.debug(f"BackgroundWorker '{name}' started")

    def submit(self, task: Callable, *args, **kwargs) -> Future:
        """
        Queue a job; jobs run in FIFO order.

        Raises:
            RuntimeError: If the worker has been shut down
        """
        if not self._running:
            raise RuntimeError(f"Worker '{self.name}' is shut down")

        future = Future()
        self._queue.put((None, future, task, args, kwargs))
        return future

    def submit_replacing(self, task_id: str, task: Callable, *args, **kwargs) -> Future:
        """
        Queue a job that supersedes any pending job with the same id.

        The superseded job's Future is cancelled. A job that already started
        is not affected.
        """
        if not self._running:
            raise RuntimeError(f"Worker '{self.name}' is shut down")

        future = Future()
        with self._lock:
            previous: Optional[Future] = self._pending_replaceable.get(task_id)
            if previous is not None and previous.cancel():
                self.logger.debug(f"Worker '{self.name}' replaced pending task '{task_id}'")
            self._pending_replaceable[task_id] = future
        self._queue.put((task_id, future, task, args, kwargs))
        return future

    def cancel_all(self) -> int:
        """Cancel every pending job and return how many were cancelled."""
        cancelled = 0
        with self._lock:
            while True:
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    break
                if item is not None and item[1].cancel():
                    cancelled += 1
                self._queue.task_done()
            self._pending_replaceable.clear()

        self.logger.debug(f"Worker '{self.name}' cancelled {cancelled} pending tasks")
        return cancelled

    def shutdown(self, timeout: float = 2.0, cancel_pending: bool = True) -> None:
        """
        Stop the worker thread.

        Args:
            timeout: Maximum seconds to wait for the running job to finish
            cancel_pending: Cancel queued jobs instead of running them first
        """
        if not self._running:
            return

        self.logger.debug(f"Worker '{self.name}' shutting down...")
        if cancel_pending:
            self.cancel_all()
        self._running = False
        self._queue.put(None)

        if self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                self.logger.warning(f"Worker '{self.name}' thread did not terminate within {timeout}s")

        self.logger.debug(f"Worker '{self.name}' shutdown complete")

    def _process_queue(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                self._queue.task_done()
                break

            task_id, future, task, args, kwargs = item
            try:
                if not future.set_running_or_notify_cancel():
                    continue
                try:
                    result = task(*args, **kwargs)
                except Exception as e:
                    self.logger.error(
                        f"Worker '{self.name}' task failed: {type(e).__name__}: {e}",
                        exc_info=True
                    )
                    future.set_exception(e)
                else:
                    future.set_result(result)
            finally:
                if task_id is not None:
                    with self._lock:
                        if self._pending_replaceable.get(task_id) is future:
                            del self._pending_replaceable[task_id]
                self._queue.task_done()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    @property
    def pending_count(self) -> int:
        """Approximate number of queued jobs."""
        return self._queue.qsize()
