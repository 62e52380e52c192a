"""
Daemon thread pool used to offload CPU-bound inference.

Worker threads are daemons so a pending inference never keeps the process
alive at exit. Implements the parts of ``concurrent.futures.Executor`` the
session cache relies on: ``submit``, ``map``, ``shutdown`` and context
management.
"""

import logging
import queue
import threading
import time
from concurrent.futures import Executor, Future
from typing import List, Optional

logger = logging.getLogger(__name__)

_SENTINEL = None


class DaemonThreadPoolExecutor(Executor):
    """
    A ThreadPoolExecutor-like class whose worker threads are daemons.

    Threads are started lazily, one per submission, until ``max_workers`` is
    reached; idle workers are reused before a new one is started.
    """

    def __init__(self, max_workers: Optional[int] = None, thread_name_prefix: str = 'DaemonWorker'):
        if max_workers is None:
            max_workers = 4
        if max_workers <= 0:
            raise ValueError("max_workers must be greater than 0")

        self._max_workers = max_workers
        self._thread_name_prefix = thread_name_prefix
        self._work_queue: queue.Queue = queue.Queue()
        self._threads: List[threading.Thread] = []
        self._idle = threading.Semaphore(0)
        self._shutdown = False
        self._lock = threading.Lock()

    def submit(self, fn, *args, **kwargs) -> Future:
        with self._lock:
            if self._shutdown:
                raise RuntimeError('cannot schedule new futures after shutdown')

            future = Future()
            self._work_queue.put((fn, args, kwargs, future))
            self._adjust_thread_count()
            return future

    def _adjust_thread_count(self):
        # Reuse an idle worker if one is waiting
        if self._idle.acquire(timeout=0):
            return
        if len(self._threads) < self._max_workers:
            t = threading.Thread(
                target=self._worker_loop,
                daemon=True,
                name=f"{self._thread_name_prefix}-{len(self._threads)}"
            )
            t.start()
            self._threads.append(t)

    def _worker_loop(self):
        while True:
            item = self._work_queue.get()
            if item is _SENTINEL:
                self._work_queue.put(_SENTINEL)  # Wake the next worker
                return

            fn, args, kwargs, future = item
            if future.set_running_or_notify_cancel():
                try:
                    result = fn(*args, **kwargs)
                except BaseException as e:
                    future.set_exception(e)
                else:
                    future.set_result(result)
            del item, fn, args, kwargs, future
            self._idle.release()

    def shutdown(self, wait: bool = True, cancel_futures: bool = False):
        with self._lock:
            self._shutdown = True
            if cancel_futures:
                while True:
                    try:
                        item = self._work_queue.get_nowait()
                    except queue.Empty:
                        break
                    if item is not _SENTINEL:
                        item[3].cancel()
            self._work_queue.put(_SENTINEL)

        if wait:
            for t in self._threads:
                t.join()

    def map(self, fn, *iterables, timeout=None, chunksize=1):
        """
        Returns an iterator equivalent to map(fn, *iterables).

        All calls are submitted up front; results are yielded in input order.
        """
        end_time = None if timeout is None else time.monotonic() + timeout
        futures = [self.submit(fn, *args) for args in zip(*iterables)]

        def result_iterator():
            try:
                for future in futures:
                    if end_time is None:
                        yield future.result()
                    else:
                        yield future.result(max(end_time - time.monotonic(), 0))
            finally:
                for future in futures:
                    future.cancel()

        return result_iterator()
