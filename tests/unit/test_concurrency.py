import unittest
import threading
import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..')))

from tagforge.utils.concurrency import DaemonThreadPoolExecutor


class TestDaemonThreadPoolExecutor(unittest.TestCase):
    def test_daemon_submit(self):
        """Verify that submitted tasks run in daemon threads."""
        def check_daemon():
            return threading.current_thread().daemon

        with DaemonThreadPoolExecutor(max_workers=1) as executor:
            future = executor.submit(check_daemon)
            self.assertTrue(future.result(timeout=5), "Worker thread should be a daemon thread")

    def test_daemon_map(self):
        """Verify that mapped tasks run in daemon threads and keep input order."""
        def square(x):
            return x * x, threading.current_thread().daemon

        with DaemonThreadPoolExecutor(max_workers=2) as executor:
            results = list(executor.map(square, [1, 2, 3], timeout=5))

        self.assertEqual([r[0] for r in results], [1, 4, 9])
        self.assertTrue(all(r[1] for r in results))

    def test_worker_count_bounded(self):
        release = threading.Event()
        names = set()
        lock = threading.Lock()

        def task():
            with lock:
                names.add(threading.current_thread().name)
            release.wait(5)

        executor = DaemonThreadPoolExecutor(max_workers=2, thread_name_prefix="Bounded")
        futures = [executor.submit(task) for _ in range(6)]
        release.set()
        for future in futures:
            future.result(timeout=5)
        executor.shutdown()

        self.assertLessEqual(len(names), 2)
        self.assertTrue(all(name.startswith("Bounded-") for name in names))

    def test_exception_propagates(self):
        def fail():
            raise ValueError("bad input")

        with DaemonThreadPoolExecutor(max_workers=1) as executor:
            future = executor.submit(fail)
            with self.assertRaises(ValueError):
                future.result(timeout=5)

    def test_submit_after_shutdown(self):
        executor = DaemonThreadPoolExecutor(max_workers=1)
        executor.shutdown()
        with self.assertRaises(RuntimeError):
            executor.submit(lambda: None)

    def test_cancel_futures(self):
        started = threading.Event()
        release = threading.Event()

        def blocker():
            started.set()
            release.wait(5)

        executor = DaemonThreadPoolExecutor(max_workers=1)
        running = executor.submit(blocker)
        started.wait(5)
        pending = executor.submit(lambda: "never")
        executor.shutdown(wait=False, cancel_futures=True)
        release.set()

        self.assertTrue(pending.cancelled())
        self.assertIsNone(running.result(timeout=5))

    def test_invalid_worker_count(self):
        with self.assertRaises(ValueError):
            DaemonThreadPoolExecutor(max_workers=0)


if __name__ == '__main__':
    unittest.main()
