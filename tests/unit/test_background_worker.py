"""
Unit tests for the serialising background job worker.
"""

import sys
import os
import threading
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..')))

from tagforge.utils.background_worker import BackgroundWorker


class TestBackgroundWorker(unittest.TestCase):
    def setUp(self):
        self.worker = BackgroundWorker(name="TestWorker")

    def tearDown(self):
        self.worker.shutdown()

    def _block(self):
        """Occupy the worker until the returned event is set."""
        started = threading.Event()
        release = threading.Event()

        def blocker():
            started.set()
            release.wait(5)
            return "blocker"

        future = self.worker.submit(blocker)
        self.assertTrue(started.wait(5))
        return future, release

    def test_jobs_run_in_order_on_one_thread(self):
        order = []
        threads = set()

        def job(n):
            order.append(n)
            threads.add(threading.current_thread().name)
            return n * 2

        futures = [self.worker.submit(job, n) for n in range(5)]

        self.assertEqual([f.result(timeout=5) for f in futures], [0, 2, 4, 6, 8])
        self.assertEqual(order, [0, 1, 2, 3, 4])
        self.assertEqual(threads, {"TestWorker-Thread"})

    def test_exception_reaches_future(self):
        def fail():
            raise RuntimeError("conversion exploded")

        future = self.worker.submit(fail)
        with self.assertRaises(RuntimeError):
            future.result(timeout=5)
        # Worker survives a failing job
        self.assertEqual(self.worker.submit(lambda: "ok").result(timeout=5), "ok")

    def test_submit_replacing_cancels_pending(self):
        blocked, release = self._block()

        first = self.worker.submit_replacing("scan", lambda: "first")
        second = self.worker.submit_replacing("scan", lambda: "second")
        release.set()

        self.assertEqual(blocked.result(timeout=5), "blocker")
        self.assertTrue(first.cancelled())
        self.assertEqual(second.result(timeout=5), "second")

    def test_cancel_all(self):
        blocked, release = self._block()
        pending = [self.worker.submit(lambda: None) for _ in range(3)]

        cancelled = self.worker.cancel_all()
        release.set()

        self.assertEqual(cancelled, 3)
        self.assertTrue(all(f.cancelled() for f in pending))
        self.assertEqual(blocked.result(timeout=5), "blocker")

    def test_submit_after_shutdown(self):
        self.worker.shutdown()
        self.assertFalse(self.worker.is_alive())
        with self.assertRaises(RuntimeError):
            self.worker.submit(lambda: None)


if __name__ == '__main__':
    unittest.main()
