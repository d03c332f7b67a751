import threading
import time
import unittest
from concurrent.futures import Future, ThreadPoolExecutor

from mathsteps.utils.deadline import (
    Deadline,
    DeadlineExceededError,
    RequestAbortedError,
    RequestCancelledError,
)


class _ManualClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class DeadlineTestCase(unittest.TestCase):
    def test_remaining_follows_clock(self) -> None:
        clock = _ManualClock()
        deadline = Deadline(10, clock=clock)
        self.assertAlmostEqual(deadline.remaining(), 10.0)
        clock.now += 4
        self.assertAlmostEqual(deadline.remaining(), 6.0)
        clock.now += 7
        self.assertEqual(deadline.remaining(), 0.0)
        self.assertTrue(deadline.expired)

    def test_check_reports_expiry_and_cancellation(self) -> None:
        clock = _ManualClock()
        deadline = Deadline(1, clock=clock)
        deadline.check()
        clock.now += 2
        with self.assertRaises(DeadlineExceededError):
            deadline.check()

        event = threading.Event()
        event.set()
        with self.assertRaises(RequestCancelledError):
            Deadline(60, cancel_event=event).check()

    def test_errors_share_abort_base(self) -> None:
        self.assertTrue(issubclass(RequestCancelledError, RequestAbortedError))
        self.assertTrue(issubclass(DeadlineExceededError, RequestAbortedError))

    def test_sleep_zero_returns_immediately(self) -> None:
        Deadline(1).sleep(0)

    def test_sleep_past_deadline_raises_after_budget(self) -> None:
        started = time.perf_counter()
        with self.assertRaises(DeadlineExceededError):
            Deadline(0.05).sleep(5)
        self.assertLess(time.perf_counter() - started, 1.0)

    def test_sleep_is_interrupted_by_cancellation(self) -> None:
        event = threading.Event()
        timer = threading.Timer(0.05, event.set)
        timer.start()
        started = time.perf_counter()
        try:
            with self.assertRaises(RequestCancelledError):
                Deadline(30, cancel_event=event).sleep(10)
        finally:
            timer.cancel()
        self.assertLess(time.perf_counter() - started, 2.0)

    def test_wait_future_returns_result(self) -> None:
        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(lambda: 42)
            self.assertEqual(Deadline(5).wait_future(future), 42)

    def test_wait_future_reraises_task_error(self) -> None:
        future: Future = Future()
        future.set_exception(ValueError("boom"))
        with self.assertRaises(ValueError):
            Deadline(5).wait_future(future)

    def test_wait_future_times_out(self) -> None:
        with self.assertRaises(DeadlineExceededError):
            Deadline(0.05).wait_future(Future())

    def test_wait_future_observes_cancellation(self) -> None:
        event = threading.Event()
        timer = threading.Timer(0.05, event.set)
        timer.start()
        try:
            with self.assertRaises(RequestCancelledError):
                Deadline(30, cancel_event=event).wait_future(Future())
        finally:
            timer.cancel()


if __name__ == "__main__":
    unittest.main()
