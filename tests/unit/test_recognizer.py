import tempfile
import threading
import time
import unittest
from pathlib import Path

from mathsteps.llm.client import ModelInvocationError, ProviderMode
from mathsteps.nodes.recognizer import (
    RECOGNITION_MAX_TOKENS,
    STUB_PROBLEM_TEXT,
    ProblemRecognizer,
    RecognitionFailedError,
    is_transient_error,
)
from mathsteps.tools.images import ImageUnavailableError
from mathsteps.utils.config_loader import OCRConfig
from mathsteps.utils.deadline import DeadlineExceededError, RequestCancelledError
from tests.mocks.fake_gateway import FakeGateway
from tests.mocks.mock_llm_responses import RECOGNIZED_PROBLEM


def _config(max_retries: int = 3, timeout_sec: int = 5) -> OCRConfig:
    return OCRConfig(provider="openai", model="gpt-4o-mini", api_key="sk-test", timeout_sec=timeout_sec, max_retries=max_retries)


class ProblemRecognizerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.image_path = Path(self._tmpdir.name) / "problem.jpg"
        self.image_path.write_bytes(b"fake-jpeg-bytes")

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def test_returns_trimmed_first_choice(self) -> None:
        gateway = FakeGateway(["  {}  \n".format(RECOGNIZED_PROBLEM), "ignored"])
        recognizer = ProblemRecognizer(_config(), gateway=gateway, retry_backoff_seconds=0)
        self.assertEqual(recognizer.recognize(self.image_path), RECOGNIZED_PROBLEM)
        self.assertEqual(gateway.calls, 1)

    def test_request_carries_image_and_token_bound(self) -> None:
        gateway = FakeGateway([RECOGNIZED_PROBLEM])
        ProblemRecognizer(_config(), gateway=gateway).recognize(self.image_path)
        request = gateway.requests[0]
        self.assertEqual(request.max_tokens, RECOGNITION_MAX_TOKENS)
        parts = request.messages[-1].content
        self.assertEqual(parts[0]["type"], "text")
        self.assertEqual(parts[1]["type"], "image_url")
        self.assertTrue(parts[1]["image_url"]["url"].startswith("data:image/jpeg;base64,"))
        self.assertEqual(parts[1]["image_url"]["detail"], "low")

    def test_transient_failure_is_retried_exactly_max_retries_times(self) -> None:
        gateway = FakeGateway(ModelInvocationError("Error code: 503 - Service Unavailable"))
        recognizer = ProblemRecognizer(_config(max_retries=3), gateway=gateway, retry_backoff_seconds=0)
        with self.assertRaises(RecognitionFailedError) as ctx:
            recognizer.recognize(self.image_path)
        self.assertEqual(gateway.calls, 3)
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertIn("503", str(ctx.exception.last_error))

    def test_transient_failure_then_success(self) -> None:
        gateway = FakeGateway(ModelInvocationError("Bad Gateway"), [RECOGNIZED_PROBLEM])
        recognizer = ProblemRecognizer(_config(), gateway=gateway, retry_backoff_seconds=0)
        self.assertEqual(recognizer.recognize(self.image_path), RECOGNIZED_PROBLEM)
        self.assertEqual(gateway.calls, 2)

    def test_non_transient_failure_stops_immediately(self) -> None:
        gateway = FakeGateway(ModelInvocationError("Error code: 401 - invalid api key"))
        recognizer = ProblemRecognizer(_config(max_retries=5), gateway=gateway, retry_backoff_seconds=0)
        with self.assertRaises(RecognitionFailedError) as ctx:
            recognizer.recognize(self.image_path)
        self.assertEqual(gateway.calls, 1)
        self.assertEqual(ctx.exception.attempts, 1)

    def test_empty_choices_and_blank_content_are_retried(self) -> None:
        gateway = FakeGateway([], ["   "], [RECOGNIZED_PROBLEM])
        recognizer = ProblemRecognizer(_config(max_retries=3), gateway=gateway, retry_backoff_seconds=0)
        self.assertEqual(recognizer.recognize(self.image_path), RECOGNIZED_PROBLEM)
        self.assertEqual(gateway.calls, 3)

    def test_exhausted_empty_content_reports_last_error(self) -> None:
        gateway = FakeGateway([], [""])
        recognizer = ProblemRecognizer(_config(max_retries=2), gateway=gateway, retry_backoff_seconds=0)
        with self.assertRaises(RecognitionFailedError) as ctx:
            recognizer.recognize(self.image_path)
        self.assertEqual(str(ctx.exception.last_error), "empty content")
        self.assertEqual(ctx.exception.attempts, 2)

    def test_non_positive_max_retries_means_one_attempt(self) -> None:
        gateway = FakeGateway(ModelInvocationError("503"))
        recognizer = ProblemRecognizer(_config(max_retries=0), gateway=gateway, retry_backoff_seconds=0)
        with self.assertRaises(RecognitionFailedError):
            recognizer.recognize(self.image_path)
        self.assertEqual(gateway.calls, 1)

    def test_cancelled_backoff_aborts_promptly(self) -> None:
        gateway = FakeGateway(ModelInvocationError("502 Bad Gateway"))
        recognizer = ProblemRecognizer(_config(max_retries=3, timeout_sec=30), gateway=gateway, retry_backoff_seconds=5)
        cancel_event = threading.Event()
        timer = threading.Timer(0.05, cancel_event.set)
        timer.start()
        started = time.perf_counter()
        try:
            with self.assertRaises(RequestCancelledError):
                recognizer.recognize(self.image_path, cancel_event=cancel_event)
        finally:
            timer.cancel()
        self.assertLess(time.perf_counter() - started, 2.0)
        self.assertEqual(gateway.calls, 1)

    def test_backoff_beyond_deadline_raises_deadline_exceeded(self) -> None:
        gateway = FakeGateway(ModelInvocationError("internal error"))
        recognizer = ProblemRecognizer(_config(max_retries=3, timeout_sec=1), gateway=gateway, retry_backoff_seconds=5)
        with self.assertRaises(DeadlineExceededError):
            recognizer.recognize(self.image_path)
        self.assertEqual(gateway.calls, 1)

    def test_missing_image_raises_before_any_call(self) -> None:
        gateway = FakeGateway([RECOGNIZED_PROBLEM])
        recognizer = ProblemRecognizer(_config(), gateway=gateway)
        with self.assertRaises(ImageUnavailableError):
            recognizer.recognize(Path(self._tmpdir.name) / "missing.png")
        self.assertEqual(gateway.calls, 0)

    def test_unconfigured_provider_returns_placeholder(self) -> None:
        recognizer = ProblemRecognizer(OCRConfig())
        self.assertIs(recognizer.mode, ProviderMode.STUB)
        self.assertEqual(recognizer.recognize(self.image_path), STUB_PROBLEM_TEXT)

    def test_transient_markers_are_case_insensitive(self) -> None:
        self.assertTrue(is_transient_error(RuntimeError("Service UNAVAILABLE")))
        self.assertTrue(is_transient_error(RuntimeError("Internal Error occurred")))
        self.assertTrue(is_transient_error(RuntimeError("status 504")))
        self.assertFalse(is_transient_error(RuntimeError("rate limited: 429")))


if __name__ == "__main__":
    unittest.main()
