"""Recognition stage: problem image -> problem text with LaTeX formulas."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional, Union

from mathsteps.llm.client import (
    LangChainModelGateway,
    ModelGateway,
    ModelGatewayError,
    ModelRequest,
    ProviderMode,
    build_messages,
    resolve_provider_mode,
)
from mathsteps.tools.images import ensure_image_available, load_image_payload
from mathsteps.utils.config_loader import OCRConfig
from mathsteps.utils.deadline import Deadline
from mathsteps.utils.logger import get_logger

logger = get_logger("mathsteps.nodes.recognizer")

RECOGNITION_PROMPT = (
    "Read the math problem in the image and transcribe it completely and accurately.\n"
    "Write every formula in LaTeX: inline formulas as $...$, display formulas as $$...$$.\n"
    "Output only the problem statement itself, without any solution or answer."
)

STUB_PROBLEM_TEXT = "Example problem: solve the quadratic equation $x^2 - 5x + 6 = 0$."

RECOGNITION_MAX_TOKENS = 2048
DEFAULT_RETRY_BACKOFF_SECONDS = 0.5

_TRANSIENT_MARKERS = ("500", "502", "503", "504", "gateway", "unavailable", "internal error")


class RecognitionFailedError(RuntimeError):
    """Raised when the vision provider did not yield usable text.

    Attributes:
        last_error: Last error observed before giving up.
        attempts: Number of provider calls made.
    """

    def __init__(self, last_error: Optional[BaseException], attempts: int) -> None:
        detail = str(last_error) if last_error is not None else "no attempt completed"
        super().__init__("Recognition failed after {} attempt(s): {}".format(attempts, detail))
        self.last_error = last_error
        self.attempts = attempts


class _EmptyChoiceError(RuntimeError):
    pass


def is_transient_error(exc: BaseException) -> bool:
    """Tells whether a provider error looks like a temporary server condition."""
    lowered = str(exc).lower()
    return any(marker in lowered for marker in _TRANSIENT_MARKERS)


class ProblemRecognizer:
    """Turns an uploaded problem photo into problem text.

    Without provider/model configuration a fixed placeholder text is returned
    so the service stays usable offline.

    Args:
        config: Recognition settings.
        gateway: Optional gateway override; built from `config` when omitted.
        retry_backoff_seconds: Linear backoff unit between attempts.
    """

    def __init__(
        self,
        config: OCRConfig,
        gateway: Optional[ModelGateway] = None,
        retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
    ) -> None:
        self.config = config
        self.mode = ProviderMode.STUB
        if resolve_provider_mode(config) is ProviderMode.GATEWAY:
            self.mode = ProviderMode.GATEWAY
        self.retry_backoff_seconds = max(0.0, float(retry_backoff_seconds))
        self._gateway: Optional[ModelGateway] = gateway
        if self._gateway is None and self.mode is ProviderMode.GATEWAY:
            self._gateway = LangChainModelGateway(config)

    def close(self) -> None:
        close = getattr(self._gateway, "close", None)
        if callable(close):
            close()

    def recognize(
        self,
        image_path: Union[str, Path],
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """Recognizes the problem statement in an image.

        Args:
            image_path: Local path of the uploaded image.
            cancel_event: Optional caller cancellation signal.

        Returns:
            Problem text, formulas in LaTeX.

        Raises:
            ImageUnavailableError: If the image cannot be read.
            RecognitionFailedError: If every attempt failed.
            RequestCancelledError: If the caller cancelled during a wait.
            DeadlineExceededError: If the call exceeded its time budget.
        """
        ensure_image_available(image_path)
        if self.mode is ProviderMode.STUB:
            return STUB_PROBLEM_TEXT

        assert self._gateway is not None
        deadline = Deadline(self.config.timeout_seconds(), cancel_event=cancel_event)
        image = load_image_payload(image_path)
        messages = build_messages(RECOGNITION_PROMPT, image=image)
        max_retries = self.config.effective_max_retries()

        last_error: Optional[BaseException] = None
        attempts = 0
        for attempt in range(max_retries):
            if attempt > 0:
                deadline.sleep(attempt * self.retry_backoff_seconds)
            attempts += 1
            request = ModelRequest(messages=messages, deadline=deadline, max_tokens=RECOGNITION_MAX_TOKENS)
            try:
                choices = self._gateway.generate(request)
            except ModelGatewayError as exc:
                last_error = exc
                if is_transient_error(exc) and attempt + 1 < max_retries:
                    logger.warning(
                        "recognition_retry attempt=%d max_retries=%d error=%s",
                        attempt + 1,
                        max_retries,
                        exc,
                    )
                    continue
                break

            if not choices:
                last_error = _EmptyChoiceError("no choices in response")
                logger.warning("recognition_retry attempt=%d reason=no_choices", attempt + 1)
                continue
            text = choices[0].strip()
            if not text:
                last_error = _EmptyChoiceError("empty content")
                logger.warning("recognition_retry attempt=%d reason=empty_content", attempt + 1)
                continue
            logger.info("recognition_done attempts=%d length=%d", attempts, len(text))
            return text

        logger.error("recognition_failed attempts=%d error=%s", attempts, last_error)
        raise RecognitionFailedError(last_error, attempts)
