"""Explanation stage: problem text or image -> ordered explanation steps."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import List, Optional, Union

from mathsteps.llm.client import (
    LangChainModelGateway,
    ModelGateway,
    ModelGatewayError,
    ModelRequest,
    ProviderMode,
    build_messages,
    resolve_provider_mode,
)
from mathsteps.llm.parser import parse_steps_response
from mathsteps.state import Result, Step
from mathsteps.tools.images import ImagePayload, ensure_image_available, load_image_payload
from mathsteps.utils.config_loader import ExplanationConfig
from mathsteps.utils.deadline import Deadline
from mathsteps.utils.logger import get_logger

logger = get_logger("mathsteps.nodes.explainer")

_STEP_FORMAT = (
    "Output strictly a JSON array (no text before or after it). Each step is an object with:\n"
    "- title: a short title for the step\n"
    "- content: the detailed explanation of the step; write formulas in LaTeX, "
    "inline as $...$ and display as $$...$$\n"
    "- image_prompt: an English description of an illustration for the step "
    "(diagram, geometry, function plot, ...)\n"
)

_STEP_EXAMPLE = (
    "Output the JSON array directly, for example:\n"
    '[{"title":"Step 1","content":"...","image_prompt":"..."},{"title":"Step 2",...}]\n'
)

_TEXT_PROMPT_HEAD = (
    "You are a math tutoring assistant. Explain the following problem step by step.\n"
    + _STEP_FORMAT
    + "\nProblem:\n"
)

IMAGE_PROMPT = (
    "You are a math tutoring assistant. Explain the math problem shown in the image step by step.\n"
    + _STEP_FORMAT
    + "\n"
    + _STEP_EXAMPLE
)

STUB_RESULT = Result.of(
    (
        Step(
            title="Step 1",
            content="Let $x^2 - 5x + 6 = (x-a)(x-b)$, then $a+b=5$, $ab=6$.",
            image_prompt="quadratic equation factored form",
        ),
        Step(
            title="Step 2",
            content="Solving gives $a=2,b=3$ or $a=3,b=2$, so $x=2$ or $x=3$.",
            image_prompt="number line with roots",
        ),
    )
)


class NotConfiguredError(RuntimeError):
    """Raised when the explanation provider or model is not configured."""


class NoResponseError(RuntimeError):
    """Raised when the provider answered with zero choices."""


class ExplanationFailedError(RuntimeError):
    """Raised when the provider call itself failed."""


def build_text_prompt(problem_text: str) -> str:
    return _TEXT_PROMPT_HEAD + problem_text + "\n\n" + _STEP_EXAMPLE


class ExplanationGenerator:
    """Produces step-by-step explanations through the configured model.

    Providers outside the supported set answer with a fixed two-step example;
    a missing provider or model makes every call fail with NotConfiguredError.
    """

    def __init__(self, config: ExplanationConfig, gateway: Optional[ModelGateway] = None) -> None:
        self.config = config
        self.mode = resolve_provider_mode(config, require_supported=True)
        self._gateway: Optional[ModelGateway] = gateway
        if self._gateway is None and self.mode is ProviderMode.GATEWAY:
            self._gateway = LangChainModelGateway(config)

    def close(self) -> None:
        close = getattr(self._gateway, "close", None)
        if callable(close):
            close()

    @property
    def is_configured(self) -> bool:
        return self.mode is not ProviderMode.NOT_CONFIGURED

    def explain(self, problem_text: str, cancel_event: Optional[threading.Event] = None) -> Result:
        """Explains a problem given as text.

        Args:
            problem_text: Problem statement, formulas in LaTeX.
            cancel_event: Optional caller cancellation signal.

        Returns:
            Parsed explanation steps.

        Raises:
            NotConfiguredError: If provider or model is missing.
            ExplanationFailedError: If the provider call failed.
            NoResponseError: If the provider returned no choices.
            ResponseParseError: If the answer is not a valid step array.
        """
        self._ensure_configured()
        if self.mode is ProviderMode.STUB:
            return STUB_RESULT
        return self._generate(build_text_prompt(problem_text), None, cancel_event)

    def explain_from_image(
        self,
        image_path: Union[str, Path],
        cancel_event: Optional[threading.Event] = None,
    ) -> Result:
        """Explains the problem shown in an image, without a recognition pass.

        The fixed example served for unsupported providers ignores the image.

        Raises:
            ImageUnavailableError: If the image cannot be read.
            NotConfiguredError: If provider or model is missing.
            ExplanationFailedError: If the provider call failed.
            NoResponseError: If the provider returned no choices.
            ResponseParseError: If the answer is not a valid step array.
        """
        self._ensure_configured()
        if self.mode is ProviderMode.STUB:
            return STUB_RESULT
        ensure_image_available(image_path)
        return self._generate(IMAGE_PROMPT, load_image_payload(image_path), cancel_event)

    def _ensure_configured(self) -> None:
        if self.mode is ProviderMode.NOT_CONFIGURED:
            raise NotConfiguredError("llm explanation not configured")

    def _generate(
        self,
        prompt: str,
        image: Optional[ImagePayload],
        cancel_event: Optional[threading.Event],
    ) -> Result:
        assert self._gateway is not None
        deadline = Deadline(self.config.timeout_seconds(), cancel_event=cancel_event)
        request = ModelRequest(
            messages=build_messages(prompt, system_prompt=self._load_system_prompt(), image=image),
            deadline=deadline,
            max_tokens=self.config.effective_max_tokens(),
            temperature=self.config.effective_temperature(),
        )
        try:
            choices: List[str] = self._gateway.generate(request)
        except ModelGatewayError as exc:
            logger.error("explanation_failed provider=%s error=%s", self.config.provider, exc)
            raise ExplanationFailedError(str(exc)) from exc
        if not choices:
            raise NoResponseError("no response from llm")
        result = parse_steps_response(choices[0])
        logger.info("explanation_done provider=%s steps=%d", self.config.provider, len(result))
        return result

    def _load_system_prompt(self) -> Optional[str]:
        path = self.config.system_prompt_file
        if not path:
            return None
        try:
            text = Path(path).read_text(encoding="utf-8").strip()
        except OSError as exc:
            logger.warning("system_prompt_unreadable path=%s error=%s", path, exc)
            return None
        return text or None
