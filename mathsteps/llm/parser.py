"""Recovery of step lists from free-form model output."""

from __future__ import annotations

import json
import re
from typing import Any, List, Optional

from mathsteps.state import Result, Step, step_to_dict
from mathsteps.utils.logger import get_logger

logger = get_logger("mathsteps.llm.parser")

_LEADING_FENCE = re.compile(r"^```[\w+-]*")
_TRAILING_FENCE = re.compile(r"```$")
_STEP_FIELDS = ("title", "content", "image_prompt")


class ResponseParseError(ValueError):
    """Raised when a model response cannot be turned into steps."""


class EmptyResponseError(ResponseParseError):
    """Raised when the model returned only whitespace."""


class MalformedStepDataError(ResponseParseError):
    """Raised when the response does not decode to a JSON array of step objects.

    Attributes:
        response_length: Length of the text that failed to decode.
        cause: Underlying decode or validation error.
    """

    def __init__(self, message: str, response_length: int, cause: Optional[Exception] = None) -> None:
        super().__init__("{} (response length {})".format(message, response_length))
        self.response_length = response_length
        self.cause = cause


def parse_steps_response(raw_text: str) -> Result:
    """Parses a model response into an ordered step result.

    The response should be a JSON array of `{title, content, image_prompt}`
    objects but may be wrapped in a fenced code block or surrounded by prose.

    Args:
        raw_text: Raw model output.

    Returns:
        Result holding the steps in array order; `[]` yields zero steps.

    Raises:
        EmptyResponseError: If the response is blank.
        MalformedStepDataError: If no valid step array can be decoded.
    """
    text = (raw_text or "").strip()
    logger.info("llm_raw_output length=%d text=%s", len(text), text)
    if not text:
        raise EmptyResponseError("Empty response from model.")

    if text.startswith("```"):
        text = _LEADING_FENCE.sub("", text, count=1).strip()
        text = _TRAILING_FENCE.sub("", text).strip()

    start = text.find("[")
    end = text.rfind("]")
    if start >= 0 and end > start:
        text = text[start : end + 1]

    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedStepDataError("Invalid step JSON: {}".format(exc), len(text), exc) from exc

    if decoded is None:
        return Result()
    if not isinstance(decoded, list):
        raise MalformedStepDataError(
            "Expected a JSON array of steps, got {}".format(type(decoded).__name__),
            len(text),
        )
    return Result.of(_to_step(item, index, len(text)) for index, item in enumerate(decoded))


def render_steps_response(result: Result) -> str:
    """Renders a result back into the JSON array form expected from the model."""
    payload: List[dict] = []
    for step in result.steps:
        item = step_to_dict(step)
        item.setdefault("image_prompt", "")
        item.pop("image_url", None)
        payload.append(item)
    return json.dumps(payload, ensure_ascii=False, indent=2)


def _to_step(item: Any, index: int, response_length: int) -> Step:
    if not isinstance(item, dict):
        raise MalformedStepDataError(
            "Step {} is not an object".format(index),
            response_length,
        )
    values = {}
    for name in _STEP_FIELDS:
        value = item.get(name)
        if value is None:
            values[name] = ""
        elif isinstance(value, str):
            values[name] = value
        else:
            raise MalformedStepDataError(
                "Step {} field '{}' must be a string".format(index, name),
                response_length,
            )
    return Step(**values)
