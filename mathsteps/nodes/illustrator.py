"""Per-step illustration hook.

Image synthesis is pluggable; the default generator produces no images.
"""

from __future__ import annotations

from typing import List, Optional, Protocol

from mathsteps.state import Result, Step, StepView
from mathsteps.utils.logger import get_logger

logger = get_logger("mathsteps.nodes.illustrator")


class StepImageGenerator(Protocol):
    def generate(self, prompt: str) -> str:
        """Returns a local path or URL for the prompt, or an empty string."""


class NoopImageGenerator:
    def generate(self, prompt: str) -> str:
        del prompt
        return ""


def illustration_prompt(step: Step) -> str:
    if step.image_prompt:
        return step.image_prompt
    return "{}: {}".format(step.title, step.content)


def illustrate_result(result: Result, generator: Optional[StepImageGenerator]) -> Result:
    """Attaches an image URL to every step.

    Args:
        result: Parsed explanation.
        generator: Image generator; None returns `result` unchanged.

    Returns:
        A new result whose steps are StepViews. A failed generation leaves
        that step without an image.
    """
    if generator is None:
        return result
    views: List[Step] = []
    for index, step in enumerate(result.steps):
        image_url = ""
        try:
            image_url = generator.generate(illustration_prompt(step)) or ""
        except Exception as exc:
            logger.warning("step_illustration_failed step=%d error=%s", index + 1, exc)
        views.append(
            StepView(
                title=step.title,
                content=step.content,
                image_prompt=step.image_prompt,
                image_url=image_url,
            )
        )
    return Result.of(views)
