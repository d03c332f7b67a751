"""Typed data contracts shared by the explanation pipeline and the stores."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

HISTORY_KIND_UPLOAD = "upload"
HISTORY_KIND_TEXT = "text"
HISTORY_KINDS = (HISTORY_KIND_UPLOAD, HISTORY_KIND_TEXT)


@dataclass(frozen=True)
class Step:
    """One explanation step as produced by the response parser.

    Attributes:
        title: Short step title.
        content: Step body in Markdown, formulas in LaTeX (`$...$` / `$$...$$`).
        image_prompt: Description used to illustrate the step.
    """

    title: str
    content: str
    image_prompt: str = ""


@dataclass(frozen=True)
class StepView(Step):
    """A step enriched by the illustration stage."""

    image_url: str = ""


@dataclass(frozen=True)
class Result:
    """Ordered, immutable sequence of steps for one generation request."""

    steps: Tuple[Step, ...] = ()

    @classmethod
    def of(cls, steps: Iterable[Step]) -> "Result":
        return cls(steps=tuple(steps))

    def __len__(self) -> int:
        return len(self.steps)


@dataclass
class HistoryItem:
    """One durable record of a submission.

    `path` is meaningful for uploads and `text` for typed problems; `at` is an
    epoch timestamp in milliseconds.
    """

    kind: str
    path: Optional[str] = None
    text: Optional[str] = None
    at: int = 0
    id: str = ""
    result: Optional[Result] = None
    task_id: Optional[str] = None

    def copy(self) -> "HistoryItem":
        # Result is immutable, so a shallow replace is a full copy.
        return replace(self)


def step_to_dict(step: Step) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"title": step.title, "content": step.content}
    if step.image_prompt:
        payload["image_prompt"] = step.image_prompt
    image_url = getattr(step, "image_url", "")
    if image_url:
        payload["image_url"] = image_url
    return payload


def step_from_dict(payload: Dict[str, Any]) -> Step:
    title = str(payload.get("title") or "")
    content = str(payload.get("content") or "")
    image_prompt = str(payload.get("image_prompt") or "")
    image_url = str(payload.get("image_url") or "")
    if image_url:
        return StepView(title=title, content=content, image_prompt=image_prompt, image_url=image_url)
    return Step(title=title, content=content, image_prompt=image_prompt)


def result_to_dict(result: Result) -> Dict[str, Any]:
    return {"steps": [step_to_dict(step) for step in result.steps]}


def result_from_dict(payload: Optional[Dict[str, Any]]) -> Result:
    steps = (payload or {}).get("steps") or []
    return Result.of(step_from_dict(item) for item in steps if isinstance(item, dict))


def history_item_to_dict(item: HistoryItem) -> Dict[str, Any]:
    """Serializes a history item, omitting unset optional fields."""
    payload: Dict[str, Any] = {"id": item.id, "type": item.kind}
    if item.path:
        payload["path"] = item.path
    if item.text:
        payload["text"] = item.text
    payload["at"] = int(item.at)
    if item.result is not None:
        payload["result"] = result_to_dict(item.result)
    if item.task_id:
        payload["task_id"] = item.task_id
    return payload


def history_item_from_dict(payload: Dict[str, Any]) -> HistoryItem:
    raw_result = payload.get("result")
    return HistoryItem(
        id=str(payload.get("id") or ""),
        kind=str(payload.get("type") or ""),
        path=payload.get("path") or None,
        text=payload.get("text") or None,
        at=int(payload.get("at") or 0),
        result=result_from_dict(raw_result) if isinstance(raw_result, dict) else None,
        task_id=payload.get("task_id") or None,
    )


def history_items_to_list(items: Iterable[HistoryItem]) -> List[Dict[str, Any]]:
    return [history_item_to_dict(item) for item in items]
