"""REST interface for MathSteps."""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, HTTPException, Query, Response, UploadFile
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from mathsteps.api.history import HistoryLog, InvalidHistoryItemError
from mathsteps.api.runtime import ResultCache, TaskNotFoundError
from mathsteps.llm.parser import ResponseParseError
from mathsteps.nodes.explainer import (
    ExplanationFailedError,
    ExplanationGenerator,
    NoResponseError,
    NotConfiguredError,
)
from mathsteps.nodes.illustrator import NoopImageGenerator, StepImageGenerator, illustrate_result
from mathsteps.nodes.recognizer import ProblemRecognizer, RecognitionFailedError
from mathsteps.state import (
    HistoryItem,
    Result,
    history_item_to_dict,
    result_from_dict,
)
from mathsteps.tools.images import ImageUnavailableError, guess_image_media_type
from mathsteps.utils.config_loader import ModelsConfig, load_models_config
from mathsteps.utils.deadline import DeadlineExceededError
from mathsteps.utils.logger import get_logger

logger = get_logger("mathsteps.api")

ALLOWED_UPLOAD_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}

_UPSTREAM_ERRORS = (
    RecognitionFailedError,
    ExplanationFailedError,
    NoResponseError,
    ResponseParseError,
)
_SUBMIT_ERRORS = (ImageUnavailableError, DeadlineExceededError) + _UPSTREAM_ERRORS
_EXPLAIN_ERRORS = _SUBMIT_ERRORS + (NotConfiguredError,)


class SubmitRequest(BaseModel):
    text: Optional[str] = Field(default=None, description="Problem statement typed by the user")
    image_path: Optional[str] = Field(default=None, description="Upload path returned by /api/upload")


class SubmitResponse(BaseModel):
    problem_text: str


class ExplainRequest(BaseModel):
    problem_text: Optional[str] = Field(default=None, description="Problem statement to explain")
    image_path: Optional[str] = Field(default=None, description="Upload path explained directly from the image")
    history_id: Optional[str] = Field(default=None, description="History item that receives the result")


class ExplainResponse(BaseModel):
    task_id: str


class StepPayload(BaseModel):
    title: str = ""
    content: str = ""
    image_prompt: Optional[str] = None
    image_url: Optional[str] = None


class ResultPayload(BaseModel):
    steps: List[StepPayload] = Field(default_factory=list)


class HistoryCreateRequest(BaseModel):
    type: str = Field(description="upload | text")
    path: Optional[str] = None
    text: Optional[str] = None
    at: int = Field(default=0, description="Epoch milliseconds; stamped by the server when omitted")


class HistoryCreateResponse(BaseModel):
    id: str


class HistoryUpdateRequest(BaseModel):
    result: Optional[ResultPayload] = None
    task_id: str = ""


def _one_of(first: Optional[str], second: Optional[str], first_name: str, second_name: str) -> None:
    if first and second:
        raise HTTPException(
            status_code=400,
            detail="provide either {} or {}, not both".format(first_name, second_name),
        )
    if not first and not second:
        raise HTTPException(status_code=400, detail="{} or {} required".format(first_name, second_name))


def _to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, (ImageUnavailableError, InvalidHistoryItemError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, NotConfiguredError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, DeadlineExceededError):
        return HTTPException(status_code=504, detail=str(exc))
    return HTTPException(status_code=502, detail="Provider call failed: {}".format(exc))


def _result_response(result: Result) -> Dict[str, Any]:
    steps = []
    for step in result.steps:
        payload = {"title": step.title, "content": step.content}
        image_url = getattr(step, "image_url", "")
        if image_url:
            payload["image_url"] = image_url
        steps.append(payload)
    return {"steps": steps}


def create_app(
    config: Optional[ModelsConfig] = None,
    *,
    recognizer: Optional[ProblemRecognizer] = None,
    explainer: Optional[ExplanationGenerator] = None,
    result_cache: Optional[ResultCache] = None,
    history_log: Optional[HistoryLog] = None,
    image_generator: Optional[StepImageGenerator] = None,
) -> FastAPI:
    """Builds and configures the FastAPI application.

    Components not passed in are built from `config`, which is loaded from
    the default location when omitted.

    Raises:
        ConfigError: If the configuration cannot be loaded.
        HistoryLoadError: If the history file exists but is unreadable.
    """
    if config is None:
        config = load_models_config()
    if recognizer is None:
        recognizer = ProblemRecognizer(config.ocr)
    if explainer is None:
        explainer = ExplanationGenerator(config.explanation)
    if result_cache is None:
        result_cache = ResultCache()
    if history_log is None:
        history_log = HistoryLog(config.server.history_file)
    if image_generator is None:
        image_generator = NoopImageGenerator()

    upload_dir = Path(config.server.upload_dir)
    max_upload_bytes = max(1, int(config.server.max_upload_mb)) * 1024 * 1024

    app = FastAPI(title="MathSteps API", version="0.1.0")
    app.state.config = config
    app.state.recognizer = recognizer
    app.state.explainer = explainer
    app.state.result_cache = result_cache
    app.state.history_log = history_log
    logger.info(config.describe_status())

    def _resolve_upload(relative_path: str) -> Path:
        candidate = Path(relative_path)
        if candidate.is_absolute() or ".." in candidate.parts:
            raise HTTPException(status_code=400, detail="invalid image_path")
        return upload_dir / candidate

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        recognizer.close()
        explainer.close()

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/status")
    def status() -> Dict[str, Any]:
        return {
            "status": config.describe_status(),
            "ocr_configured": config.ocr.is_configured,
            "explanation_configured": explainer.is_configured,
        }

    @app.post("/api/upload")
    def upload(file: UploadFile = File(...)) -> Dict[str, str]:
        content_type = (file.content_type or "").split(";")[0].strip().lower()
        if content_type not in ALLOWED_UPLOAD_TYPES:
            raise HTTPException(status_code=400, detail="unsupported file type, use JPEG/PNG/WebP")
        data = file.file.read(max_upload_bytes + 1)
        if len(data) > max_upload_bytes:
            raise HTTPException(status_code=400, detail="file too large")

        suffix = Path(file.filename or "").suffix.lower() or ALLOWED_UPLOAD_TYPES[content_type]
        name = "{}{}".format(uuid.uuid4(), suffix)
        try:
            upload_dir.mkdir(parents=True, exist_ok=True)
            (upload_dir / name).write_bytes(data)
        except OSError as exc:
            logger.exception("upload_save_failed name=%s error=%s", name, exc)
            raise HTTPException(status_code=500, detail="failed to save file") from exc
        logger.info("upload_saved name=%s bytes=%d", name, len(data))
        return {"path": name}

    @app.get("/api/uploads/{filename}")
    def serve_upload(filename: str) -> FileResponse:
        if not filename or ".." in filename or "/" in filename or "\\" in filename:
            raise HTTPException(status_code=400, detail="invalid path")
        target = upload_dir / filename
        if not target.is_file():
            raise HTTPException(status_code=404, detail="not found")
        return FileResponse(target, media_type=guess_image_media_type(target))

    @app.post("/api/submit", response_model=SubmitResponse)
    def submit(payload: SubmitRequest) -> Dict[str, str]:
        _one_of(payload.text, payload.image_path, "text", "image_path")
        if payload.text:
            return {"problem_text": payload.text}

        image_path = _resolve_upload(str(payload.image_path))
        try:
            text = recognizer.recognize(image_path)
        except _SUBMIT_ERRORS as exc:
            logger.warning("submit_failed image_path=%s error=%s", payload.image_path, exc)
            raise _to_http_exception(exc) from exc
        return {"problem_text": text}

    @app.post("/api/explain", response_model=ExplainResponse)
    def explain(payload: ExplainRequest) -> Dict[str, str]:
        _one_of(payload.problem_text, payload.image_path, "problem_text", "image_path")
        try:
            if payload.image_path:
                result = explainer.explain_from_image(_resolve_upload(payload.image_path))
            else:
                result = explainer.explain(str(payload.problem_text))
        except _EXPLAIN_ERRORS as exc:
            logger.warning("explain_failed has_image=%s error=%s", bool(payload.image_path), exc)
            raise _to_http_exception(exc) from exc

        result = illustrate_result(result, image_generator)
        task_id = result_cache.put(result)
        if payload.history_id and not history_log.update_result(payload.history_id, result, task_id):
            logger.warning("explain_history_missing history_id=%s task_id=%s", payload.history_id, task_id)
        logger.info("explain_done task_id=%s steps=%d", task_id, len(result))
        return {"task_id": task_id}

    @app.get("/api/result/{task_id}")
    def get_result(task_id: str) -> Dict[str, Any]:
        try:
            result = result_cache.get(task_id)
        except TaskNotFoundError as exc:
            raise HTTPException(status_code=404, detail="not found") from exc
        return _result_response(result)

    @app.get("/api/history/find-upload")
    def history_find_upload(path: str = Query(default="")) -> Dict[str, str]:
        if not path:
            raise HTTPException(status_code=400, detail="path required")
        item = history_log.find_latest_upload_by_path(path)
        if item is None:
            raise HTTPException(status_code=404, detail="not found")
        return {"id": item.id}

    @app.get("/api/history")
    def history_list(response: Response) -> Dict[str, Any]:
        response.headers["Cache-Control"] = "no-store"
        return {"items": [history_item_to_dict(item) for item in history_log.list()]}

    @app.post("/api/history", response_model=HistoryCreateResponse)
    def history_create(payload: HistoryCreateRequest) -> Dict[str, str]:
        item = HistoryItem(kind=payload.type, path=payload.path, text=payload.text, at=payload.at)
        try:
            item_id = history_log.add(item)
        except InvalidHistoryItemError as exc:
            raise _to_http_exception(exc) from exc
        return {"id": item_id}

    @app.api_route("/api/history/{item_id}", methods=["PATCH", "PUT"], status_code=204)
    def history_update_result(item_id: str, payload: HistoryUpdateRequest) -> Response:
        if payload.result is None:
            raise HTTPException(status_code=400, detail="result required")
        result = result_from_dict(payload.result.model_dump())
        if not history_log.update_result(item_id, result, payload.task_id):
            raise HTTPException(status_code=404, detail="not found")
        return Response(status_code=204)

    @app.delete("/api/history/{item_id}", status_code=204)
    def history_delete(item_id: str) -> Response:
        if not history_log.delete(item_id):
            raise HTTPException(status_code=404, detail="not found")
        return Response(status_code=204)

    return app
