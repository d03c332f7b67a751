"""HTTP client helpers for the MathSteps REST API."""

from __future__ import annotations

import logging
import mimetypes
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger("mathsteps.ui.api_client")

DEFAULT_TIMEOUT_SECONDS = 200


class ApiClientError(RuntimeError):
    """Raised on HTTP errors, carrying the server's `detail` message.

    Attributes:
        status_code: HTTP status, or None for connection failures.
        detail: Error description returned by the server.
    """

    def __init__(self, detail: str, status_code: Optional[int] = None) -> None:
        if status_code is None:
            message = detail
        else:
            message = "API error {}: {}".format(status_code, detail)
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


def infer_image_media_type(filename: str, fallback: str = "image/png") -> str:
    """Guesses an upload's MIME type from its name.

    Args:
        filename: Name of the local image.
        fallback: Type used when the name maps to no image type.

    Returns:
        Image media type for the multipart part.
    """
    guessed = mimetypes.guess_type(filename)[0] or ""
    return guessed if guessed.startswith("image/") else fallback


def _error_detail(response: httpx.Response) -> str:
    """Returns the server's `detail` field, or the raw body for non-JSON errors."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return response.text.strip() or "unknown error"


def _elapsed_ms(started_at: float) -> float:
    return (time.perf_counter() - started_at) * 1000.0


def _request(
    method: str,
    base_url: str,
    path: str,
    *,
    client: Optional[httpx.Client] = None,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    **kwargs: Any,
) -> httpx.Response:
    endpoint = base_url.rstrip("/") + path
    started_at = time.perf_counter()
    logger.info("api_request method=%s endpoint=%s timeout=%ss", method, endpoint, timeout_seconds)
    try:
        if client is not None:
            response = client.request(method, endpoint, timeout=timeout_seconds, **kwargs)
        else:
            with httpx.Client(timeout=timeout_seconds) as owned:
                response = owned.request(method, endpoint, **kwargs)
    except httpx.TimeoutException as exc:
        logger.error("api_timeout endpoint=%s elapsed_ms=%.1f", endpoint, _elapsed_ms(started_at))
        raise ApiClientError("Timed out calling API after {}s".format(timeout_seconds)) from exc
    except httpx.TransportError as exc:
        logger.error("api_unreachable endpoint=%s elapsed_ms=%.1f error=%s", endpoint, _elapsed_ms(started_at), exc)
        raise ApiClientError("Could not connect to API: {}".format(exc)) from exc

    logger.info(
        "api_response method=%s endpoint=%s status=%s elapsed_ms=%.1f",
        method,
        endpoint,
        response.status_code,
        _elapsed_ms(started_at),
    )
    if response.is_error:
        raise ApiClientError(_error_detail(response), status_code=response.status_code)
    return response


def upload_image(
    base_url: str,
    image_bytes: bytes,
    filename: str,
    media_type: Optional[str] = None,
    client: Optional[httpx.Client] = None,
) -> str:
    """Uploads an image and returns its server-side relative path."""
    content_type = media_type or infer_image_media_type(filename)
    files = {"file": (Path(filename).name, image_bytes, content_type)}
    response = _request("POST", base_url, "/api/upload", client=client, files=files)
    return str(response.json()["path"])


def submit_text(base_url: str, text: str, client: Optional[httpx.Client] = None) -> str:
    response = _request("POST", base_url, "/api/submit", client=client, json={"text": text})
    return str(response.json()["problem_text"])


def submit_image(base_url: str, image_path: str, client: Optional[httpx.Client] = None) -> str:
    """Runs recognition on an uploaded image and returns the problem text."""
    response = _request("POST", base_url, "/api/submit", client=client, json={"image_path": image_path})
    return str(response.json()["problem_text"])


def start_explain(
    base_url: str,
    problem_text: str,
    history_id: Optional[str] = None,
    client: Optional[httpx.Client] = None,
) -> str:
    """Requests an explanation for problem text and returns the task id."""
    payload: Dict[str, Any] = {"problem_text": problem_text}
    if history_id:
        payload["history_id"] = history_id
    response = _request("POST", base_url, "/api/explain", client=client, json=payload)
    return str(response.json()["task_id"])


def start_explain_from_image(
    base_url: str,
    image_path: str,
    history_id: Optional[str] = None,
    client: Optional[httpx.Client] = None,
) -> str:
    payload: Dict[str, Any] = {"image_path": image_path}
    if history_id:
        payload["history_id"] = history_id
    response = _request("POST", base_url, "/api/explain", client=client, json=payload)
    return str(response.json()["task_id"])


def get_result(base_url: str, task_id: str, client: Optional[httpx.Client] = None) -> Dict[str, Any]:
    response = _request("GET", base_url, "/api/result/{}".format(task_id), client=client)
    return response.json()


def list_history(base_url: str, client: Optional[httpx.Client] = None) -> List[Dict[str, Any]]:
    response = _request("GET", base_url, "/api/history", client=client)
    return list(response.json().get("items") or [])


def create_history_item(
    base_url: str,
    kind: str,
    path: Optional[str] = None,
    text: Optional[str] = None,
    at: int = 0,
    client: Optional[httpx.Client] = None,
) -> str:
    """Creates a history record and returns its id.

    Args:
        base_url: API base URL.
        kind: `upload` or `text`.
        path: Upload path, for uploads.
        text: Problem text, for typed problems.
        at: Epoch milliseconds; the server stamps the time when zero.
        client: Optional shared HTTP client.
    """
    payload: Dict[str, Any] = {"type": kind, "at": int(at)}
    if path:
        payload["path"] = path
    if text:
        payload["text"] = text
    response = _request("POST", base_url, "/api/history", client=client, json=payload)
    return str(response.json()["id"])


def update_history_result(
    base_url: str,
    item_id: str,
    result: Dict[str, Any],
    task_id: str = "",
    client: Optional[httpx.Client] = None,
) -> None:
    _request(
        "PATCH",
        base_url,
        "/api/history/{}".format(item_id),
        client=client,
        json={"result": result, "task_id": task_id},
    )


def delete_history_item(base_url: str, item_id: str, client: Optional[httpx.Client] = None) -> None:
    _request("DELETE", base_url, "/api/history/{}".format(item_id), client=client)


def find_latest_upload_history_id(
    base_url: str,
    path: str,
    client: Optional[httpx.Client] = None,
) -> Optional[str]:
    """Returns the id of the newest upload record for `path`, or None."""
    try:
        response = _request("GET", base_url, "/api/history/find-upload", client=client, params={"path": path})
    except ApiClientError as exc:
        if exc.status_code == 404:
            return None
        raise
    return str(response.json()["id"])
