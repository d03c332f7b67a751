"""JSON logging shared by the API server and the CLI."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import IO, Any, Dict, Optional

# Client libraries that log every HTTP exchange at INFO.
_CHATTY_LOGGERS = ("httpx", "httpcore", "openai", "urllib3")


class JsonFormatter(logging.Formatter):
    """Renders each record as one JSON object per line.

    Fields passed as `extra={"extra": {...}}` are merged into the object.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        fields = getattr(record, "extra", None)
        if isinstance(fields, dict):
            payload.update(fields)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(level: str = "INFO", stream: Optional[IO[str]] = None) -> None:
    """Routes every record to a single JSON handler (stderr by default).

    Chatty client libraries stay at WARNING unless DEBUG is requested.
    """
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper())

    library_level = logging.DEBUG if root.level <= logging.DEBUG else logging.WARNING
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
