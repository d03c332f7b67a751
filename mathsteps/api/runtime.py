"""In-memory result cache shared by the request threads."""

from __future__ import annotations

import uuid
from typing import Dict

from mathsteps.state import Result
from mathsteps.utils.locks import ReadWriteLock


class TaskNotFoundError(KeyError):
    """Raised when requested task id does not exist."""


class ResultCache:
    """Single-process store of explanation results keyed by task id.

    Entries are never evicted. Results are immutable, so readers always see a
    complete value.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._results: Dict[str, Result] = {}

    def put(self, result: Result) -> str:
        task_id = str(uuid.uuid4())
        with self._lock.write():
            self._results[task_id] = result
        return task_id

    def get(self, task_id: str) -> Result:
        with self._lock.read():
            result = self._results.get(str(task_id))
        if result is None:
            raise TaskNotFoundError(task_id)
        return result

    def update(self, task_id: str, result: Result) -> None:
        """Replaces (or inserts) the result stored under `task_id`."""
        with self._lock.write():
            self._results[str(task_id)] = result

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._results)
