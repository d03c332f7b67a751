"""Bounded, file-persisted history of submissions."""

from __future__ import annotations

import json
import os
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, List, Optional, Union

from mathsteps.state import (
    HISTORY_KIND_TEXT,
    HISTORY_KIND_UPLOAD,
    HISTORY_KINDS,
    HistoryItem,
    Result,
    history_item_from_dict,
    history_items_to_list,
)
from mathsteps.utils.locks import ReadWriteLock
from mathsteps.utils.logger import get_logger

logger = get_logger("mathsteps.api.history")

MAX_HISTORY_ITEMS = 50


class HistoryLoadError(RuntimeError):
    """Raised when an existing history file cannot be read or decoded."""


class InvalidHistoryItemError(ValueError):
    """Raised when an item has an unknown kind or lacks its path/text."""


def _epoch_millis() -> int:
    return int(time.time() * 1000)


class HistoryLog:
    """Most recent submissions, newest first, capped at `max_items`.

    Every mutation rewrites the whole file. Write failures are logged and do
    not undo the in-memory change.

    Args:
        file_path: JSON file backing the log; empty keeps it in memory only.
        max_items: Capacity; the oldest items by `at` are evicted first.
        clock: Epoch-milliseconds clock used to stamp new items.

    Raises:
        HistoryLoadError: If an existing file is unreadable or malformed.
    """

    def __init__(
        self,
        file_path: Union[str, Path] = "",
        max_items: int = MAX_HISTORY_ITEMS,
        clock: Callable[[], int] = _epoch_millis,
    ) -> None:
        self.file_path = Path(file_path) if str(file_path or "") else None
        self.max_items = max(1, int(max_items))
        self._clock = clock
        self._lock = ReadWriteLock()
        self._save_lock = threading.Lock()
        self._items: List[HistoryItem] = self._load()

    def add(self, item: HistoryItem) -> str:
        """Inserts a copy of `item` and returns its id.

        The id is minted when empty and `at` is stamped from the clock when
        not positive. Uploads keep only `path`, text items only `text`.

        Raises:
            InvalidHistoryItemError: If kind is unknown or path/text is missing.
        """
        stored = self._normalize(item)
        with self._lock.write():
            self._items.append(stored)
            self._items = self._evict(self._items)
        logger.info("history_added id=%s type=%s", stored.id, stored.kind)
        self._save()
        return stored.id

    def list(self) -> List[HistoryItem]:
        with self._lock.read():
            return [item.copy() for item in self._items]

    def update_result(self, item_id: str, result: Result, task_id: Optional[str] = None) -> bool:
        with self._lock.write():
            target = self._find(item_id)
            if target is None:
                return False
            target.result = result
            target.task_id = task_id or None
        self._save()
        return True

    def delete(self, item_id: str) -> bool:
        with self._lock.write():
            target = self._find(item_id)
            if target is None:
                return False
            self._items = [item for item in self._items if item is not target]
        logger.info("history_deleted id=%s", item_id)
        self._save()
        return True

    def find_latest_upload_by_path(self, path: str) -> Optional[HistoryItem]:
        """Returns the upload with this path and the greatest `at`, or None.

        Among equal timestamps the earliest inserted item wins.
        """
        latest: Optional[HistoryItem] = None
        with self._lock.read():
            for item in self._items:
                if item.kind != HISTORY_KIND_UPLOAD or item.path != path:
                    continue
                if latest is None or item.at > latest.at:
                    latest = item
            return latest.copy() if latest is not None else None

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._items)

    def _normalize(self, item: HistoryItem) -> HistoryItem:
        stored = item.copy()
        if stored.kind not in HISTORY_KINDS:
            raise InvalidHistoryItemError("Unknown history type '{}'".format(stored.kind))
        if stored.kind == HISTORY_KIND_UPLOAD:
            if not stored.path:
                raise InvalidHistoryItemError("Upload history items require a path.")
            stored.text = None
        elif stored.kind == HISTORY_KIND_TEXT:
            if not stored.text:
                raise InvalidHistoryItemError("Text history items require text.")
            stored.path = None
        if not stored.id:
            stored.id = str(uuid.uuid4())
        if stored.at <= 0:
            stored.at = int(self._clock())
        return stored

    def _find(self, item_id: str) -> Optional[HistoryItem]:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def _evict(self, items: List[HistoryItem]) -> List[HistoryItem]:
        # sorted() is stable: equal timestamps keep insertion order.
        ordered = sorted(items, key=lambda item: item.at, reverse=True)
        return ordered[: self.max_items]

    def _load(self) -> List[HistoryItem]:
        if self.file_path is None or not self.file_path.exists():
            return []
        try:
            raw = self.file_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise HistoryLoadError("Cannot read history file {}: {}".format(self.file_path, exc)) from exc
        if not raw.strip():
            return []
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise HistoryLoadError("Invalid history file {}: {}".format(self.file_path, exc)) from exc
        if decoded is None:
            return []
        if not isinstance(decoded, list) or not all(isinstance(entry, dict) for entry in decoded):
            raise HistoryLoadError("History file {} must hold a JSON array of objects".format(self.file_path))
        try:
            items = [history_item_from_dict(entry) for entry in decoded]
        except (TypeError, ValueError) as exc:
            raise HistoryLoadError("Invalid history entry in {}: {}".format(self.file_path, exc)) from exc
        logger.info("history_loaded path=%s items=%d", self.file_path, len(items))
        return self._evict(items)

    def _save(self) -> None:
        if self.file_path is None:
            return
        # The snapshot is taken inside the save lock so the last write to
        # finish always carries the newest state.
        with self._save_lock:
            with self._lock.read():
                payload = history_items_to_list(self._items)
            staging = self.file_path.with_name(self.file_path.name + ".tmp")
            try:
                self.file_path.parent.mkdir(parents=True, exist_ok=True)
                staging.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
                os.replace(staging, self.file_path)
            except OSError as exc:
                logger.error("history_save_failed path=%s error=%s", self.file_path, exc)
