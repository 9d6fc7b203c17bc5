"""Favorites, playback progress and listener preferences kept in one JSON file."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .events import emit_file_event


LOGGER = logging.getLogger(__name__)


_SECTIONS = ("favorites", "progress", "settings")


def _now_ms() -> int:
    return int(time.time() * 1000)


class UserDataStore:
    """Read-modify-write access to ``user-data.json``.

    The file holds three objects: ``favorites`` and ``progress`` keyed by book
    id, and a flat ``settings`` mapping. A missing or corrupt file reads as
    empty sections.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, Dict[str, Any]]:
        data: Dict[str, Dict[str, Any]] = {section: {} for section in _SECTIONS}
        if not self._path.exists():
            return data
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            LOGGER.error("Failed to load user data from %s: %s", self._path, error)
            return data
        if isinstance(payload, dict):
            for section in _SECTIONS:
                value = payload.get(section)
                if isinstance(value, dict):
                    data[section] = value
        return data

    def _save(self, data: Dict[str, Dict[str, Any]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_name(self._path.name + ".tmp")
        temp_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(temp_path, self._path)
        emit_file_event("User data saved", payload={"path": self._path}, level=logging.DEBUG)

    # ------------------------------------------------------------------
    # Favorites
    # ------------------------------------------------------------------
    def list_favorites(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._load()["favorites"].values())

    def put_favorite(self, book_id: str, details: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        with self._lock:
            data = self._load()
            entry = dict(details or {})
            entry["bookId"] = book_id
            entry["addedAt"] = entry.get("addedAt") or _now_ms()
            data["favorites"][book_id] = entry
            self._save(data)
            return entry

    def remove_favorite(self, book_id: str) -> bool:
        with self._lock:
            data = self._load()
            if data["favorites"].pop(book_id, None) is None:
                return False
            self._save(data)
            return True

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------
    def list_progress(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._load()["progress"].values())

    def get_progress(self, book_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._load()["progress"].get(book_id)

    def put_progress(self, book_id: str, details: Mapping[str, Any]) -> Dict[str, Any]:
        with self._lock:
            data = self._load()
            entry = dict(details)
            entry["bookId"] = book_id
            entry["updatedAt"] = entry.get("updatedAt") or _now_ms()
            data["progress"][book_id] = entry
            self._save(data)
            return entry

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def get_settings(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._load()["settings"])

    def update_settings(self, changes: Mapping[str, Any]) -> Dict[str, Any]:
        """Shallow-merge *changes* into the stored settings."""

        with self._lock:
            data = self._load()
            data["settings"].update(changes)
            self._save(data)
            return dict(data["settings"])


__all__ = ["UserDataStore"]
