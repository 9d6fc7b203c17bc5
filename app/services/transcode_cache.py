"""On-disk store of transcoded episode artifacts."""

from __future__ import annotations

import contextlib
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

from .events import emit_file_event
from .naming import build_artifact_stem


LOGGER = logging.getLogger(__name__)


MIN_VALID_BYTES = 1024
ARTIFACT_SUFFIX = ".mp3"
TEMP_SUFFIX = ".tmp"


@dataclass(frozen=True)
class TranscodeKey:
    """Identity of one transcoded artifact."""

    book_id: str
    season_id: str
    episode_id: str

    @property
    def stem(self) -> str:
        return build_artifact_stem(self.book_id, self.season_id, self.episode_id)

    def to_dict(self) -> Dict[str, str]:
        return {
            "bookId": self.book_id,
            "seasonId": self.season_id,
            "episodeId": self.episode_id,
        }

    def __str__(self) -> str:
        return self.stem


@dataclass(frozen=True)
class CacheUsage:
    files: int
    bytes: int


class TranscodeCache:
    """Map :class:`TranscodeKey` values to files under ``cache_root``.

    Paths are derived purely from the key, so no index is kept. The store
    only answers questions; deciding when to delete a broken artifact is the
    caller's job (see :meth:`discard_invalid`).
    """

    def __init__(self, cache_root: Path, *, min_valid_bytes: int = MIN_VALID_BYTES) -> None:
        self._root = cache_root
        self._min_valid_bytes = min_valid_bytes

    @property
    def root(self) -> Path:
        return self._root

    @property
    def min_valid_bytes(self) -> int:
        return self._min_valid_bytes

    def ensure_root(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: TranscodeKey) -> Path:
        return self._root / f"{key.stem}{ARTIFACT_SUFFIX}"

    def temp_path_for(self, key: TranscodeKey) -> Path:
        final = self.path_for(key)
        return final.with_name(final.name + TEMP_SUFFIX)

    def _size(self, path: Path) -> int | None:
        try:
            return path.stat().st_size
        except OSError:
            return None

    def exists(self, key: TranscodeKey) -> bool:
        return self.path_for(key).is_file()

    def is_valid(self, key: TranscodeKey) -> bool:
        size = self._size(self.path_for(key))
        return size is not None and size > self._min_valid_bytes

    def discard_invalid(self, key: TranscodeKey) -> bool:
        """Delete the artifact for *key* when present but too small.

        Returns ``True`` when a stale file was removed.
        """

        path = self.path_for(key)
        size = self._size(path)
        if size is None or size > self._min_valid_bytes:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        emit_file_event(
            "Removed invalid transcode artifact",
            payload={"path": path, "size": size, "key": key.stem},
            level=logging.WARNING,
        )
        return True

    def purge_temporary(self, *, older_than: float = 0.0) -> int:
        """Remove temporary files left behind by interrupted encodes.

        Files modified within the last *older_than* seconds belong to an
        encode that may still be writing and are left alone.
        """

        if not self._root.is_dir():
            return 0
        cutoff = time.time() - older_than
        removed = 0
        for candidate in self._root.glob(f"*{TEMP_SUFFIX}"):
            with contextlib.suppress(FileNotFoundError):
                if older_than and candidate.stat().st_mtime > cutoff:
                    continue
                candidate.unlink()
                removed += 1
        if removed:
            LOGGER.info("Purged %s stale temporary artifact(s) from %s", removed, self._root)
        return removed

    def usage(self) -> CacheUsage:
        if not self._root.is_dir():
            return CacheUsage(files=0, bytes=0)
        files = 0
        total = 0
        for candidate in self._root.glob(f"*{ARTIFACT_SUFFIX}"):
            size = self._size(candidate)
            if size is None:
                continue
            files += 1
            total += size
        return CacheUsage(files=files, bytes=total)


__all__ = [
    "ARTIFACT_SUFFIX",
    "CacheUsage",
    "MIN_VALID_BYTES",
    "TEMP_SUFFIX",
    "TranscodeCache",
    "TranscodeKey",
]
