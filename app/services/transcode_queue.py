"""Pending transcode requests with duplicate suppression."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, Dict, Iterable, List, Optional, Set

from .transcode_cache import TranscodeCache, TranscodeKey
from .transcoder import EncodingPipeline


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranscodeTask:
    """A request to convert one episode; identity is the key alone."""

    source_path: Path = field(compare=False)
    key: TranscodeKey

    @classmethod
    def create(
        cls, source_path: Path | str, book_id: str, season_id: str, episode_id: str
    ) -> "TranscodeTask":
        return cls(Path(source_path), TranscodeKey(book_id, season_id, episode_id))

    def to_dict(self) -> Dict[str, str]:
        return self.key.to_dict()


class TaskQueue:
    """Ordered pending work for the worker pool.

    A task is admitted only when its artifact is not already cached, not being
    encoded right now and not queued already. Normal batches go to the back;
    priority batches are placed, in order, in front of everything queued.
    """

    def __init__(self, cache: TranscodeCache, pipeline: EncodingPipeline) -> None:
        self._cache = cache
        self._pipeline = pipeline
        self._pending: Deque[TranscodeTask] = deque()
        self._keys: Set[TranscodeKey] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def __bool__(self) -> bool:
        return bool(self._pending)

    def contains(self, key: TranscodeKey) -> bool:
        return key in self._keys

    def keys(self) -> List[TranscodeKey]:
        return [task.key for task in self._pending]

    def preview(self, limit: int = 10) -> List[Dict[str, str]]:
        previews: List[Dict[str, str]] = []
        for task in self._pending:
            if len(previews) >= limit:
                break
            previews.append(task.to_dict())
        return previews

    def _rejection_reason(self, task: TranscodeTask) -> Optional[str]:
        if self._cache.is_valid(task.key):
            return "cached"
        if self._pipeline.is_in_progress(task.key):
            return "in-progress"
        if task.key in self._keys:
            return "queued"
        return None

    def enqueue(self, tasks: Iterable[TranscodeTask], *, priority: bool = False) -> int:
        """Admit *tasks* and return how many were accepted."""

        accepted: List[TranscodeTask] = []
        for task in tasks:
            reason = self._rejection_reason(task)
            if reason is not None:
                LOGGER.debug("Skipping %s (%s)", task.key, reason)
                continue
            accepted.append(task)
            self._keys.add(task.key)

        if not accepted:
            return 0

        if priority:
            # extendleft reverses its input; reverse first to keep batch order.
            self._pending.extendleft(reversed(accepted))
        else:
            self._pending.extend(accepted)
        return len(accepted)

    def claim(self) -> Optional[TranscodeTask]:
        """Remove and return the task at the head of the queue."""

        if not self._pending:
            return None
        task = self._pending.popleft()
        self._keys.discard(task.key)
        return task

    def clear(self) -> int:
        dropped = len(self._pending)
        self._pending.clear()
        self._keys.clear()
        return dropped


__all__ = ["TaskQueue", "TranscodeTask"]
