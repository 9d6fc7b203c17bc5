"""Single-flight conversion of one source file into one cached artifact."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import time
from pathlib import Path
from typing import Dict

from .audio_conversion import (
    STREAMING_PARAMS,
    EncodingBackend,
    EncodingFailed,
    EncodingParams,
    summarize_stderr,
)
from .events import emit_task_event
from .transcode_cache import TranscodeCache, TranscodeKey


LOGGER = logging.getLogger(__name__)


class EncodingPipeline:
    """Turn source files into cached MP3 artifacts, one encode per key.

    Concurrent callers asking for the same :class:`TranscodeKey` share a single
    ``asyncio.Task``; the encoder subprocess is spawned once and every caller
    receives the same path or the same :class:`EncodingFailed`.
    """

    def __init__(
        self,
        cache: TranscodeCache,
        backend: EncodingBackend,
        *,
        params: EncodingParams = STREAMING_PARAMS,
    ) -> None:
        self._cache = cache
        self._backend = backend
        self._params = params
        self._in_progress: Dict[TranscodeKey, asyncio.Task[Path]] = {}

    @property
    def cache(self) -> TranscodeCache:
        return self._cache

    @property
    def params(self) -> EncodingParams:
        return self._params

    def is_in_progress(self, key: TranscodeKey) -> bool:
        return key in self._in_progress

    def in_progress_count(self) -> int:
        return len(self._in_progress)

    async def ensure_transcoded(self, source: Path, key: TranscodeKey) -> Path:
        """Return the cached artifact for *key*, encoding *source* if needed."""

        if self._cache.is_valid(key):
            return self._cache.path_for(key)

        self._cache.discard_invalid(key)

        inflight = self._in_progress.get(key)
        if inflight is None:
            inflight = asyncio.get_running_loop().create_task(
                self._encode(Path(source), key), name=f"encode-{key.stem}"
            )
            self._in_progress[key] = inflight
        else:
            LOGGER.debug("Joining in-flight encode for %s", key)

        # Cancelling one waiter must never cancel the shared encode.
        return await asyncio.shield(inflight)

    async def _encode(self, source: Path, key: TranscodeKey) -> Path:
        final_path = self._cache.path_for(key)
        temp_path = self._cache.temp_path_for(key)
        started = time.perf_counter()
        emit_task_event(
            "started",
            "Transcode started",
            payload={"key": key.stem, "source": source.name},
        )
        try:
            try:
                result = await self._backend.encode(source, temp_path, self._params)
            except OSError as error:
                raise EncodingFailed(
                    f"Unable to start encoder for {source.name}: {error}",
                    key=key,
                    source=source,
                    spawn_error=error,
                ) from error

            if not result.succeeded or not temp_path.exists():
                detail = summarize_stderr(result.stderr)
                message = f"Transcode failed (exit code: {result.returncode})"
                if detail:
                    message = f"{message}: {detail}"
                raise EncodingFailed(
                    message,
                    key=key,
                    source=source,
                    returncode=result.returncode,
                    stderr=result.stderr,
                )

            os.replace(temp_path, final_path)
        except BaseException as error:
            with contextlib.suppress(FileNotFoundError):
                temp_path.unlink()
            emit_task_event(
                "failed",
                "Transcode failed",
                payload={"key": key.stem, "source": source.name, "error": str(error) or type(error).__name__},
                duration_ms=(time.perf_counter() - started) * 1000,
                level=logging.WARNING,
            )
            raise
        finally:
            self._in_progress.pop(key, None)

        emit_task_event(
            "finished",
            "Transcode finished",
            payload={"key": key.stem, "source": source.name, "path": final_path},
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        return final_path

    async def shutdown(self) -> None:
        """Cancel encodes still running when the server stops."""

        pending = list(self._in_progress.values())
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError, EncodingFailed):
                await task


__all__ = ["EncodingFailed", "EncodingPipeline"]
