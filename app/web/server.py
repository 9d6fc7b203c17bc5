"""FastAPI application exposing the audiobook library and transcode controls."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..config import AppConfig
from ..services.audio_conversion import EncodingFailed
from ..services.library import (
    Book,
    Episode,
    LibraryError,
    LibraryService,
    SourceMissing,
    mime_type_for,
)
from ..services.scheduler import TranscodeScheduler, build_scheduler
from ..services.settings import SettingsStore
from ..services.transcode_cache import TranscodeKey
from ..services.user_data import UserDataStore


LOGGER = logging.getLogger(__name__)


STREAM_CHUNK_SIZE = 1024 * 1024

_RANGE_PATTERN = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)


class RangeNotSatisfiable(ValueError):
    """Raised when a ``Range`` header cannot be served for the file."""


def parse_range_header(header: str, file_size: int) -> Tuple[int, int]:
    """Return inclusive ``(start, end)`` byte offsets for a single-range header.

    Supports ``bytes=START-``, ``bytes=START-END`` and the suffix form
    ``bytes=-LENGTH``. Anything else, or a range outside the file, raises
    :class:`RangeNotSatisfiable`.
    """

    match = _RANGE_PATTERN.match(header or "")
    if match is None or file_size <= 0:
        raise RangeNotSatisfiable(header)
    start_text, end_text = match.groups()
    if not start_text and not end_text:
        raise RangeNotSatisfiable(header)

    if not start_text:
        suffix = int(end_text)
        if suffix <= 0:
            raise RangeNotSatisfiable(header)
        start = max(0, file_size - suffix)
        end = file_size - 1
    else:
        start = int(start_text)
        end = int(end_text) if end_text else file_size - 1
        end = min(end, file_size - 1)

    if start > end or start >= file_size:
        raise RangeNotSatisfiable(header)
    return start, end


def _iter_file(path: Path, start: int, end: int) -> Iterator[bytes]:
    with path.open("rb") as handle:
        handle.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            data = handle.read(min(STREAM_CHUNK_SIZE, remaining))
            if not data:
                break
            remaining -= len(data)
            yield data


def _normalize_root_path(value: Optional[str]) -> str:
    if value is None:
        return ""
    normalized = value.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


class PretranscodeRequest(BaseModel):
    book_id: Optional[str] = Field(None, alias="bookId")
    season_index: Optional[int] = Field(None, alias="seasonIndex", ge=0)
    episode_index: Optional[int] = Field(None, alias="episodeIndex", ge=0)


class ServerSettingsPayload(BaseModel):
    auto_transcode: Optional[Any] = Field(None, alias="autoTranscode")
    auto_transcode_count: Optional[Any] = Field(None, alias="autoTranscodeCount")


def _success(data: Any = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"success": True}
    if data is not None:
        payload["data"] = data
    return payload


def create_app(
    library: LibraryService,
    *,
    config: AppConfig,
    scheduler: Optional[TranscodeScheduler] = None,
    settings_store: Optional[SettingsStore] = None,
    user_data: Optional[UserDataStore] = None,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    settings_store = settings_store or SettingsStore(config)
    if scheduler is None:
        scheduler = build_scheduler(config, settings_store=settings_store)
    user_data = user_data or UserDataStore(config.user_data_file)

    app = FastAPI(
        title="Audioshelf",
        description="Stream your audiobook library from any device",
        root_path=_normalize_root_path(root_path),
    )
    app.state.server = None
    app.state.library = library
    app.state.scheduler = scheduler
    app.state.settings_store = settings_store
    app.state.user_data = user_data
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def _startup() -> None:
        scheduler.start()
        await asyncio.to_thread(library.scan)

    async def _shutdown() -> None:
        await scheduler.stop()

    app.add_event_handler("startup", _startup)
    app.add_event_handler("shutdown", _shutdown)

    def _require_book(book_id: str) -> Book:
        book = library.get_book(book_id)
        if book is None:
            raise HTTPException(status_code=404, detail="Book not found")
        return book

    async def _resolve_audio(book_id: str, season_id: str, episode_id: str) -> Tuple[Path, Episode, str]:
        try:
            _, _, episode = library.find_episode(book_id, season_id, episode_id)
        except (LibraryError, SourceMissing) as error:
            raise HTTPException(status_code=404, detail=str(error)) from error

        if not episode.needs_transcode:
            return episode.file_path, episode, mime_type_for(episode.file_path)

        key = TranscodeKey(book_id, season_id, episode_id)
        try:
            path = await scheduler.ensure_transcoded(episode.file_path, key)
        except EncodingFailed as error:
            LOGGER.error("On-demand transcode failed for %s: %s", episode.file_name, error)
            raise HTTPException(
                status_code=500,
                detail="Audio transcoding failed; make sure ffmpeg is installed",
            ) from error
        return path, episode, "audio/mpeg"

    # ------------------------------------------------------------------
    # Library
    # ------------------------------------------------------------------
    @app.get("/api/books")
    async def list_books() -> Dict[str, Any]:
        return _success([book.summary() for book in library.list_books()])

    @app.get("/api/books/{book_id}")
    async def get_book(book_id: str) -> Dict[str, Any]:
        book = _require_book(book_id)
        payload = book.to_dict()
        for season_payload, season in zip(payload["seasons"], book.seasons):
            for episode_payload, episode in zip(season_payload["episodes"], season.episodes):
                episode_payload["transcoded"] = episode.needs_transcode and scheduler.is_transcoded(
                    TranscodeKey(book.id, season.id, episode.id)
                )
        return _success(payload)

    @app.post("/api/library/rescan")
    async def rescan_library() -> Dict[str, Any]:
        added = await asyncio.to_thread(library.rescan)
        queued = 0
        for book in added:
            LOGGER.info("New book detected: %s", book.name)
            queued += scheduler.pre_transcode_book(book)
        return _success(
            {
                "books": len(library.list_books()),
                "added": [book.summary() for book in added],
                "queued": queued,
            }
        )

    # ------------------------------------------------------------------
    # Audio & transcoding
    # ------------------------------------------------------------------
    @app.post("/api/audio/pretranscode")
    async def pretranscode(payload: PretranscodeRequest) -> Dict[str, Any]:
        if payload.book_id is None or payload.season_index is None or payload.episode_index is None:
            raise HTTPException(
                status_code=400,
                detail="bookId, seasonIndex and episodeIndex are required",
            )
        book = _require_book(payload.book_id)
        queued = scheduler.pre_transcode_from_position(
            book, payload.season_index, payload.episode_index
        )
        return _success({"queued": queued})

    @app.get("/api/audio/transcode-status")
    async def transcode_status() -> Dict[str, Any]:
        return _success(scheduler.status().to_dict())

    @app.post("/api/audio/transcode-cancel")
    async def transcode_cancel() -> Dict[str, Any]:
        return _success(scheduler.cancel().to_dict())

    @app.get("/api/audio/download/{book_id}/{season_id}/{episode_id}")
    async def download_audio(book_id: str, season_id: str, episode_id: str) -> FileResponse:
        path, episode, media_type = await _resolve_audio(book_id, season_id, episode_id)
        filename = episode.file_name
        if episode.needs_transcode:
            filename = f"{Path(episode.file_name).stem}.mp3"
        return FileResponse(path, media_type=media_type, filename=filename)

    @app.get("/api/audio/{book_id}/{season_id}/{episode_id}")
    async def stream_audio(
        book_id: str, season_id: str, episode_id: str, request: Request
    ) -> StreamingResponse:
        path, _, media_type = await _resolve_audio(book_id, season_id, episode_id)
        file_size = path.stat().st_size
        range_header = request.headers.get("range")

        if range_header:
            try:
                start, end = parse_range_header(range_header, file_size)
            except RangeNotSatisfiable as error:
                raise HTTPException(
                    status_code=416,
                    detail="Requested range not satisfiable",
                    headers={"Content-Range": f"bytes */{file_size}"},
                ) from error
            headers = {
                "Content-Range": f"bytes {start}-{end}/{file_size}",
                "Accept-Ranges": "bytes",
                "Content-Length": str(end - start + 1),
            }
            return StreamingResponse(
                _iter_file(path, start, end),
                status_code=206,
                media_type=media_type,
                headers=headers,
            )

        headers = {"Accept-Ranges": "bytes", "Content-Length": str(file_size)}
        return StreamingResponse(
            _iter_file(path, 0, file_size - 1),
            media_type=media_type,
            headers=headers,
        )

    # ------------------------------------------------------------------
    # Server settings
    # ------------------------------------------------------------------
    @app.get("/api/config")
    async def get_config() -> Dict[str, Any]:
        return _success(settings_store.load().to_mapping())

    @app.put("/api/config")
    async def update_config(payload: ServerSettingsPayload) -> Dict[str, Any]:
        settings = settings_store.update(
            {
                "autoTranscode": payload.auto_transcode,
                "autoTranscodeCount": payload.auto_transcode_count,
            }
        )
        if settings.auto_transcode:
            scheduler.pool.reschedule()
        return _success(settings.to_mapping())

    # ------------------------------------------------------------------
    # Per-listener data
    # ------------------------------------------------------------------
    @app.get("/api/user/favorites")
    async def list_favorites() -> Dict[str, Any]:
        return _success(user_data.list_favorites())

    @app.put("/api/user/favorites/{book_id}")
    async def put_favorite(book_id: str, request: Request) -> Dict[str, Any]:
        details = await _json_object(request)
        return _success(user_data.put_favorite(book_id, details))

    @app.delete("/api/user/favorites/{book_id}")
    async def delete_favorite(book_id: str) -> Dict[str, Any]:
        user_data.remove_favorite(book_id)
        return _success()

    @app.get("/api/user/progress")
    async def list_progress() -> Dict[str, Any]:
        return _success(user_data.list_progress())

    @app.get("/api/user/progress/{book_id}")
    async def get_progress(book_id: str) -> Dict[str, Any]:
        entry = user_data.get_progress(book_id)
        if entry is None:
            raise HTTPException(status_code=404, detail="No progress recorded for this book")
        return _success(entry)

    @app.put("/api/user/progress/{book_id}")
    async def put_progress(book_id: str, request: Request) -> Dict[str, Any]:
        details = await _json_object(request)
        return _success(user_data.put_progress(book_id, details))

    @app.get("/api/user/settings")
    async def get_user_settings() -> Dict[str, Any]:
        return _success(user_data.get_settings())

    @app.put("/api/user/settings")
    async def put_user_settings(request: Request) -> Dict[str, Any]:
        changes = await _json_object(request)
        return _success(user_data.update_settings(changes))

    return app


async def _json_object(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    try:
        payload = await request.json()
    except ValueError as error:
        raise HTTPException(status_code=400, detail="Request body must be JSON") from error
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return payload


__all__ = ["RangeNotSatisfiable", "create_app", "parse_range_header"]
