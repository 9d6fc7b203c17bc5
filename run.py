"""Entry-point for the Audioshelf server."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import webbrowser
from pathlib import Path
from typing import Optional

import httpx
import typer
import uvicorn

from app.bootstrap import initialize_app
from app.config import AppConfig
from app.logging_utils import DEFAULT_LOG_FORMAT, configure_logging, get_log_file_path
from app.services.audio_conversion import ffmpeg_available
from app.services.library import LibraryService
from app.services.scheduler import build_scheduler
from app.web import create_app


LOGGER = logging.getLogger("audioshelf.cli")


cli = typer.Typer(add_completion=False, help="Audioshelf management commands")


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _prepare_logging(data_root: Path) -> None:
    log_file = get_log_file_path(data_root)
    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    configure_logging(handlers=[file_handler, stream_handler])


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


def _client_host(host: str) -> str:
    if not host or host in {"0.0.0.0", "::"}:
        return "127.0.0.1"
    return host


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None, open_browser=False)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="AUDIOSHELF_ROOT_PATH",
    ),
    open_browser: bool = typer.Option(False, "--open-browser", help="Open the web UI once started"),
) -> None:
    """Run the streaming server with background pre-transcoding."""

    app_config = initialize_app()
    _prepare_logging(app_config.data_root)
    if not ffmpeg_available():
        LOGGER.warning("ffmpeg was not found on PATH; formats that need transcoding will fail to play.")

    library = LibraryService(app_config.library_root)
    normalized_root = _normalize_root_path(root_path)
    app = create_app(library, config=app_config, root_path=normalized_root)

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server

    if open_browser:
        url = f"http://{_client_host(host)}:{port}{normalized_root}/"

        def _open_browser_later() -> None:
            time.sleep(1.0)
            try:
                webbrowser.open(url, new=2, autoraise=True)
            except webbrowser.Error as error:
                LOGGER.warning("Could not open browser: %s", error)

        threading.Thread(target=_open_browser_later, daemon=True).start()

    server.run()


@cli.command()
def status(
    host: str = typer.Option(DEFAULT_HOST, help="Host of the running server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port of the running server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the server is mounted under",
        envvar="AUDIOSHELF_ROOT_PATH",
    ),
    timeout: float = typer.Option(5.0, help="Seconds to wait for the server"),
) -> None:
    """Print the running server's transcode scheduler status as JSON."""

    base = f"http://{_client_host(host)}:{port}{_normalize_root_path(root_path)}"
    url = f"{base}/api/audio/transcode-status"
    try:
        response = httpx.get(url, timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPError as error:
        typer.echo(f"Could not read scheduler status from {url}: {error}", err=True)
        raise typer.Exit(code=1) from error
    payload = response.json()
    typer.echo(json.dumps(payload.get("data", payload), indent=2))


async def _drain(app_config: AppConfig, book_id: str, season: Optional[int], episode: Optional[int]) -> int:
    library = LibraryService(app_config.library_root)
    await asyncio.to_thread(library.scan)
    book = library.get_book(book_id)
    if book is None:
        raise typer.BadParameter(f"Unknown book id '{book_id}'.", param_hint="BOOK_ID")

    # No supervisor tick: the command exits once the queue drains.
    scheduler = build_scheduler(app_config, reschedule_interval=0.0)
    scheduler.start()
    try:
        if season is None and episode is None:
            queued = scheduler.pre_transcode_book(book)
        else:
            queued = scheduler.pre_transcode_from_position(book, season or 0, episode or 0)
        typer.echo(f"Queued {queued} episode(s) of '{book.name}' for transcoding.")
        await scheduler.wait_idle()
    finally:
        await scheduler.stop()
    return queued


@cli.command()
def pretranscode(
    book_id: str = typer.Argument(..., help="Identifier of the book to pre-transcode"),
    season: Optional[int] = typer.Option(None, min=0, help="Season index of the current position"),
    episode: Optional[int] = typer.Option(None, min=0, help="Episode index of the current position"),
) -> None:
    """Transcode the upcoming episodes of BOOK_ID and wait until they finish."""

    app_config = initialize_app()
    _prepare_logging(app_config.data_root)
    asyncio.run(_drain(app_config, book_id, season, episode))
    typer.echo("Pre-transcoding finished.")


if __name__ == "__main__":
    cli()
