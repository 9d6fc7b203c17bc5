"""Helpers for converting library audio into a browser-friendly format."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Sequence


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncodingParams:
    """Fixed output parameters for transcoded episodes."""

    container: str = "mp3"
    codec: str = "libmp3lame"
    bitrate: str = "128k"
    sample_rate: int = 44_100
    channels: int = 2


STREAMING_PARAMS = EncodingParams()


@dataclass(frozen=True)
class EncodingResult:
    """Outcome of a single encoder invocation."""

    returncode: int
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0


class EncodingFailed(RuntimeError):
    """Raised when the encoder exits non-zero or cannot be spawned."""

    def __init__(
        self,
        message: str,
        *,
        key: object = None,
        source: Optional[Path] = None,
        returncode: Optional[int] = None,
        spawn_error: Optional[BaseException] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.key = key
        self.source = source
        self.returncode = returncode
        self.spawn_error = spawn_error
        self.stderr = stderr


class EncodingBackend(Protocol):
    """Protocol describing an external audio encoder."""

    async def encode(
        self, source: Path, destination: Path, params: EncodingParams
    ) -> EncodingResult:
        """Write *source* re-encoded with *params* to *destination*.

        Spawn failures are raised as :class:`OSError`; encoder failures are
        reported through :attr:`EncodingResult.returncode`.
        """


def build_ffmpeg_command(
    ffmpeg_path: str, source: Path, destination: Path, params: EncodingParams
) -> list[str]:
    """Return the FFmpeg argument vector for a constant-bitrate conversion."""

    return [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel",
        "error",
        "-y",
        "-i",
        str(source),
        "-vn",
        "-map_metadata",
        "0",
        "-c:a",
        params.codec,
        "-f",
        params.container,
        "-b:a",
        params.bitrate,
        "-ar",
        str(params.sample_rate),
        "-ac",
        str(params.channels),
        str(destination),
    ]


class FFmpegEncodingBackend:
    """Run FFmpeg as an asyncio subprocess."""

    def __init__(self, ffmpeg_path: Optional[str] = None) -> None:
        self._ffmpeg_path = ffmpeg_path

    @property
    def ffmpeg_path(self) -> str:
        return self._ffmpeg_path or shutil.which("ffmpeg") or "ffmpeg"

    async def encode(
        self, source: Path, destination: Path, params: EncodingParams
    ) -> EncodingResult:
        destination.parent.mkdir(parents=True, exist_ok=True)
        command = build_ffmpeg_command(self.ffmpeg_path, source, destination, params)
        LOGGER.debug("Executing FFmpeg command: %s", " ".join(command))

        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        stderr_text = stderr.decode("utf-8", errors="ignore").strip()
        if process.returncode != 0:
            stdout_text = stdout.decode("utf-8", errors="ignore").strip()
            LOGGER.debug(
                "FFmpeg conversion failed (code=%s). stderr=%s stdout=%s",
                process.returncode,
                stderr_text,
                stdout_text,
            )
        return EncodingResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stderr=stderr_text,
        )


def summarize_stderr(stderr: str) -> str:
    """Return the first meaningful line of encoder output."""

    lines: Sequence[str] = [line for line in stderr.splitlines() if line.strip()]
    return lines[0].strip() if lines else ""


def ffmpeg_available() -> bool:
    """Return ``True`` when an FFmpeg binary is on ``PATH``."""

    return shutil.which("ffmpeg") is not None


__all__ = [
    "EncodingBackend",
    "EncodingFailed",
    "EncodingParams",
    "EncodingResult",
    "FFmpegEncodingBackend",
    "STREAMING_PARAMS",
    "build_ffmpeg_command",
    "ffmpeg_available",
    "summarize_stderr",
]
