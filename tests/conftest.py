from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Iterable, List, Optional, Set

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.bootstrap import Bootstrapper
from app.config import AppConfig
from app.services.audio_conversion import EncodingParams, EncodingResult
from app.services.library import LibraryService
from app.services.settings import ServerSettings


ARTIFACT_BYTES = 2048


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_file = config_dir / "default.json"
    config_file.write_text(
        """
        {
            \"library_root\": \"library\",\n
            \"data_root\": \"data\",\n
            \"reschedule_interval\": 0\n
        }
        """,
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("AUDIOSHELF_LIBRARY_ROOT", raising=False)

    config = AppConfig.from_mapping(
        {
            "library_root": "library",
            "data_root": "data",
            "reschedule_interval": 0,
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


class FakeBackend:
    """Encoder double that writes a fixed-size artifact instead of running ffmpeg."""

    def __init__(
        self,
        *,
        gate: Optional[asyncio.Event] = None,
        failing: Iterable[str] = (),
        spawn_error: Optional[OSError] = None,
    ) -> None:
        self.gate = gate
        self.failing: Set[str] = set(failing)
        self.spawn_error = spawn_error
        self.calls: List[Path] = []
        self.running = 0
        self.max_running = 0

    async def encode(self, source: Path, destination: Path, params: EncodingParams) -> EncodingResult:
        if self.spawn_error is not None:
            raise self.spawn_error
        self.calls.append(source)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if source.name in self.failing:
                destination.write_bytes(b"partial")
                return EncodingResult(returncode=1, stderr="Invalid data found when processing input")
            destination.write_bytes(b"\0" * ARTIFACT_BYTES)
            return EncodingResult(returncode=0)
        finally:
            self.running -= 1


class FakeLoadMonitor:
    """Load monitor double with scripted readings."""

    def __init__(self, *, cores: int = 8, overloaded: bool = False, threshold: float = 0.85) -> None:
        self.cores = cores
        self.overloaded = overloaded
        self.threshold = threshold
        self.checks = 0

    def cpu_count(self) -> int:
        return self.cores

    def total_memory(self) -> int:
        return 16 * 1024 ** 3

    def cpu_utilization(self) -> float:
        return 0.95 if self.overloaded else 0.2

    def memory_utilization(self) -> float:
        return 0.4

    def is_overloaded(self) -> bool:
        self.checks += 1
        return self.overloaded


class SettingsHolder:
    """Mutable settings source standing in for the on-disk store."""

    def __init__(self, auto_transcode: bool = True, auto_transcode_count: int = 5) -> None:
        self.settings = ServerSettings(auto_transcode, auto_transcode_count)

    def __call__(self) -> ServerSettings:
        return self.settings


class RecordingSleep:
    """Replacement for ``asyncio.sleep`` that only records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def settle(rounds: int = 10) -> None:
    """Let freshly spawned tasks run up to their first real suspension point."""

    for _ in range(rounds):
        await asyncio.sleep(0)


def write_audio(path: Path, size: int = 64) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\1" * size)
    return path


@pytest.fixture()
def sample_library(temp_config: AppConfig) -> LibraryService:
    root = temp_config.library_root
    write_audio(root / "The Long Voyage" / "Season 1" / "01 Departure.wma")
    write_audio(root / "The Long Voyage" / "Season 1" / "02 Open Sea.mp3")
    write_audio(root / "The Long Voyage" / "Season 1" / "03 Storm.wma")
    write_audio(root / "The Long Voyage" / "Season 2" / "01 Landfall.ape")
    write_audio(root / "The Long Voyage" / "Season 2" / "02 Return.wma")
    write_audio(root / "Short Stories" / "Story 2.mp3", size=4096)
    write_audio(root / "Short Stories" / "Story 10.mp3")
    library = LibraryService(root)
    library.scan()
    return library


@pytest.fixture()
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def fake_monitor() -> FakeLoadMonitor:
    return FakeLoadMonitor()
