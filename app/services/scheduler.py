"""Entry points for background pre-transcoding."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..config import AppConfig
from .audio_conversion import EncodingBackend, FFmpegEncodingBackend
from .events import emit_task_event
from .library import Book
from .load_monitor import LoadMonitor
from .settings import ServerSettings, SettingsStore
from .transcode_cache import TranscodeCache, TranscodeKey
from .transcode_queue import TaskQueue, TranscodeTask
from .transcoder import EncodingPipeline
from .workers import BackoffPolicy, SettingsLoader, SleepFunction, WorkerPool


LOGGER = logging.getLogger(__name__)


STATUS_PREVIEW_LIMIT = 10


@dataclass(frozen=True)
class CancelResult:
    cancelled: bool
    dropped: int
    in_flight: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cancelled": self.cancelled,
            "dropped": self.dropped,
            "inFlight": self.in_flight,
        }


@dataclass(frozen=True)
class TranscodeStatus:
    queue_length: int
    active_workers: int
    ceiling: int
    max_concurrency: int
    in_progress: int
    cancel_requested: bool
    cpu_utilization: float
    memory_utilization: float
    threshold: float
    overloaded: bool
    cpu_count: int
    total_memory: int
    auto_transcode: bool
    auto_transcode_count: int
    cache_files: int
    cache_bytes: int
    queue_items: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "queueLength": data["queue_length"],
            "activeWorkers": data["active_workers"],
            "ceiling": data["ceiling"],
            "maxConcurrency": data["max_concurrency"],
            "inProgress": data["in_progress"],
            "cancelRequested": data["cancel_requested"],
            "cpuUtilization": round(data["cpu_utilization"], 3),
            "memUtilization": round(data["memory_utilization"], 3),
            "threshold": data["threshold"],
            "overloaded": data["overloaded"],
            "cpuCount": data["cpu_count"],
            "totalMemory": data["total_memory"],
            "autoTranscode": data["auto_transcode"],
            "autoTranscodeCount": data["auto_transcode_count"],
            "cacheFiles": data["cache_files"],
            "cacheBytes": data["cache_bytes"],
            "queueItems": data["queue_items"],
        }


class TranscodeScheduler:
    """Own the queue, pipeline and worker pool for one server process."""

    def __init__(
        self,
        *,
        cache: TranscodeCache,
        backend: EncodingBackend,
        load_monitor: LoadMonitor,
        settings_loader: SettingsLoader,
        backoff: BackoffPolicy = BackoffPolicy(),
        reschedule_interval: float = 0.0,
        sleep: SleepFunction = asyncio.sleep,
    ) -> None:
        self.cache = cache
        self.load_monitor = load_monitor
        self._load_settings = settings_loader
        self.pipeline = EncodingPipeline(cache, backend)
        self.queue = TaskQueue(cache, self.pipeline)
        self.pool = WorkerPool(
            self.queue,
            self.pipeline,
            load_monitor,
            settings_loader,
            backoff=backoff,
            reschedule_interval=reschedule_interval,
            sleep=sleep,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        self.cache.ensure_root()
        self.pool.start()

    async def stop(self) -> None:
        await self.pool.stop()
        await self.pipeline.shutdown()

    async def wait_idle(self) -> None:
        await self.pool.wait_idle()

    # ------------------------------------------------------------------
    # Enqueueing
    # ------------------------------------------------------------------
    def enqueue(self, tasks: Iterable[TranscodeTask], *, priority: bool = False) -> int:
        accepted = self.queue.enqueue(tasks, priority=priority)
        # A fresh request supersedes a pending cancel.
        self.pool.cancel_requested = False
        if accepted > 0:
            emit_task_event(
                "queued",
                "Queued background transcodes",
                payload={
                    "accepted": accepted,
                    "priority": priority,
                    "queued": len(self.queue),
                },
            )
            self.pool.schedule_workers(accepted)
        return accepted

    def _collect(self, book: Book, season_index: int, episode_index: int, limit: int) -> List[TranscodeTask]:
        tasks: List[TranscodeTask] = []
        for season, episode in book.iter_episodes(season_index, episode_index):
            if len(tasks) >= limit:
                break
            if episode.needs_transcode:
                tasks.append(
                    TranscodeTask(episode.file_path, TranscodeKey(book.id, season.id, episode.id))
                )
        return tasks

    def pre_transcode_book(self, book: Book) -> int:
        """Queue the opening episodes of a newly added book."""

        settings = self._load_settings()
        if not settings.auto_transcode or not book.seasons:
            return 0
        tasks = self._collect(book, 0, 0, settings.auto_transcode_count)
        if not tasks:
            return 0
        LOGGER.info(
            "Pre-transcoding new book '%s': %s episode(s) (limit %s)",
            book.name,
            len(tasks),
            settings.auto_transcode_count,
        )
        return self.enqueue(tasks)

    def pre_transcode_from_position(self, book: Book, season_index: int, episode_index: int) -> int:
        """Queue the episodes following the one currently playing, ahead of any backlog."""

        settings = self._load_settings()
        if not settings.auto_transcode or not book.seasons:
            return 0
        tasks = self._collect(book, season_index, episode_index + 1, settings.auto_transcode_count)
        if not tasks:
            return 0
        LOGGER.info(
            "Pre-transcoding '%s' after season %s episode %s: %s need conversion",
            book.name,
            season_index,
            episode_index,
            len(tasks),
        )
        return self.enqueue(tasks, priority=True)

    # ------------------------------------------------------------------
    # Control & introspection
    # ------------------------------------------------------------------
    def cancel(self) -> CancelResult:
        in_flight = self.pool.active_workers
        if not self.queue and in_flight == 0:
            return CancelResult(cancelled=False, dropped=0, in_flight=0)
        dropped = self.pool.request_cancel()
        emit_task_event(
            "cancel-requested",
            "Background transcode cancellation requested",
            payload={"dropped": dropped, "in_flight": in_flight},
        )
        return CancelResult(cancelled=True, dropped=dropped, in_flight=in_flight)

    def status(self) -> TranscodeStatus:
        settings: ServerSettings = self._load_settings()
        cpu = self.load_monitor.cpu_utilization()
        memory = self.load_monitor.memory_utilization()
        threshold = self.load_monitor.threshold
        usage = self.cache.usage()
        return TranscodeStatus(
            queue_length=len(self.queue),
            active_workers=self.pool.active_workers,
            ceiling=self.pool.ceiling,
            max_concurrency=self.pool.max_concurrency,
            in_progress=self.pipeline.in_progress_count(),
            cancel_requested=self.pool.cancel_requested,
            cpu_utilization=cpu,
            memory_utilization=memory,
            threshold=threshold,
            overloaded=cpu > threshold or memory > threshold,
            cpu_count=self.load_monitor.cpu_count(),
            total_memory=self.load_monitor.total_memory(),
            auto_transcode=settings.auto_transcode,
            auto_transcode_count=settings.auto_transcode_count,
            cache_files=usage.files,
            cache_bytes=usage.bytes,
            queue_items=self.queue.preview(STATUS_PREVIEW_LIMIT),
        )

    async def ensure_transcoded(self, source: Path, key: TranscodeKey) -> Path:
        return await self.pipeline.ensure_transcoded(source, key)

    def is_transcoded(self, key: TranscodeKey) -> bool:
        return self.cache.is_valid(key)


def build_scheduler(
    config: AppConfig,
    *,
    backend: Optional[EncodingBackend] = None,
    load_monitor: Optional[LoadMonitor] = None,
    settings_store: Optional[SettingsStore] = None,
    backoff: BackoffPolicy = BackoffPolicy(),
    reschedule_interval: Optional[float] = None,
) -> TranscodeScheduler:
    """Wire a scheduler for *config*, substituting collaborators where given."""

    store = settings_store or SettingsStore(config)
    return TranscodeScheduler(
        cache=TranscodeCache(config.cache_root),
        backend=backend or FFmpegEncodingBackend(),
        load_monitor=load_monitor or LoadMonitor(),
        settings_loader=store.load,
        backoff=backoff,
        reschedule_interval=(
            config.reschedule_interval if reschedule_interval is None else reschedule_interval
        ),
    )


__all__ = [
    "CancelResult",
    "TranscodeScheduler",
    "TranscodeStatus",
    "build_scheduler",
]
