"""Worker loops that drain the transcode queue under admission control."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Set

from .audio_conversion import EncodingFailed
from .events import emit_task_event
from .load_monitor import LoadMonitor
from .settings import ServerSettings
from .transcode_queue import TaskQueue
from .transcoder import EncodingPipeline


LOGGER = logging.getLogger(__name__)


MAX_CONCURRENCY = 10

SleepFunction = Callable[[float], Awaitable[None]]
SettingsLoader = Callable[[], ServerSettings]


def compute_ceiling(cpu_count: int, max_concurrency: int = MAX_CONCURRENCY) -> int:
    """Return how many encoders may run at once on a host with *cpu_count* cores."""

    return max(1, min(max_concurrency, int(cpu_count) // 2))


@dataclass(frozen=True)
class BackoffPolicy:
    """How a worker waits out host overload before retiring."""

    initial_delay: float = 10.0
    retry_delay: float = 15.0
    max_retries: int = 3


class WorkerPool:
    """Spawn and retire worker loops over a shared :class:`TaskQueue`.

    Workers are ``asyncio`` tasks on the server's event loop. All shared state
    (queue, active count, cancel flag) is only touched between awaits, so no
    locking is needed. Running encodes are never interrupted: cancellation and
    a shrinking ceiling only affect what gets started next.
    """

    def __init__(
        self,
        queue: TaskQueue,
        pipeline: EncodingPipeline,
        load_monitor: LoadMonitor,
        settings_loader: SettingsLoader,
        *,
        backoff: BackoffPolicy = BackoffPolicy(),
        max_concurrency: int = MAX_CONCURRENCY,
        reschedule_interval: float = 0.0,
        sleep: SleepFunction = asyncio.sleep,
    ) -> None:
        self._queue = queue
        self._pipeline = pipeline
        self._monitor = load_monitor
        self._load_settings = settings_loader
        self._backoff = backoff
        self._max_concurrency = max_concurrency
        self._reschedule_interval = reschedule_interval
        self._sleep = sleep
        self._workers: Set[asyncio.Task[None]] = set()
        self._active = 0
        self._serial = 0
        self._supervisor: Optional[asyncio.Task[None]] = None
        self.cancel_requested = False

    @property
    def active_workers(self) -> int:
        return self._active

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def ceiling(self) -> int:
        return compute_ceiling(self._monitor.cpu_count(), self._max_concurrency)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------
    def schedule_workers(self, new_count: int) -> int:
        """Start workers for *new_count* freshly admitted tasks.

        Returns the number of workers spawned by this call.
        """

        if self._monitor.is_overloaded():
            if self._active == 0 and self._queue:
                LOGGER.warning(
                    "Host overloaded; starting a single throttled worker for %s queued task(s)",
                    len(self._queue),
                )
                self._spawn(1)
                return 1
            LOGGER.info(
                "Host overloaded; not adding workers (active=%s, queued=%s)",
                self._active,
                len(self._queue),
            )
            return 0

        ceiling = self.ceiling
        desired = min(new_count, len(self._queue), ceiling)
        to_spawn = max(0, desired - self._active)
        if to_spawn > 0:
            LOGGER.info(
                "Starting %s transcode worker(s) (active=%s, queued=%s, ceiling=%s)",
                to_spawn,
                self._active,
                len(self._queue),
                ceiling,
            )
            self._spawn(to_spawn)
        return to_spawn

    def _spawn(self, count: int) -> None:
        loop = asyncio.get_running_loop()
        for _ in range(count):
            self._serial += 1
            name = f"transcode-worker-{self._serial}"
            # Counted before the task first runs so back-to-back scheduling
            # decisions see it.
            self._active += 1
            worker = loop.create_task(self._run_worker(name), name=name)
            self._workers.add(worker)
            worker.add_done_callback(self._workers.discard)
            emit_task_event(
                "worker-started",
                "Transcode worker started",
                payload={"worker": name, "active": self._active, "queued": len(self._queue)},
            )

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------
    async def _wait_for_capacity(self, name: str) -> bool:
        """Back off while the host is overloaded; ``False`` means retire."""

        LOGGER.info("%s: host overloaded, pausing %.0fs", name, self._backoff.initial_delay)
        await self._sleep(self._backoff.initial_delay)
        for attempt in range(self._backoff.max_retries):
            if attempt:
                await self._sleep(self._backoff.retry_delay)
            if not self._monitor.is_overloaded():
                return True
            LOGGER.debug(
                "%s: still overloaded after check %s/%s",
                name,
                attempt + 1,
                self._backoff.max_retries,
            )
        return False

    async def _run_worker(self, name: str) -> None:
        processed = 0
        try:
            while self._queue:
                if self.cancel_requested:
                    break
                if not self._load_settings().auto_transcode:
                    LOGGER.info("%s: auto transcode disabled; stopping background queue", name)
                    self.cancel_requested = True
                    break
                if self._monitor.is_overloaded():
                    if not await self._wait_for_capacity(name):
                        emit_task_event(
                            "worker-retired",
                            "Worker retired under sustained overload",
                            payload={"worker": name, "queued": len(self._queue)},
                            level=logging.WARNING,
                        )
                        break
                    if self.cancel_requested:
                        break

                task = self._queue.claim()
                if task is None:
                    break
                try:
                    await self._pipeline.ensure_transcoded(task.source_path, task.key)
                except EncodingFailed as error:
                    LOGGER.error(
                        "%s: background transcode failed for %s: %s",
                        name,
                        task.source_path.name,
                        error,
                    )
                except Exception:  # noqa: BLE001
                    LOGGER.exception(
                        "%s: unexpected error while transcoding %s", name, task.source_path.name
                    )
                else:
                    processed += 1
        finally:
            self._active -= 1
            self._finish_worker(name, processed)

    def _finish_worker(self, name: str, processed: int) -> None:
        emit_task_event(
            "worker-exited",
            "Transcode worker exited",
            payload={
                "worker": name,
                "processed": processed,
                "active": self._active,
                "queued": len(self._queue),
            },
        )
        if self._active > 0:
            return
        if self.cancel_requested:
            dropped = self._queue.clear()
            self.cancel_requested = False
            emit_task_event(
                "cancelled",
                "Background transcode queue cleared",
                payload={"dropped": dropped},
            )
        elif not self._queue:
            LOGGER.info("Background transcode queue fully drained")

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    def request_cancel(self) -> int:
        """Flag cancellation; returns the number of queued tasks to be dropped.

        With no worker running nobody would observe the flag, so the queue is
        cleared on the spot instead.
        """

        dropped = len(self._queue)
        if self._active == 0:
            self._queue.clear()
            self.cancel_requested = False
        else:
            self.cancel_requested = True
        return dropped

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------
    def reschedule(self) -> int:
        """Restart progress on a queue that no worker is serving."""

        if not self._queue or self._active or self.cancel_requested:
            return 0
        if not self._load_settings().auto_transcode:
            return 0
        LOGGER.info("Rescheduling %s stranded transcode task(s)", len(self._queue))
        return self.schedule_workers(len(self._queue))

    async def _supervise(self) -> None:
        while True:
            await self._sleep(self._reschedule_interval)
            try:
                self.reschedule()
            except Exception:  # noqa: BLE001 - keep the tick alive
                LOGGER.exception("Transcode reschedule tick failed")

    def start(self) -> None:
        if self._reschedule_interval <= 0:
            return
        if self._supervisor is None or self._supervisor.done():
            self._supervisor = asyncio.get_running_loop().create_task(
                self._supervise(), name="transcode-reschedule"
            )

    async def wait_idle(self) -> None:
        """Wait until every worker spawned so far (and any they led to) has exited."""

        while self._workers:
            await asyncio.gather(*list(self._workers), return_exceptions=True)

    async def stop(self) -> None:
        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None:
            supervisor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await supervisor
        workers = list(self._workers)
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)


__all__ = ["BackoffPolicy", "MAX_CONCURRENCY", "WorkerPool", "compute_ceiling"]
