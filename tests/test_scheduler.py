from __future__ import annotations

import asyncio
from typing import List

from app.services.library import Book, LibraryService
from app.services.scheduler import TranscodeScheduler, build_scheduler
from app.services.settings import ServerSettings, SettingsStore
from app.services.transcode_cache import TranscodeCache

from conftest import FakeBackend, FakeLoadMonitor, SettingsHolder, settle


def _scheduler(config, backend=None, monitor=None, settings=None) -> TranscodeScheduler:
    return TranscodeScheduler(
        cache=TranscodeCache(config.cache_root),
        backend=backend or FakeBackend(),
        load_monitor=monitor or FakeLoadMonitor(),
        settings_loader=settings or SettingsHolder(),
    )


def _voyage(library: LibraryService) -> Book:
    return next(book for book in library.list_books() if book.name == "The Long Voyage")


def _queued_files(scheduler: TranscodeScheduler, book: Book) -> List[str]:
    names = {
        episode.id: episode.file_name for _, episode in book.iter_episodes()
    }
    return [names[key.episode_id] for key in scheduler.queue.keys()]


def test_new_book_collects_episodes_needing_conversion(temp_config, sample_library) -> None:
    book = _voyage(sample_library)

    async def scenario():
        scheduler = _scheduler(
            temp_config,
            backend=FakeBackend(gate=asyncio.Event()),
            monitor=FakeLoadMonitor(cores=2),
            settings=SettingsHolder(auto_transcode_count=3),
        )
        accepted = scheduler.pre_transcode_book(book)
        queued = _queued_files(scheduler, book)
        await scheduler.stop()
        return accepted, queued

    accepted, queued = asyncio.run(scenario())

    # The playable MP3 is skipped and does not use up the window.
    assert accepted == 3
    assert queued == ["01 Departure.wma", "03 Storm.wma", "01 Landfall.ape"]


def test_position_window_crosses_seasons_and_goes_first(temp_config, sample_library) -> None:
    book = _voyage(sample_library)

    async def scenario():
        backend = FakeBackend(gate=asyncio.Event())
        scheduler = _scheduler(
            temp_config,
            backend=backend,
            monitor=FakeLoadMonitor(cores=2),
            settings=SettingsHolder(auto_transcode_count=2),
        )
        scheduler.pre_transcode_book(book)
        await settle()
        before = _queued_files(scheduler, book)
        accepted = scheduler.pre_transcode_from_position(book, 1, 0)
        after = _queued_files(scheduler, book)
        backend.gate.set()
        await scheduler.wait_idle()
        return before, accepted, after

    before, accepted, after = asyncio.run(scenario())

    # The single worker already claimed the opening episode.
    assert before == ["03 Storm.wma"]
    assert accepted == 1
    assert after == ["02 Return.wma", "03 Storm.wma"]


def test_position_window_is_prepended_to_backlog(temp_config, sample_library) -> None:
    book = _voyage(sample_library)

    async def scenario():
        settings = SettingsHolder(auto_transcode_count=3)
        backend = FakeBackend(gate=asyncio.Event())
        scheduler = _scheduler(
            temp_config, backend=backend, monitor=FakeLoadMonitor(cores=2), settings=settings
        )
        scheduler.pre_transcode_book(book)
        await settle()
        backlog = _queued_files(scheduler, book)
        settings.settings.auto_transcode_count = 2
        accepted = scheduler.pre_transcode_from_position(book, 0, 2)
        reordered = _queued_files(scheduler, book)
        scheduler.pre_transcode_from_position(book, 0, 1)
        deduplicated = _queued_files(scheduler, book)
        backend.gate.set()
        await scheduler.wait_idle()
        return backlog, accepted, reordered, deduplicated

    backlog, accepted, reordered, deduplicated = asyncio.run(scenario())

    assert backlog == ["03 Storm.wma", "01 Landfall.ape"]
    # "01 Landfall" is already queued; only "02 Return" is admitted.
    assert accepted == 1
    assert reordered == ["02 Return.wma", "03 Storm.wma", "01 Landfall.ape"]
    assert deduplicated == reordered


def test_auto_transcode_disabled_queues_nothing(temp_config, sample_library) -> None:
    book = _voyage(sample_library)
    scheduler = _scheduler(temp_config, settings=SettingsHolder(auto_transcode=False))

    assert scheduler.pre_transcode_book(book) == 0
    assert scheduler.pre_transcode_from_position(book, 0, 0) == 0
    assert len(scheduler.queue) == 0


def test_book_without_transcodable_episodes_queues_nothing(temp_config, sample_library) -> None:
    book = next(book for book in sample_library.list_books() if book.name == "Short Stories")
    scheduler = _scheduler(temp_config)

    assert scheduler.pre_transcode_book(book) == 0


def test_cancel_reports_dropped_and_in_flight(temp_config, sample_library) -> None:
    book = _voyage(sample_library)

    async def scenario():
        backend = FakeBackend(gate=asyncio.Event())
        scheduler = _scheduler(temp_config, backend=backend, monitor=FakeLoadMonitor(cores=2))
        idle = scheduler.cancel()
        scheduler.pre_transcode_book(book)
        await settle()
        result = scheduler.cancel()
        status = scheduler.status()
        backend.gate.set()
        await scheduler.wait_idle()
        return idle, result, status, scheduler

    idle, result, status, scheduler = asyncio.run(scenario())

    assert idle.cancelled is False
    assert result.to_dict() == {"cancelled": True, "dropped": 3, "inFlight": 1}
    assert status.cancel_requested is True
    assert len(scheduler.queue) == 0
    assert scheduler.pool.cancel_requested is False


def test_new_request_supersedes_pending_cancel(temp_config, sample_library) -> None:
    book = _voyage(sample_library)

    async def scenario():
        backend = FakeBackend(gate=asyncio.Event())
        scheduler = _scheduler(
            temp_config,
            backend=backend,
            monitor=FakeLoadMonitor(cores=2),
            settings=SettingsHolder(auto_transcode_count=1),
        )
        scheduler.pre_transcode_book(book)
        await settle()
        scheduler.cancel()
        scheduler.pre_transcode_from_position(book, 0, 1)
        flag = scheduler.pool.cancel_requested
        backend.gate.set()
        await scheduler.wait_idle()
        return flag, backend

    flag, backend = asyncio.run(scenario())

    assert flag is False
    assert len(backend.calls) == 2


def test_status_snapshot(temp_config, sample_library) -> None:
    book = _voyage(sample_library)

    async def scenario():
        backend = FakeBackend(gate=asyncio.Event())
        scheduler = _scheduler(temp_config, backend=backend, monitor=FakeLoadMonitor(cores=8))
        scheduler.pre_transcode_book(book)
        queued = scheduler.status().to_dict()
        await settle()
        running = scheduler.status().to_dict()
        backend.gate.set()
        await scheduler.wait_idle()
        done = scheduler.status().to_dict()
        return queued, running, done

    queued, running, done = asyncio.run(scenario())

    assert queued["queueLength"] == 4
    assert queued["activeWorkers"] == 4
    assert queued["ceiling"] == 4
    assert queued["maxConcurrency"] == 10
    assert queued["threshold"] == 0.85
    assert queued["overloaded"] is False
    assert len(queued["queueItems"]) == 4
    assert set(queued["queueItems"][0]) == {"bookId", "seasonId", "episodeId"}
    assert running["queueLength"] == 0
    assert running["inProgress"] == 4
    assert done["activeWorkers"] == 0
    assert done["cacheFiles"] == 4


def test_build_scheduler_reads_persisted_settings(temp_config, sample_library) -> None:
    store = SettingsStore(temp_config)
    store.save(ServerSettings(auto_transcode=True, auto_transcode_count=1))
    scheduler = build_scheduler(
        temp_config,
        backend=FakeBackend(),
        load_monitor=FakeLoadMonitor(),
        settings_store=store,
    )

    async def scenario():
        accepted = scheduler.pre_transcode_book(_voyage(sample_library))
        await scheduler.wait_idle()
        return accepted

    assert asyncio.run(scenario()) == 1
    assert scheduler.cache.root == temp_config.cache_root
    assert scheduler.status().auto_transcode_count == 1
