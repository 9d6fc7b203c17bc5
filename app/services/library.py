"""Filesystem-backed audiobook library."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .naming import build_stable_id, natural_sort_key


LOGGER = logging.getLogger(__name__)


# Formats every mainstream browser plays natively.
PLAYABLE_EXTENSIONS = {".mp3", ".m4a", ".m4b", ".aac", ".wav", ".ogg", ".oga", ".opus", ".flac", ".webm"}
# Formats that must go through the transcoder first.
TRANSCODE_EXTENSIONS = {".wma", ".ape", ".amr", ".ac3", ".aif", ".aiff", ".wv", ".tta", ".ra", ".rm", ".mka", ".dsf"}
AUDIO_EXTENSIONS = PLAYABLE_EXTENSIONS | TRANSCODE_EXTENSIONS

_MIME_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".oga": "audio/ogg",
    ".opus": "audio/opus",
    ".flac": "audio/flac",
    ".aac": "audio/aac",
    ".m4a": "audio/mp4",
    ".m4b": "audio/mp4",
    ".webm": "audio/webm",
    ".wma": "audio/x-ms-wma",
    ".ape": "audio/ape",
}


class LibraryError(RuntimeError):
    """Raised when a book, season or episode cannot be found."""


class SourceMissing(FileNotFoundError):
    """Raised when an episode's audio file is no longer on disk."""


def get_extension(file_name: str) -> str:
    return Path(file_name).suffix.lower()


def needs_transcode(file_name: str) -> bool:
    return get_extension(file_name) in TRANSCODE_EXTENSIONS


def mime_type_for(path: Path | str) -> str:
    return _MIME_TYPES.get(get_extension(str(path)), "audio/mpeg")


@dataclass
class Episode:
    id: str
    name: str
    file_name: str
    file_path: Path

    @property
    def needs_transcode(self) -> bool:
        return needs_transcode(self.file_name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "fileName": self.file_name,
            "needsTranscode": self.needs_transcode,
        }


@dataclass
class Season:
    id: str
    name: str
    episodes: List[Episode] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "episodes": [episode.to_dict() for episode in self.episodes],
        }


@dataclass
class Book:
    id: str
    name: str
    path: Path
    seasons: List[Season] = field(default_factory=list)

    @property
    def episode_count(self) -> int:
        return sum(len(season.episodes) for season in self.seasons)

    def iter_episodes(
        self, season_index: int = 0, episode_index: int = 0
    ) -> Iterator[Tuple[Season, Episode]]:
        """Yield episodes in playback order from the given position onwards.

        Walks across season boundaries; an episode index past the end of its
        season simply continues with the next season.
        """

        s_idx = max(0, season_index)
        e_idx = max(0, episode_index)
        while s_idx < len(self.seasons):
            season = self.seasons[s_idx]
            while e_idx < len(season.episodes):
                yield season, season.episodes[e_idx]
                e_idx += 1
            s_idx += 1
            e_idx = 0

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "seasonCount": len(self.seasons),
            "episodeCount": self.episode_count,
            "needsTranscode": any(
                episode.needs_transcode for _, episode in self.iter_episodes()
            ),
        }

    def to_dict(self) -> Dict[str, Any]:
        payload = self.summary()
        payload["seasons"] = [season.to_dict() for season in self.seasons]
        return payload


def _audio_files(directory: Path) -> List[Path]:
    files = [
        entry
        for entry in directory.iterdir()
        if entry.is_file() and not entry.name.startswith(".") and entry.suffix.lower() in AUDIO_EXTENSIONS
    ]
    return sorted(files, key=lambda entry: natural_sort_key(entry.name))


def _subdirectories(directory: Path) -> List[Path]:
    entries = [
        entry for entry in directory.iterdir() if entry.is_dir() and not entry.name.startswith(".")
    ]
    return sorted(entries, key=lambda entry: natural_sort_key(entry.name))


class LibraryService:
    """Scan ``library_root`` into books, seasons and episodes.

    Layout: ``<root>/<Book>/<Season>/<episode files>``. Audio files placed
    directly inside a book folder form an implicit first season named after
    the book.
    """

    def __init__(self, library_root: Path) -> None:
        self._root = library_root
        self._books: Dict[str, Book] = {}
        self._scanned = False
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def _relative(self, path: Path) -> str:
        return path.relative_to(self._root).as_posix()

    def _build_season(self, directory: Path, name: str, files: List[Path]) -> Season:
        season_id = build_stable_id(self._relative(directory) + "/" + name)
        episodes = [
            Episode(
                id=build_stable_id(self._relative(audio)),
                name=audio.stem,
                file_name=audio.name,
                file_path=audio.resolve(),
            )
            for audio in files
        ]
        return Season(id=season_id, name=name, episodes=episodes)

    def _build_book(self, directory: Path) -> Optional[Book]:
        seasons: List[Season] = []
        direct_files = _audio_files(directory)
        if direct_files:
            seasons.append(self._build_season(directory, directory.name, direct_files))
        for child in _subdirectories(directory):
            files = _audio_files(child)
            if files:
                seasons.append(self._build_season(child, child.name, files))
        if not seasons:
            return None
        return Book(
            id=build_stable_id(self._relative(directory)),
            name=directory.name,
            path=directory.resolve(),
            seasons=seasons,
        )

    def scan(self) -> List[Book]:
        """Rebuild the catalogue and return every book found."""

        books: Dict[str, Book] = {}
        if self._root.is_dir():
            for directory in _subdirectories(self._root):
                try:
                    book = self._build_book(directory)
                except OSError as error:
                    LOGGER.warning("Skipping unreadable book folder %s: %s", directory, error)
                    continue
                if book is not None:
                    books[book.id] = book
        else:
            LOGGER.warning("Library root %s is missing; catalogue is empty", self._root)

        with self._lock:
            self._books = books
            self._scanned = True
        LOGGER.info("Library scan found %s book(s) in %s", len(books), self._root)
        return list(books.values())

    def rescan(self) -> List[Book]:
        """Scan again and return only books that were not known before."""

        with self._lock:
            known = set(self._books) if self._scanned else None
        books = self.scan()
        if known is None:
            return []
        return [book for book in books if book.id not in known]

    def _ensure_scanned(self) -> None:
        if not self._scanned:
            self.scan()

    def list_books(self) -> List[Book]:
        self._ensure_scanned()
        with self._lock:
            return sorted(self._books.values(), key=lambda book: natural_sort_key(book.name))

    def get_book(self, book_id: str) -> Optional[Book]:
        self._ensure_scanned()
        with self._lock:
            return self._books.get(book_id)

    def find_episode(self, book_id: str, season_id: str, episode_id: str) -> Tuple[Book, Season, Episode]:
        book = self.get_book(book_id)
        if book is None:
            raise LibraryError("Book not found")
        season = next((item for item in book.seasons if item.id == season_id), None)
        if season is None:
            raise LibraryError("Season not found")
        episode = next((item for item in season.episodes if item.id == episode_id), None)
        if episode is None:
            raise LibraryError("Episode not found")
        if not episode.file_path.is_file():
            raise SourceMissing(f"Audio file is missing: {episode.file_path}")
        return book, season, episode


__all__ = [
    "AUDIO_EXTENSIONS",
    "Book",
    "Episode",
    "LibraryError",
    "LibraryService",
    "PLAYABLE_EXTENSIONS",
    "Season",
    "SourceMissing",
    "TRANSCODE_EXTENSIONS",
    "get_extension",
    "mime_type_for",
    "needs_transcode",
]
