"""Configuration loading utilities for the Audioshelf server."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".audioshelf_write_check"

DEFAULT_RESCHEDULE_INTERVAL = 60.0


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The helper attempts to create ``preferred`` and returns it when writable. If
    the preferred location is unavailable, each candidate in ``fallbacks`` is
    tried in order. The first writable fallback is returned along with a flag
    indicating that a fallback was used. When no candidate can be prepared the
    original ``preferred`` path is returned.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and scheduler tuning for the server."""

    library_root: Path
    data_root: Path
    reschedule_interval: float = DEFAULT_RESCHEDULE_INTERVAL

    @property
    def cache_root(self) -> Path:
        """Directory holding transcoded MP3 artifacts."""

        return (self.data_root / "transcode-cache").resolve()

    @property
    def settings_file(self) -> Path:
        return self.data_root / "config.json"

    @property
    def user_data_file(self) -> Path:
        return self.data_root / "user-data.json"

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        library_override = os.environ.get("AUDIOSHELF_LIBRARY_ROOT")
        raw_library = library_override or mapping["library_root"]
        library_root = (base_path / Path(raw_library).expanduser()).resolve()
        if not library_root.exists():
            LOGGER.warning("Library directory '%s' does not exist yet.", library_root)

        preferred_data = (base_path / mapping["data_root"]).resolve()
        data_fallback = Path.home() / ".audioshelf" / "data"
        data_root, _ = _select_writable_directory(
            preferred_data,
            label="data",
            fallbacks=(data_fallback,),
        )

        try:
            interval = float(mapping.get("reschedule_interval", DEFAULT_RESCHEDULE_INTERVAL))
        except (TypeError, ValueError):
            LOGGER.warning(
                "Ignoring invalid reschedule_interval %r; using %s seconds.",
                mapping.get("reschedule_interval"),
                DEFAULT_RESCHEDULE_INTERVAL,
            )
            interval = DEFAULT_RESCHEDULE_INTERVAL

        return cls(
            library_root=library_root,
            data_root=data_root,
            reschedule_interval=max(0.0, interval),
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "DEFAULT_RESCHEDULE_INTERVAL", "load_config"]
