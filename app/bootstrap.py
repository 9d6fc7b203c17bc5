"""Bootstrap logic that prepares runtime directories and the transcode cache."""

from __future__ import annotations

import logging
from pathlib import Path

from . import config as config_module
from .config import AppConfig, load_config
from .services.transcode_cache import TranscodeCache

LOGGER = logging.getLogger(__name__)

# Temp files untouched for this long have no live encoder behind them.
STALE_TEMP_AGE_SECONDS = 15 * 60


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._purge_stale_artifacts()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        for label, path in (
            ("data", self._config.data_root),
            ("transcode cache", self._config.cache_root),
        ):
            if not config_module._ensure_writable_directory(path):
                raise BootstrapError(f"The {label} directory '{path}' is not writable.")
            LOGGER.debug("Ensured directory exists: %s", path)

        library_root = self._config.library_root
        try:
            library_root.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise BootstrapError(
                f"The library directory '{library_root}' cannot be created: {error}"
            ) from error
        LOGGER.debug("Library directory: %s", library_root)

    def _purge_stale_artifacts(self) -> None:
        removed = TranscodeCache(self._config.cache_root).purge_temporary(
            older_than=STALE_TEMP_AGE_SECONDS
        )
        LOGGER.debug("Cleared %s stale temporary artifact(s) in %s", removed, self._config.cache_root)


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "initialize_app"]
