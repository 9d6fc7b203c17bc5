"""Persistence helpers for server-side transcoding settings."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping

from ..config import AppConfig


LOGGER = logging.getLogger(__name__)


AUTO_TRANSCODE_COUNT_MIN = 1
AUTO_TRANSCODE_COUNT_MAX = 20
DEFAULT_AUTO_TRANSCODE_COUNT = 5


def clamp_transcode_count(value: Any) -> int:
    """Return *value* coerced into the supported ``1..20`` window."""

    try:
        count = int(value)
    except (TypeError, ValueError):
        return DEFAULT_AUTO_TRANSCODE_COUNT
    if count <= 0:
        # Zero means "unset"; negative values clamp to the minimum.
        return DEFAULT_AUTO_TRANSCODE_COUNT if count == 0 else AUTO_TRANSCODE_COUNT_MIN
    return max(AUTO_TRANSCODE_COUNT_MIN, min(AUTO_TRANSCODE_COUNT_MAX, count))


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"false", "0", "no", "off"}:
            return False
        if lowered in {"true", "1", "yes", "on"}:
            return True
        return default
    if value is None:
        return default
    return bool(value)


@dataclass
class ServerSettings:
    """Container for the options the scheduler reads on every decision."""

    auto_transcode: bool = True
    auto_transcode_count: int = DEFAULT_AUTO_TRANSCODE_COUNT

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "ServerSettings":
        settings = cls()
        if "autoTranscode" in payload:
            settings.auto_transcode = _coerce_bool(payload["autoTranscode"], True)
        if "autoTranscodeCount" in payload:
            settings.auto_transcode_count = clamp_transcode_count(payload["autoTranscodeCount"])
        return settings

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "autoTranscode": self.auto_transcode,
            "autoTranscodeCount": self.auto_transcode_count,
        }


class SettingsStore:
    """Load and store :class:`ServerSettings` as ``config.json``.

    Nothing is cached: every :meth:`load` reads the file again so that a
    toggle written by the HTTP layer (or by hand) takes effect on the very
    next scheduling decision.
    """

    def __init__(self, config: AppConfig) -> None:
        self._path = config.settings_file

    @property
    def path(self) -> Path:
        return self._path

    def _read_raw(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            LOGGER.warning("Ignoring unreadable settings file %s: %s", self._path, error)
            return {}
        if not isinstance(payload, dict):
            return {}
        return payload

    def load(self) -> ServerSettings:
        return ServerSettings.from_mapping(self._read_raw())

    def save(self, settings: ServerSettings) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # Unknown keys written by other tools are preserved.
        data = self._read_raw()
        data.update(settings.to_mapping())
        self._path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def update(self, changes: Mapping[str, Any]) -> ServerSettings:
        """Merge camelCase *changes* into the stored settings and persist them."""

        current = self._read_raw()
        current.update({key: value for key, value in changes.items() if value is not None})
        settings = ServerSettings.from_mapping(current)
        self.save(settings)
        LOGGER.info(
            "Updated transcode settings: autoTranscode=%s autoTranscodeCount=%s",
            settings.auto_transcode,
            settings.auto_transcode_count,
        )
        return settings


__all__ = [
    "AUTO_TRANSCODE_COUNT_MAX",
    "AUTO_TRANSCODE_COUNT_MIN",
    "DEFAULT_AUTO_TRANSCODE_COUNT",
    "ServerSettings",
    "SettingsStore",
    "clamp_transcode_count",
]
