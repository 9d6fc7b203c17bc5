"""Utility helpers for consistent library naming and ordering."""

from __future__ import annotations

import hashlib
import re
from typing import List, Tuple, Union

__all__ = [
    "natural_sort_key",
    "build_stable_id",
    "build_artifact_stem",
]


_DIGITS = re.compile(r"(\d+)")


def natural_sort_key(value: str) -> List[Tuple[int, Union[int, str]]]:
    """Return a key ordering ``"Episode 2"`` before ``"Episode 10"``.

    Digit runs compare numerically and everything else compares
    case-insensitively. Each chunk is tagged so that numbers and text never
    have to be compared against each other.
    """

    key: List[Tuple[int, Union[int, str]]] = []
    for chunk in _DIGITS.split(value):
        if not chunk:
            continue
        if chunk.isdigit():
            key.append((0, int(chunk)))
        else:
            key.append((1, chunk.casefold()))
    return key


def build_stable_id(relative_path: str, *, length: int = 12) -> str:
    """Return a short deterministic identifier for a library path.

    The ID is a prefix of the SHA-1 of the POSIX relative path, so it stays
    stable across rescans and is URL-safe for any title.
    """

    normalized = relative_path.replace("\\", "/").strip("/")
    digest = hashlib.sha1(normalized.encode("utf-8")).hexdigest()
    return digest[:length]


def build_artifact_stem(book_id: str, season_id: str, episode_id: str) -> str:
    """Return the artifact stem used for a transcoded episode."""

    return f"{book_id}_{season_id}_{episode_id}"
