"""Host CPU and memory sampling used for admission control."""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import psutil


LOGGER = logging.getLogger(__name__)


OVERLOAD_THRESHOLD = 0.85


def _clamp_ratio(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class LoadMonitor:
    """Sample host utilisation for the worker pool.

    The only state kept is the previous CPU times snapshot; utilisation is the
    busy share of the time elapsed between two consecutive calls.
    """

    def __init__(self, threshold: float = OVERLOAD_THRESHOLD) -> None:
        self.threshold = threshold
        self._previous: Optional[Any] = None

    def cpu_count(self) -> int:
        return psutil.cpu_count(logical=True) or os.cpu_count() or 1

    def total_memory(self) -> int:
        return int(psutil.virtual_memory().total)

    def _load_average_estimate(self) -> float:
        try:
            load_1m = psutil.getloadavg()[0]
        except (AttributeError, OSError):
            return 0.0
        return _clamp_ratio(load_1m / self.cpu_count())

    def cpu_utilization(self) -> float:
        current = psutil.cpu_times()
        previous, self._previous = self._previous, current
        if previous is None:
            return self._load_average_estimate()

        idle_delta = (current.idle - previous.idle) + (
            getattr(current, "iowait", 0.0) - getattr(previous, "iowait", 0.0)
        )
        total_delta = sum(current) - sum(previous)
        if total_delta <= 0:
            return 0.0
        return _clamp_ratio(1.0 - idle_delta / total_delta)

    def memory_utilization(self) -> float:
        memory = psutil.virtual_memory()
        if not memory.total:
            return 0.0
        return _clamp_ratio((memory.total - memory.available) / memory.total)

    def is_overloaded(self) -> bool:
        cpu = self.cpu_utilization()
        memory = self.memory_utilization()
        overloaded = cpu > self.threshold or memory > self.threshold
        if overloaded:
            LOGGER.debug(
                "Host overloaded: cpu=%.2f mem=%.2f threshold=%.2f", cpu, memory, self.threshold
            )
        return overloaded


__all__ = ["LoadMonitor", "OVERLOAD_THRESHOLD"]
