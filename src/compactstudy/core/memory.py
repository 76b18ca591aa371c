"""Process and system memory probes."""
from __future__ import annotations

import gc
import logging
from dataclasses import dataclass
from typing import Callable

import psutil

LOGGER = logging.getLogger(__name__)

_MB = 1024**2


@dataclass(frozen=True)
class MemorySnapshot:
    used_mb: float
    available_mb: float
    percent: float

    def to_payload(self) -> dict:
        return {
            "used_mb": round(self.used_mb, 2),
            "available_mb": round(self.available_mb, 2),
            "percent": round(self.percent, 1),
        }


MemoryProbe = Callable[[], MemorySnapshot]


def memory_snapshot() -> MemorySnapshot:
    """Resident memory of this process plus system-wide availability."""
    rss = psutil.Process().memory_info().rss
    system = psutil.virtual_memory()
    return MemorySnapshot(
        used_mb=rss / _MB,
        available_mb=system.available / _MB,
        percent=float(system.percent),
    )


def process_memory_mb() -> float:
    return psutil.Process().memory_info().rss / _MB


def flush_caches() -> int:
    collected = gc.collect()
    LOGGER.debug("Garbage collection reclaimed %d objects", collected)
    return collected


__all__ = ["MemoryProbe", "MemorySnapshot", "flush_caches", "memory_snapshot", "process_memory_mb"]
