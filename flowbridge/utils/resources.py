"""Host resource sampling used for strategy selection and stage profiling."""

from __future__ import annotations

import os
from dataclasses import dataclass

import psutil


@dataclass(slots=True, frozen=True)
class SystemResources:
    """Snapshot of host capacity expressed as ratios in [0, 1]."""

    available_memory: float
    cpu_usage: float
    cpu_count: int


def sample_system_resources() -> SystemResources:
    """Return the current free-memory ratio, CPU utilisation and core count."""

    memory = psutil.virtual_memory()
    available_ratio = memory.available / memory.total if memory.total else 1.0
    # interval=None compares against the previous call and never blocks.
    cpu_ratio = psutil.cpu_percent(interval=None) / 100.0
    return SystemResources(
        available_memory=round(available_ratio, 4),
        cpu_usage=round(cpu_ratio, 4),
        cpu_count=os.cpu_count() or 1,
    )


_process: psutil.Process | None = None


def _current_process() -> psutil.Process:
    """Return a cached handle on this process, rebuilt after a fork."""

    global _process
    if _process is None or _process.pid != os.getpid():
        _process = psutil.Process()
    return _process


def current_rss_bytes() -> int:
    """Return the resident set size of the current process in bytes."""

    return _current_process().memory_info().rss


def process_cpu_seconds() -> float:
    """Return user plus system CPU time consumed by the current process."""

    times = _current_process().cpu_times()
    return times.user + times.system
