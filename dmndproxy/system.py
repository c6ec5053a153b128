"""Resource usage of the running proxy process."""

from __future__ import annotations

import asyncio
import os

import psutil

MINIMUM_CPU_UPDATE_INTERVAL = 0.2


async def get_cpu_and_memory_usage() -> tuple[float, int]:
    """Return this process's CPU percentage per core and resident memory in bytes.

    Returns ``(0.0, 0)`` when the process cannot be inspected.
    """
    try:
        process = psutil.Process(os.getpid())
        process.cpu_percent(None)
        await asyncio.sleep(MINIMUM_CPU_UPDATE_INTERVAL)
        cpu_usage = process.cpu_percent(None)
        memory = process.memory_info().rss
    except psutil.Error:
        return 0.0, 0
    cpus = psutil.cpu_count() or 0
    normalized = cpu_usage / cpus if cpus > 0 else 0.0
    return normalized, memory