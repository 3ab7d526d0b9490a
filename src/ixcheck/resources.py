# Copyright (c) Syntropy Systems
"""System resource checks used to size engine concurrency."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import cast

import psutil

logger = logging.getLogger(__name__)

# Memory held back for the host and this process, in GB.
RESERVED_MEMORY_GB = 1.0


@dataclass
class SystemResources:
    """CPU and memory snapshot."""

    cpu_count: int
    memory_total_gb: float | None = None
    memory_available_gb: float | None = None


def get_system_resources() -> SystemResources:
    """Get CPU count and memory totals.

    Memory values are None when psutil cannot read them on this platform.
    """
    cpu_count = psutil.cpu_count(logical=True) or os.cpu_count() or 1
    try:
        mem = psutil.virtual_memory()
        total = cast("int", mem.total)
        available = cast("int", mem.available)
    except (AttributeError, OSError, ValueError):
        logger.warning("Could not read system memory, sizing by CPU count only")
        return SystemResources(cpu_count=cpu_count)
    else:
        return SystemResources(
            cpu_count=cpu_count,
            memory_total_gb=total / (1024**3),
            memory_available_gb=available / (1024**3),
        )


def engine_process_limit(
    engine_memory_gb: float,
    resources: SystemResources | None = None,
) -> int:
    """Maximum number of engine processes this host can run at once.

    One process per core, capped by how many engine memory footprints fit in
    total memory after the reserve. Zero means not even one engine fits.
    """
    if resources is None:
        resources = get_system_resources()

    limit = resources.cpu_count
    if resources.memory_total_gb is not None and engine_memory_gb > 0:
        usable = resources.memory_total_gb - RESERVED_MEMORY_GB
        by_memory = int(usable // engine_memory_gb)
        limit = min(limit, by_memory)

    limit = max(limit, 0)
    logger.debug(
        "engine process limit %d (cpus=%d, memory_total_gb=%s)",
        limit,
        resources.cpu_count,
        resources.memory_total_gb,
    )
    return limit
