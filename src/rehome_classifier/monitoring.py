from __future__ import annotations

import os
from dataclasses import dataclass

import psutil

from .logging import get_logger


@dataclass(frozen=True)
class ProcessMemory:
    """Per-process memory information."""

    pid: int
    rss_bytes: int
    system_percent: float


def get_process_memory() -> ProcessMemory:
    pid = os.getpid()
    mem_info = psutil.Process(pid).memory_info()
    rss_val = getattr(mem_info, "rss", 0)
    rss = int(rss_val) if isinstance(rss_val, int) else 0
    return ProcessMemory(pid=pid, rss_bytes=rss, system_percent=float(psutil.virtual_memory().percent))


def log_memory(context: str) -> ProcessMemory:
    snap = get_process_memory()
    get_logger().info(
        "mem_snapshot context=%s pid=%d rss_mb=%d system_pct=%.1f",
        context,
        snap.pid,
        snap.rss_bytes // (1024 * 1024),
        snap.system_percent,
    )
    return snap
