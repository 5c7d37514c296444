from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Optional

import psutil

from mindstrike.libs.hardware import GPUDetector

from .models import HardwareSnapshot

logger = logging.getLogger("mindstrike.local_llm.hardware")

_MB = 1024 * 1024


class SystemHardwareProbe:
    """Host capacity from psutil (RAM/CPU) and :class:`GPUDetector` (VRAM).

    Never raises: a failing source leaves its fields at 0/None.
    """

    def __init__(
        self,
        detector: GPUDetector | None = None,
        cache_ttl_s: float = 10.0,
    ):
        self._detector = detector or GPUDetector(cache_ttl_s=cache_ttl_s)
        self._cache_ttl_s = cache_ttl_s
        self._cached: Optional[HardwareSnapshot] = None
        self._cached_at = 0.0
        self._lock = asyncio.Lock()

    async def get_hardware_snapshot(self) -> HardwareSnapshot:
        async with self._lock:
            if (
                self._cached is not None
                and time.monotonic() - self._cached_at < self._cache_ttl_s
            ):
                return self._cached
            snapshot = await asyncio.to_thread(self._collect)
            self._cached = snapshot
            self._cached_at = time.monotonic()
            return snapshot

    def invalidate(self) -> None:
        self._cached = None
        self._detector.clear_cache()

    def _collect(self) -> HardwareSnapshot:
        total_ram = free_ram = 0
        try:
            memory = psutil.virtual_memory()
            total_ram = int(memory.total)
            free_ram = int(memory.available)
        except (OSError, RuntimeError) as exc:
            logger.warning("[hardware] Unable to read system memory: %s", exc)

        cpu_threads = psutil.cpu_count(logical=True) or os.cpu_count() or 0

        try:
            gpus = self._detector.detect_gpus()
        except (OSError, RuntimeError) as exc:
            logger.warning("[hardware] GPU detection failed: %s", exc)
            gpus = []

        if not gpus:
            return HardwareSnapshot(
                total_ram=total_ram,
                free_ram=free_ram,
                cpu_threads=int(cpu_threads),
            )

        return HardwareSnapshot(
            total_ram=total_ram,
            free_ram=free_ram,
            cpu_threads=int(cpu_threads),
            gpu_present=True,
            vram_total=sum(gpu.vram_total_mb for gpu in gpus) * _MB,
            vram_free=sum(gpu.vram_free_mb for gpu in gpus) * _MB,
            gpu_name=gpus[0].name,
        )
