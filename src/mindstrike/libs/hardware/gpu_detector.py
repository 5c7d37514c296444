"""
GPU Detection Module.

Detects NVIDIA GPUs via nvidia-smi and Apple Silicon unified memory so the
local model layer can size GPU offload and context windows.
"""

import logging
import platform
import subprocess
import time
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


@dataclass
class GPUInfo:
    """Single GPU information."""

    index: int
    name: str
    vram_total_mb: int
    vram_free_mb: int
    compute_capability: tuple[int, int]
    uuid: str
    vendor: str = "nvidia"


class GPUDetector:
    """Detect available accelerators and report their memory.

    Free VRAM moves while models load and unload, so results are cached for
    ``cache_ttl_s`` seconds rather than for the life of the process.
    """

    def __init__(self, cache_ttl_s: float = 10.0):
        self._cached_info: Optional[List[GPUInfo]] = None
        self._cached_at = 0.0
        self._cache_ttl_s = cache_ttl_s

    def detect_gpus(self) -> List[GPUInfo]:
        """
        Query the host for GPU information.

        Returns:
            List of GPUInfo objects, empty list if no GPU could be detected.
        """
        if (
            self._cached_info is not None
            and time.monotonic() - self._cached_at < self._cache_ttl_s
        ):
            return self._cached_info

        gpus = self._query_nvidia_smi()
        if not gpus:
            gpus = self._apple_silicon()

        self._cached_info = gpus
        self._cached_at = time.monotonic()
        if gpus:
            logger.debug("Detected %d GPU(s)", len(gpus))
        return gpus

    def _query_nvidia_smi(self) -> List[GPUInfo]:
        try:
            result = subprocess.run(
                [
                    "nvidia-smi",
                    "--query-gpu=index,name,memory.total,memory.free,compute_cap,uuid",
                    "--format=csv,noheader,nounits",
                ],
                capture_output=True,
                text=True,
                check=True,
                timeout=5,
            )
        except subprocess.TimeoutExpired:
            logger.warning("nvidia-smi query timed out")
            return []
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            logger.debug("No NVIDIA GPU detected or nvidia-smi unavailable: %s", e)
            return []
        except OSError as e:
            logger.error("Unexpected error detecting GPUs: %s", e)
            return []

        gpus = []
        for line in result.stdout.strip().split("\n"):
            if not line.strip():
                continue

            parts = [p.strip() for p in line.split(",")]
            if len(parts) < 6:
                logger.warning("Skipping malformed nvidia-smi line: %s", line)
                continue

            index, name, vram_total, vram_free, compute_cap, uuid = parts[:6]

            try:
                major, minor = map(int, compute_cap.split("."))
            except ValueError:
                logger.warning("Invalid compute capability: %s", compute_cap)
                major, minor = 0, 0

            try:
                gpus.append(
                    GPUInfo(
                        index=int(index),
                        name=name,
                        vram_total_mb=int(float(vram_total)),
                        vram_free_mb=int(float(vram_free)),
                        compute_capability=(major, minor),
                        uuid=uuid,
                    )
                )
            except ValueError:
                logger.warning("Skipping unparsable nvidia-smi line: %s", line)
        return gpus

    def _apple_silicon(self) -> List[GPUInfo]:
        """Report unified memory as VRAM on arm64 macOS (Metal backend)."""

        if platform.system() != "Darwin" or platform.machine() != "arm64":
            return []
        try:
            import psutil

            memory = psutil.virtual_memory()
        except Exception as e:  # noqa: BLE001
            logger.debug("Unable to read unified memory: %s", e)
            return []
        # Metal can wire roughly two thirds of unified memory for the GPU.
        usable_total = int(memory.total * 2 / 3) // _MB
        usable_free = min(usable_total, int(memory.available) // _MB)
        return [
            GPUInfo(
                index=0,
                name="Apple Silicon GPU",
                vram_total_mb=usable_total,
                vram_free_mb=usable_free,
                compute_capability=(0, 0),
                uuid="apple-metal-0",
                vendor="apple",
            )
        ]

    def clear_cache(self):
        """Clear cached GPU information (force re-detection)."""
        self._cached_info = None
        self._cached_at = 0.0
