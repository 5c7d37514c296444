"""Hardware detection utilities."""

from .gpu_detector import GPUDetector, GPUInfo

__all__ = ["GPUDetector", "GPUInfo"]
