"""Context window and load-setting estimates for GGUF models.

Memory model (all sizes in bytes, 16-bit KV cache):

* KV cache: ``2 * (hidden / (heads / kv_heads)) * layers * ctx * 2``
* input buffer: token, embedding, position and KQ-mask tensors for one batch
* compute buffer: ``((ctx / 1024) * 2 + 0.75) * heads`` MiB

The safe context is the largest multiple of 256 whose total fits in 80% of
the spare memory budget, never below 512 and never above the trained length.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .models import HardwareSnapshot, LocalModel, ModelLoadingSettings

logger = logging.getLogger("mindstrike.local_llm.context")

MIB = 1024 * 1024
GIB = 1024 * MIB

DEFAULT_CONTEXT = 4096
MIN_CONTEXT = 512
CONTEXT_STEP = 256
BUDGET_FRACTION = 0.8
GPU_HEADROOM_BYTES = 1 * GIB
CPU_RESERVE_BYTES = 1 * GIB
GPU_BATCH_SIZE = 512
MAX_CPU_BATCH_SIZE = 512
DEFAULT_TEMPERATURE = 0.7


@dataclass(frozen=True)
class ArchitectureEstimate:
    hidden_size: int
    layers: int
    heads: int
    kv_heads: int

    @classmethod
    def for_model(cls, model: LocalModel) -> "ArchitectureEstimate":
        size_gib = model.size_bytes / GIB
        layers = model.layer_count or max(32, min(80, int(size_gib * 8)))
        heads = model.head_count or 32
        kv_heads = min(model.head_count_kv or 8, heads)
        return cls(
            hidden_size=model.embedding_length or 4096,
            layers=layers,
            heads=heads,
            kv_heads=max(1, kv_heads),
        )


def kv_cache_bytes(context: int, arch: ArchitectureEstimate) -> float:
    n_gqa = arch.heads / arch.kv_heads
    n_embd_gqa = arch.hidden_size / n_gqa
    return 2 * n_embd_gqa * arch.layers * context * 2


def input_buffer_bytes(context: int, hidden_size: int, batch: int = 512) -> float:
    tokens = batch
    embd = hidden_size * batch
    pos = batch
    kq_mask = context * batch
    k_shift = context
    out_sum = batch
    return tokens + embd + pos + kq_mask + k_shift + out_sum


def compute_buffer_bytes(context: int, heads: int) -> float:
    return ((context / 1024) * 2 + 0.75) * heads * MIB


def context_memory_bytes(context: int, arch: ArchitectureEstimate) -> float:
    return (
        kv_cache_bytes(context, arch)
        + input_buffer_bytes(context, arch.hidden_size)
        + compute_buffer_bytes(context, arch.heads)
    )


def memory_budget_bytes(model: LocalModel, hardware: HardwareSnapshot) -> int:
    """Spare memory once the weights are placed; 0 when nothing is known."""

    weights = max(0, model.size_bytes)
    free_ram = max(0, hardware.free_ram or 0)
    vram_free = max(0, hardware.vram_free or 0)
    if hardware.gpu_present and vram_free:
        spare_vram = vram_free - weights
        if spare_vram > 0:
            return spare_vram
        # Weights spill into system memory; the CPU-side layers keep their KV there.
        return max(0, free_ram - (weights - vram_free))
    return max(0, free_ram - weights)


def max_context_for_budget(
    budget_bytes: float, limit: int, arch: ArchitectureEstimate
) -> int:
    if limit <= MIN_CONTEXT:
        return limit
    if context_memory_bytes(limit, arch) <= budget_bytes:
        return limit
    low, high = MIN_CONTEXT // CONTEXT_STEP, limit // CONTEXT_STEP
    best = MIN_CONTEXT
    while low <= high:
        mid = (low + high) // 2
        candidate = mid * CONTEXT_STEP
        if context_memory_bytes(candidate, arch) <= budget_bytes:
            best = candidate
            low = mid + 1
        else:
            high = mid - 1
    return max(MIN_CONTEXT, min(best, limit))


class ContextCalculator:
    """Safe context sizes and recommended load settings, cached per hardware bucket."""

    def __init__(
        self,
        cache_ttl_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = cache_ttl_s
        self._clock = clock
        self._cache: Dict[Tuple, Tuple[float, object]] = {}

    def clear_cache(self) -> None:
        self._cache.clear()

    def _cached(self, key: Tuple) -> Optional[object]:
        hit = self._cache.get(key)
        if hit is None:
            return None
        stored_at, value = hit
        if self._clock() - stored_at >= self._ttl:
            del self._cache[key]
            return None
        return value

    def _store(self, key: Tuple, value: object) -> None:
        self._cache[key] = (self._clock(), value)

    def calculate_safe_context_size(
        self,
        model: LocalModel,
        hardware: HardwareSnapshot,
        requested: int | None = None,
    ) -> int:
        trained = model.trained_context_length or DEFAULT_CONTEXT
        limit = min(requested or trained, trained)
        key = ("ctx", model.id, hardware.signature(), limit)
        cached = self._cached(key)
        if cached is not None:
            return int(cached)

        arch = ArchitectureEstimate.for_model(model)
        budget = memory_budget_bytes(model, hardware) * BUDGET_FRACTION
        context = max_context_for_budget(budget, limit, arch)
        context = max(1, min(context, trained))
        if context < limit:
            logger.info(
                "[context] %s: context %d reduced to %d for %.1f GiB budget",
                model.filename,
                limit,
                context,
                budget / GIB,
            )
        self._store(key, context)
        return context

    def optimal_gpu_layers(
        self, model: LocalModel, hardware: HardwareSnapshot, context: int
    ) -> int:
        vram_free = hardware.vram_free or 0
        if not hardware.gpu_present or vram_free <= 0:
            return 0
        arch = ArchitectureEstimate.for_model(model)
        per_layer = (model.size_bytes + kv_cache_bytes(context, arch)) / arch.layers
        fixed = input_buffer_bytes(context, arch.hidden_size) + compute_buffer_bytes(
            context, arch.heads
        )
        usable = vram_free - GPU_HEADROOM_BYTES - fixed
        if usable <= 0 or per_layer <= 0:
            return 0
        return max(0, min(arch.layers, int(usable // per_layer)))

    def cpu_batch_size(
        self, model: LocalModel, hardware: HardwareSnapshot, context: int
    ) -> int:
        arch = ArchitectureEstimate.for_model(model)
        available = (hardware.free_ram or 0) - model.size_bytes
        available -= kv_cache_bytes(context, arch)
        if hardware.gpu_present and hardware.vram_free:
            available += hardware.vram_free * 0.3
        available = max(0.0, available - CPU_RESERVE_BYTES)
        per_token = kv_cache_bytes(1, arch) + arch.hidden_size * 4
        return max(1, min(MAX_CPU_BATCH_SIZE, int(available // per_token)))

    def calculate_optimal_settings(
        self,
        model: LocalModel,
        user_settings: ModelLoadingSettings | None,
        hardware: HardwareSnapshot,
    ) -> ModelLoadingSettings:
        user = user_settings or ModelLoadingSettings()
        key = (
            "settings",
            model.id,
            hardware.signature(),
            tuple(sorted(user.to_dict().items())),
        )
        cached = self._cached(key)
        if isinstance(cached, ModelLoadingSettings):
            return cached

        context = self.calculate_safe_context_size(model, hardware)
        gpu_layers = self.optimal_gpu_layers(model, hardware, context)
        if gpu_layers > 0:
            batch_size = GPU_BATCH_SIZE
        else:
            batch_size = self.cpu_batch_size(model, hardware, context)

        defaults = ModelLoadingSettings(
            gpu_layers=gpu_layers,
            context_size=context,
            batch_size=batch_size,
            threads=hardware.cpu_threads or None,
            temperature=DEFAULT_TEMPERATURE,
        )
        effective = user.merged_over(defaults)

        trained = model.trained_context_length
        if (
            trained
            and effective.context_size is not None
            and effective.context_size > trained
        ):
            logger.info(
                "[context] %s: requested context %d clamped to trained %d",
                model.filename,
                effective.context_size,
                trained,
            )
            effective = ModelLoadingSettings(
                gpu_layers=effective.gpu_layers,
                context_size=trained,
                batch_size=effective.batch_size,
                threads=effective.threads,
                temperature=effective.temperature,
            )
        self._store(key, effective)
        return effective
