from __future__ import annotations

import logging
import sys
from typing import Optional

from .context_calculator import ContextCalculator
from .discovery import ModelDiscovery
from .errors import InvalidRequest
from .interfaces import HardwareProbe, SettingsStore
from .models import LocalModel, ModelLoadingSettings, RuntimeInfo
from .registry import ModelRegistry

logger = logging.getLogger("mindstrike.local_llm.settings")


def infer_gpu_type(
    gpu_layers: int, gpu_name: str | None = None, platform: str | None = None
) -> str:
    """Accelerator label for runtime info.

    Uses the probe's device name when there is one and falls back to the host
    OS family (Metal on macOS, CUDA elsewhere).
    """

    if gpu_layers <= 0:
        return "cpu"
    name = (gpu_name or "").lower()
    if "amd" in name or "radeon" in name:
        return "rocm"
    if "apple" in name:
        return "metal"
    if "nvidia" in name or "geforce" in name or "rtx" in name:
        return "cuda"
    return "metal" if (platform or sys.platform) == "darwin" else "cuda"


def validate_settings(settings: ModelLoadingSettings) -> None:
    if settings.gpu_layers is not None and settings.gpu_layers < -1:
        raise InvalidRequest("gpu_layers must be -1 (auto) or a non-negative count")
    for name in ("context_size", "batch_size", "threads"):
        value = getattr(settings, name)
        if value is not None and value <= 0:
            raise InvalidRequest(f"{name} must be positive")
    if settings.temperature is not None and settings.temperature < 0:
        raise InvalidRequest("temperature must not be negative")


class ModelSettingsService:
    """Resolves what a model runs with: live runtime > persisted > calculated."""

    def __init__(
        self,
        calculator: ContextCalculator,
        registry: ModelRegistry,
        discovery: ModelDiscovery,
        store: SettingsStore,
        hardware: HardwareProbe,
    ):
        self.calculator = calculator
        self.registry = registry
        self.discovery = discovery
        self.store = store
        self.hardware = hardware

    async def _calculated(
        self, model: LocalModel, user: ModelLoadingSettings | None
    ) -> ModelLoadingSettings:
        snapshot = await self.hardware.get_hardware_snapshot()
        return self.calculator.calculate_optimal_settings(model, user, snapshot)

    async def get_model_settings(self, id_or_name: str) -> ModelLoadingSettings:
        model = await self.discovery.require_model(id_or_name)

        runtime = self.registry.get(model.id)
        if runtime is not None:
            persisted = await self.store.load_model_settings(model.id)
            running = runtime.settings()
            if persisted is not None:
                running = running.merged_over(persisted)
            return running.merged_over(await self._calculated(model, None))

        persisted = await self.store.load_model_settings(model.id)
        return await self._calculated(model, persisted)

    async def set_model_settings(
        self, id_or_name: str, settings: ModelLoadingSettings
    ) -> None:
        validate_settings(settings)
        model = await self.discovery.require_model(id_or_name)
        await self.store.save_model_settings(model.id, settings)
        logger.info(
            "[settings] Saved settings for %s: %s", model.filename, settings.to_dict()
        )

    async def calculate_optimal_settings(
        self, id_or_name: str, user_settings: ModelLoadingSettings | None = None
    ) -> ModelLoadingSettings:
        if user_settings is not None:
            validate_settings(user_settings)
        model = await self.discovery.require_model(id_or_name)
        return await self._calculated(model, user_settings)

    async def get_model_runtime_info(self, model_id: str) -> Optional[RuntimeInfo]:
        runtime = self.registry.get_model_runtime_info(model_id)
        if runtime is None:
            return None
        snapshot = await self.hardware.get_hardware_snapshot()
        return RuntimeInfo(
            actual_gpu_layers=runtime.gpu_layers,
            gpu_type=infer_gpu_type(runtime.gpu_layers, snapshot.gpu_name),
            loading_time_ms=runtime.load_duration_ms,
        )

    def clear_context_size_cache(self) -> None:
        self.calculator.clear_cache()
        invalidate = getattr(self.hardware, "invalidate", None)
        if callable(invalidate):
            invalidate()
