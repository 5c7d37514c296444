"""Single entry point for local model management, loading and generation.

The orchestrator wires the services together and is the only object callers
(API, CLI, the application's agents) hold. It owns the loaded-model registry
and the active download table; every result crossing it is a plain dataclass.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from .catalog import HuggingFaceCatalog
from .config import LocalLlmConfig
from .context_calculator import ContextCalculator
from .discovery import ModelDiscovery
from .downloader import ModelDownloader, ProgressCallback
from .generator import ResponseGenerator
from .hardware import SystemHardwareProbe
from .interfaces import HardwareProbe, InferenceRuntime, RemoteCatalog, SettingsStore
from .inventory import ModelInventory
from .loader import ModelLoader
from .models import (
    CancellationToken,
    DownloadProgress,
    GenerationOptions,
    LoadedModelRuntime,
    LocalModel,
    ModelLoadingSettings,
    ModelStatus,
    RemoteModelInfo,
    RuntimeInfo,
)
from .registry import ModelRegistry
from .response_service import HistoryProvider, ResponseService
from .session_manager import SessionManager
from .settings_service import ModelSettingsService
from .settings_store import JsonSettingsStore

logger = logging.getLogger("mindstrike.local_llm.orchestrator")


def _default_runtime() -> InferenceRuntime:
    from .llama_runtime import LlamaCppRuntime

    return LlamaCppRuntime()


class LocalLlmOrchestrator:
    def __init__(
        self,
        config: LocalLlmConfig | None = None,
        *,
        hardware: HardwareProbe | None = None,
        store: SettingsStore | None = None,
        catalog: RemoteCatalog | None = None,
        runtime: InferenceRuntime | None = None,
        history_provider: HistoryProvider | None = None,
    ):
        self.config = config or LocalLlmConfig.load()
        cfg = self.config

        self.hardware = hardware or SystemHardwareProbe(
            cache_ttl_s=float(cfg.hardware_cache_ttl_s)
        )
        self.store = store or JsonSettingsStore(cfg.settings_path)
        self.catalog = catalog or HuggingFaceCatalog(
            cfg.catalog_base_url,
            token=cfg.huggingface_token,
            limit=cfg.catalog_limit,
            cache_ttl_s=float(cfg.catalog_cache_ttl_s),
            max_retries=cfg.catalog_max_retries,
            timeout_s=cfg.http_timeout_s,
        )
        self.runtime = runtime or _default_runtime()

        self.inventory = ModelInventory(
            cfg.models_path, create=cfg.create_models_dir
        )
        self.downloader = ModelDownloader(
            self.catalog,
            token=cfg.huggingface_token,
            chunk_bytes=cfg.download_chunk_bytes,
            progress_interval_s=cfg.download_progress_interval_s,
            timeout_s=cfg.http_timeout_s,
        )
        self.calculator = ContextCalculator(cache_ttl_s=float(cfg.context_cache_ttl_s))
        self.discovery = ModelDiscovery(
            self.inventory, self.downloader, self.calculator, self.hardware
        )
        self.registry = ModelRegistry()
        self.sessions = SessionManager(self.runtime, cfg.default_system_prompt)
        self.settings = ModelSettingsService(
            self.calculator, self.registry, self.discovery, self.store, self.hardware
        )
        self.loader = ModelLoader(
            self.registry,
            self.sessions,
            self.settings,
            self.discovery,
            self.runtime,
            exclusive_models=cfg.exclusive_models,
        )
        self.generator = ResponseGenerator(self.runtime)
        self.responses = ResponseService(
            self.registry,
            self.sessions,
            self.generator,
            self.discovery,
            self.loader,
            history_provider,
        )

    async def __aenter__(self) -> "LocalLlmOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Unload every model, then close the HTTP clients."""

        await self.loader.unload_all()
        await self.downloader.aclose()
        aclose = getattr(self.catalog, "aclose", None)
        if callable(aclose):
            await aclose()

    # ------------------------------------------------------------------ models
    async def get_local_models(self) -> List[LocalModel]:
        return await self.discovery.get_local_models()

    async def get_available_models(self) -> Dict[str, list]:
        return await self.discovery.get_available_models()

    async def search_models(self, query: str) -> Dict[str, list]:
        return await self.discovery.search_models(query)

    async def delete_model(self, model_id: str) -> LocalModel:
        model = await self.discovery.require_model(model_id)
        return await self.loader.delete_model(model.id, self.discovery.delete_model)

    # --------------------------------------------------------------- downloads
    async def download_model(
        self,
        info: Union[RemoteModelInfo, Dict[str, Any]],
        on_progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> Path:
        if isinstance(info, dict):
            info = RemoteModelInfo(**info)
        return await self.discovery.download_model(
            info, on_progress=on_progress, cancel=cancel
        )

    def cancel_download(self, filename: str) -> bool:
        return self.discovery.cancel_download(filename)

    def get_download_progress(self, filename: str) -> Optional[DownloadProgress]:
        return self.discovery.get_download_progress(filename)

    # ---------------------------------------------------------------- settings
    async def set_model_settings(
        self, model_id: str, settings: Union[ModelLoadingSettings, Dict[str, Any]]
    ) -> None:
        if isinstance(settings, dict):
            settings = ModelLoadingSettings.from_dict(settings)
        await self.settings.set_model_settings(model_id, settings)

    async def calculate_optimal_settings(
        self,
        model_id: str,
        user_settings: Union[ModelLoadingSettings, Dict[str, Any], None] = None,
    ) -> ModelLoadingSettings:
        if isinstance(user_settings, dict):
            user_settings = ModelLoadingSettings.from_dict(user_settings)
        return await self.settings.calculate_optimal_settings(model_id, user_settings)

    async def get_model_settings(self, model_id: str) -> ModelLoadingSettings:
        return await self.settings.get_model_settings(model_id)

    async def get_model_runtime_info(self, model_id: str) -> Optional[RuntimeInfo]:
        model = await self.discovery.find_model(model_id)
        return await self.settings.get_model_runtime_info(
            model.id if model else model_id
        )

    def clear_context_size_cache(self) -> None:
        self.settings.clear_context_size_cache()

    # --------------------------------------------------------------- lifecycle
    async def load_model(
        self, model_id: str, thread_id: str | None = None
    ) -> ModelStatus:
        loaded: LoadedModelRuntime = await self.loader.load_model(model_id, thread_id)
        return await self.get_model_status(loaded.model_id)

    async def unload_model(self, model_id: str) -> bool:
        model = await self.discovery.find_model(model_id)
        return await self.loader.unload_model(model.id if model else model_id)

    # -------------------------------------------------------------- generation
    async def update_session_history(
        self,
        model_id: str,
        thread_id: str | None,
        messages: Optional[Sequence[Any]] = None,
    ) -> bool:
        return await self.responses.update_session_history(
            model_id, thread_id, messages
        )

    async def generate_response(
        self,
        model_id: str,
        messages: Sequence[Any],
        options: GenerationOptions | None = None,
    ) -> str:
        return await self.responses.generate_response(model_id, messages, options)

    def generate_stream_response(
        self,
        model_id: str,
        messages: Sequence[Any],
        options: GenerationOptions | None = None,
    ) -> AsyncIterator[str]:
        return self.responses.generate_stream_response(model_id, messages, options)

    async def get_model_status(self, model_id: str) -> ModelStatus:
        model = await self.discovery.find_model(model_id)
        return await self.responses.get_model_status(model.id if model else model_id)


__all__ = ["LocalLlmOrchestrator"]
