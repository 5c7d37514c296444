from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict, Set, TypeVar

from .discovery import ModelDiscovery
from .errors import (
    LocalLlmError,
    ModelFileError,
    ResourceExhausted,
    RuntimeFailure,
    err_model_not_found,
)
from .interfaces import InferenceRuntime
from .models import LoadedModelRuntime, LoadState, LocalModel, ModelLoadingSettings
from .registry import ModelRegistry
from .session_manager import SessionManager
from .settings_service import ModelSettingsService

logger = logging.getLogger("mindstrike.local_llm.loader")

T = TypeVar("T")

_MEMORY_MARKERS = ("out of memory", "memory", "alloc", "oom", "vram")
_CORRUPT_MARKERS = ("gguf", "magic", "invalid model", "failed to load model", "corrupt")


def classify_load_error(exc: BaseException, model: LocalModel) -> LocalLlmError:
    """Map a native runtime failure onto the typed load errors."""

    if isinstance(exc, LocalLlmError):
        return exc
    if isinstance(exc, MemoryError):
        return ResourceExhausted(
            f"Not enough memory to load {model.filename}",
            "Lower gpu_layers or context_size",
        )
    if isinstance(exc, FileNotFoundError):
        return ModelFileError(
            f"Model file {model.path} is missing", reason="missing"
        )
    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    if any(marker in lowered for marker in _MEMORY_MARKERS):
        return ResourceExhausted(
            f"Insufficient resources to load {model.filename}: {message}",
            "Lower gpu_layers or context_size",
        )
    if any(marker in lowered for marker in _CORRUPT_MARKERS):
        return ModelFileError(
            f"Model file {model.filename} could not be read: {message}",
            reason="corrupt",
        )
    return RuntimeFailure(f"Failed to load {model.filename}: {message}")


class ModelLoader:
    """Per-model load/unload state machine.

    ``unloaded -> loading -> loaded -> unloading -> unloaded``. Each model id
    has its own lock; a concurrent ``load_model`` joins the in-flight task
    instead of creating a second native session.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        sessions: SessionManager,
        settings: ModelSettingsService,
        discovery: ModelDiscovery,
        runtime: InferenceRuntime,
        *,
        exclusive_models: bool = True,
    ):
        self.registry = registry
        self.sessions = sessions
        self.settings = settings
        self.discovery = discovery
        self.runtime = runtime
        self.exclusive_models = exclusive_models
        self._states: Dict[str, LoadState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._deleting: Set[str] = set()

    def _lock(self, model_id: str) -> asyncio.Lock:
        if model_id not in self._locks:
            self._locks[model_id] = asyncio.Lock()
        return self._locks[model_id]

    def get_state(self, model_id: str) -> LoadState:
        return self._states.get(model_id, LoadState.UNLOADED)

    def is_loading(self, model_id: str) -> bool:
        return self.get_state(model_id) == LoadState.LOADING

    def _set_state(self, model_id: str, state: LoadState) -> None:
        if state == LoadState.UNLOADED:
            self._states.pop(model_id, None)
        else:
            self._states[model_id] = state
        logger.debug("[loader] %s -> %s", model_id, state.value)

    async def load_model(
        self, id_or_name: str, thread_id: str | None = None
    ) -> LoadedModelRuntime:
        model = await self.discovery.require_model(id_or_name)
        model_id = model.id
        if model_id in self._deleting:
            raise err_model_not_found(id_or_name)

        task = self._inflight.get(model_id)
        if task is None:
            loaded = self.registry.get(model_id)
            if loaded is not None and self.get_state(model_id) == LoadState.LOADED:
                logger.info("[loader] %s already loaded", model.filename)
                if thread_id:
                    self.registry.associate_thread(model_id, thread_id)
                return loaded
            task = asyncio.create_task(self._load_locked(model))
            self._inflight[model_id] = task
            task.add_done_callback(lambda _t, mid=model_id: self._inflight.pop(mid, None))
        else:
            logger.info("[loader] %s is already loading; waiting", model.filename)

        loaded = await asyncio.shield(task)
        if thread_id:
            self.registry.associate_thread(model_id, thread_id)
        return loaded

    async def _load_locked(self, model: LocalModel) -> LoadedModelRuntime:
        async with self._lock(model.id):
            if model.id in self._deleting:
                raise err_model_not_found(model.filename)
            existing = self.registry.get(model.id)
            if existing is not None:
                return existing
            if self.exclusive_models:
                # Only models already registered; a concurrent load of another
                # model is not waited on here.
                for other_id in self.registry.active_ids():
                    if other_id != model.id:
                        await self._unload(other_id)
            self._set_state(model.id, LoadState.LOADING)
            try:
                return await self._create(model)
            except BaseException:
                self._set_state(model.id, LoadState.UNLOADED)
                raise

    async def _resolve_settings(self, model: LocalModel) -> ModelLoadingSettings:
        persisted = await self.settings.store.load_model_settings(model.id)
        settings = await self.settings.calculate_optimal_settings(model.id, persisted)
        gpu_layers = settings.gpu_layers or 0
        if model.layer_count:
            gpu_layers = min(gpu_layers, model.layer_count)
        return ModelLoadingSettings(
            gpu_layers=max(0, gpu_layers),
            context_size=settings.context_size,
            batch_size=settings.batch_size,
            threads=settings.threads,
            temperature=settings.temperature,
        )

    async def _create(self, model: LocalModel) -> LoadedModelRuntime:
        if not Path(model.path).is_file():
            raise ModelFileError(f"Model file {model.path} is missing", reason="missing")

        settings = await self._resolve_settings(model)
        logger.info(
            "[loader] Loading %s (gpu_layers=%s, context=%s, batch=%s)",
            model.filename,
            settings.gpu_layers,
            settings.context_size,
            settings.batch_size,
        )
        started = time.monotonic()
        try:
            handle = await self.runtime.create_session(model.path, settings)
        except Exception as exc:  # noqa: BLE001 - typed below
            error = classify_load_error(exc, model)
            logger.error("[loader] Failed to load %s: %s", model.filename, error)
            if error is exc:
                raise
            raise error from exc

        gpu_layers = int(settings.gpu_layers or 0)
        native_layers = self.runtime.layer_count(handle)
        if native_layers:
            gpu_layers = min(gpu_layers, native_layers)

        loaded = LoadedModelRuntime(
            model_id=model.id,
            native_handle=handle,
            model_path=model.path,
            gpu_layers=gpu_layers,
            context_size=int(settings.context_size or 0),
            batch_size=int(settings.batch_size or 0),
            load_duration_ms=int((time.monotonic() - started) * 1000),
        )
        try:
            await self.sessions.create_session(loaded)
        except BaseException:
            await self._dispose_handle(model.id, handle)
            raise

        self.registry.set(loaded)
        self._set_state(model.id, LoadState.LOADED)
        logger.info(
            "[loader] Loaded %s in %d ms", model.filename, loaded.load_duration_ms
        )
        return loaded

    async def _dispose_handle(self, model_id: str, handle) -> None:
        try:
            await self.runtime.dispose(handle)
        except Exception:  # noqa: BLE001 - the registry entry is gone either way
            logger.warning("[loader] Error disposing %s", model_id, exc_info=True)

    async def unload_model(self, model_id: str) -> bool:
        task = self._inflight.get(model_id)
        if task is not None:
            try:
                await asyncio.shield(task)
            except Exception:  # noqa: BLE001 - a failed load leaves nothing to unload
                return False
        return await self._unload(model_id)

    async def _unload(self, model_id: str) -> bool:
        async with self._lock(model_id):
            return await self._unload_locked(model_id)

    async def _unload_locked(self, model_id: str) -> bool:
        loaded = self.registry.get(model_id)
        if loaded is None:
            return False
        self._set_state(model_id, LoadState.UNLOADING)
        try:
            # Running generations stop before their sessions and the native
            # context go away.
            async with self.sessions.quiesce(model_id):
                await self.sessions.dispose_model_sessions(model_id)
                await self._dispose_handle(model_id, loaded.native_handle)
        finally:
            self.registry.remove(model_id)
            self._set_state(model_id, LoadState.UNLOADED)
        logger.info("[loader] Unloaded %s", model_id)
        return True

    async def prepare_model_for_deletion(self, model_id: str) -> None:
        if self.registry.has(model_id) or model_id in self._inflight:
            await self.unload_model(model_id)

    async def delete_model(
        self, model_id: str, delete: Callable[[str], Awaitable[T]]
    ) -> T:
        """Unload ``model_id`` and run ``delete`` under the model's lock.

        Loads issued meanwhile fail with ``ModelNotFound`` instead of opening
        the file that is being removed.
        """

        self._deleting.add(model_id)
        try:
            task = self._inflight.get(model_id)
            if task is not None:
                try:
                    await asyncio.shield(task)
                except Exception:  # noqa: BLE001 - a failed load leaves nothing loaded
                    logger.debug("[loader] Load of %s failed before delete", model_id)
            async with self._lock(model_id):
                await self._unload_locked(model_id)
                return await delete(model_id)
        finally:
            self._deleting.discard(model_id)

    async def unload_all(self) -> None:
        for model_id in set(self.registry.active_ids()) | set(self._inflight):
            await self.unload_model(model_id)
