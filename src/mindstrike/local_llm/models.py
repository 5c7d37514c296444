"""Dataclasses shared by the local model services.

Everything returned through the orchestrator is one of these (or a list/dict
of them) and serializes through ``to_dict``; native runtime handles only live
inside :class:`LoadedModelRuntime` and :class:`SessionRecord`, which never
cross the façade.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .errors import Cancelled

_BUCKET_BYTES = 256 * 1024 * 1024


@dataclass(frozen=True)
class LocalModel:
    id: str
    filename: str
    path: str
    size_bytes: int
    display_name: str
    quantization: Optional[str] = None
    trained_context_length: Optional[int] = None
    context_length: Optional[int] = None
    layer_count: Optional[int] = None
    parameter_count: Optional[str] = None
    architecture: Optional[str] = None
    embedding_length: Optional[int] = None
    head_count: Optional[int] = None
    head_count_kv: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class RemoteModelInfo:
    filename: str
    url: str
    size_bytes: int = 0
    name: str = ""
    model_id: str = ""
    quantization: Optional[str] = None
    trained_context_length: Optional[int] = None
    parameter_count: Optional[str] = None
    downloads: int = 0
    likes: int = 0
    catalog_metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class DownloadStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class DownloadProgress:
    filename: str
    total_bytes: int
    bytes_received: int
    progress: int
    speed: str
    status: DownloadStatus

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


@dataclass(frozen=True)
class ModelLoadingSettings:
    """Sparse load configuration; ``None`` means "not specified"."""

    gpu_layers: Optional[int] = None
    context_size: Optional[int] = None
    batch_size: Optional[int] = None
    threads: Optional[int] = None
    temperature: Optional[float] = None

    AUTO_GPU_LAYERS = -1

    def merged_over(self, defaults: "ModelLoadingSettings") -> "ModelLoadingSettings":
        """Return ``defaults`` with every field specified here taking priority.

        ``gpu_layers == -1`` asks for the calculated value.
        """

        values = {}
        for f in fields(self):
            mine = getattr(self, f.name)
            if f.name == "gpu_layers" and mine == self.AUTO_GPU_LAYERS:
                mine = None
            values[f.name] = mine if mine is not None else getattr(defaults, f.name)
        return ModelLoadingSettings(**values)

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, payload: Optional[dict]) -> "ModelLoadingSettings":
        if not payload:
            return cls()
        known = {f.name for f in fields(cls)}
        aliases = {
            "gpuLayers": "gpu_layers",
            "contextSize": "context_size",
            "batchSize": "batch_size",
        }
        values: Dict[str, Any] = {}
        for key, value in payload.items():
            name = aliases.get(key, key)
            if name not in known or value is None:
                continue
            values[name] = float(value) if name == "temperature" else int(value)
        return cls(**values)


@dataclass(frozen=True)
class HardwareSnapshot:
    """Host capacity in bytes. Unknown values are 0/None, never guessed."""

    total_ram: int = 0
    free_ram: int = 0
    cpu_threads: int = 0
    gpu_present: bool = False
    vram_total: Optional[int] = None
    vram_free: Optional[int] = None
    gpu_name: Optional[str] = None

    def signature(self) -> tuple:
        """Coarse cache key; small fluctuations in free memory map to one bucket."""

        def bucket(value: Optional[int]) -> int:
            return int(value or 0) // _BUCKET_BYTES

        return (
            bucket(self.total_ram),
            bucket(self.free_ram),
            self.cpu_threads,
            self.gpu_present,
            bucket(self.vram_total),
            bucket(self.vram_free),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class LoadedModelRuntime:
    model_id: str
    native_handle: Any
    model_path: str
    gpu_layers: int
    context_size: int
    batch_size: int
    load_duration_ms: int = 0
    loaded_at: float = field(default_factory=time.time)
    last_used_at: float = field(default_factory=time.time)
    thread_ids: Set[str] = field(default_factory=set)

    def settings(self) -> ModelLoadingSettings:
        return ModelLoadingSettings(
            gpu_layers=self.gpu_layers,
            context_size=self.context_size,
            batch_size=self.batch_size,
        )


@dataclass
class UsageStats:
    total_prompts: int = 0
    total_tokens: int = 0
    last_accessed: float = field(default_factory=time.time)


@dataclass
class SessionRecord:
    """Association of a conversation thread with a native session handle."""

    model_id: str
    thread_id: Optional[str]
    native_session: Any
    created_at: float = field(default_factory=time.time)
    history_version: int = 0
    synced_messages: Optional[List["ChatMessage"]] = None
    disposed: bool = False
    # Set while the model unloads; generation stops at the next batch.
    closing: bool = False

    @property
    def key(self) -> tuple:
        return (self.model_id, self.thread_id)


class LoadState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    UNLOADING = "unloading"


@dataclass(frozen=True)
class ModelStatus:
    loaded: bool
    loading: bool
    state: LoadState = LoadState.UNLOADED
    context_size: Optional[int] = None
    gpu_layers: Optional[int] = None
    batch_size: Optional[int] = None

    def to_dict(self) -> dict:
        payload = {k: v for k, v in asdict(self).items() if v is not None}
        payload["state"] = self.state.value
        return payload


@dataclass(frozen=True)
class RuntimeInfo:
    actual_gpu_layers: int
    gpu_type: str
    loading_time_ms: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    @classmethod
    def coerce(cls, value: Any) -> "ChatMessage":
        if isinstance(value, ChatMessage):
            return value
        if isinstance(value, dict):
            return cls(role=str(value.get("role", "user")), content=str(value.get("content") or ""))
        role = getattr(value, "role", "user")
        content = getattr(value, "content", "")
        return cls(role=str(role), content=str(content or ""))

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a producer."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str | None = None) -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self.reason or "Operation cancelled")


@dataclass
class GenerationOptions:
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    thread_id: Optional[str] = None
    disable_functions: bool = False
    disable_chat_history: bool = False
    cancel: Optional[CancellationToken] = None

    def runtime_options(self) -> dict:
        """Options forwarded to the native runtime (no cancellation token)."""

        options: Dict[str, Any] = {"tools_enabled": not self.disable_functions}
        if self.temperature is not None:
            options["temperature"] = self.temperature
        if self.max_tokens is not None:
            options["max_tokens"] = self.max_tokens
        return options

    def with_thread(self, thread_id: Optional[str]) -> "GenerationOptions":
        return replace(self, thread_id=thread_id)


@dataclass(frozen=True)
class GenerationResult:
    content: str
    tokens_generated: int
    stop_reason: Optional[str] = None


__all__ = [
    "CancellationToken",
    "ChatMessage",
    "DownloadProgress",
    "DownloadStatus",
    "GenerationOptions",
    "GenerationResult",
    "HardwareSnapshot",
    "LoadState",
    "LoadedModelRuntime",
    "LocalModel",
    "ModelLoadingSettings",
    "ModelStatus",
    "RemoteModelInfo",
    "RuntimeInfo",
    "SessionRecord",
    "UsageStats",
]
