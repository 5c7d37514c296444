"""Local GGUF model management, loading and generation for MindStrike."""

from .config import LocalLlmConfig
from .errors import (
    AlreadyExists,
    AlreadyInProgress,
    Cancelled,
    DownloadError,
    InvalidRequest,
    IOFailure,
    LocalLlmError,
    ModelFileError,
    ModelNotFound,
    ModelNotLoaded,
    NotFound,
    ResourceExhausted,
    RuntimeFailure,
    StreamInterrupted,
)
from .models import (
    CancellationToken,
    ChatMessage,
    DownloadProgress,
    GenerationOptions,
    HardwareSnapshot,
    LocalModel,
    ModelLoadingSettings,
    ModelStatus,
    RemoteModelInfo,
    RuntimeInfo,
)
from .orchestrator import LocalLlmOrchestrator

__all__ = [
    "AlreadyExists",
    "AlreadyInProgress",
    "CancellationToken",
    "Cancelled",
    "ChatMessage",
    "DownloadError",
    "DownloadProgress",
    "GenerationOptions",
    "HardwareSnapshot",
    "IOFailure",
    "InvalidRequest",
    "LocalLlmConfig",
    "LocalLlmError",
    "LocalLlmOrchestrator",
    "LocalModel",
    "ModelFileError",
    "ModelLoadingSettings",
    "ModelNotFound",
    "ModelNotLoaded",
    "ModelStatus",
    "NotFound",
    "RemoteModelInfo",
    "ResourceExhausted",
    "RuntimeFailure",
    "RuntimeInfo",
    "StreamInterrupted",
]
