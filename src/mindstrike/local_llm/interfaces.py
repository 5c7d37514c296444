"""Contracts for the collaborators the local model layer drives but does not own."""

from __future__ import annotations

from typing import Any, AsyncIterator, List, Optional, Protocol, Sequence

from .models import (
    ChatMessage,
    HardwareSnapshot,
    ModelLoadingSettings,
    RemoteModelInfo,
)


class HardwareProbe(Protocol):
    async def get_hardware_snapshot(self) -> HardwareSnapshot: ...


class SettingsStore(Protocol):
    async def load_model_settings(
        self, model_id: str
    ) -> Optional[ModelLoadingSettings]: ...

    async def save_model_settings(
        self, model_id: str, settings: ModelLoadingSettings
    ) -> None: ...


class RemoteCatalog(Protocol):
    async def list_available(self) -> List[RemoteModelInfo]: ...

    async def search(self, query: str) -> List[RemoteModelInfo]: ...


class InferenceRuntime(Protocol):
    """Black-box native engine.

    ``create_session`` builds the model + context for one load; ``open_chat``
    derives a conversation (one per thread) from it. ``stream_completion``
    yields one text chunk per token batch and must stop producing once the
    consumer closes the iterator.
    """

    async def create_session(
        self, model_path: str, settings: ModelLoadingSettings
    ) -> Any: ...

    async def dispose(self, handle: Any) -> None: ...

    async def open_chat(self, handle: Any, system_prompt: Optional[str] = None) -> Any: ...

    async def close_chat(self, chat: Any) -> None: ...

    async def set_history(self, chat: Any, messages: Sequence[ChatMessage]) -> None: ...

    async def get_history(self, chat: Any) -> List[ChatMessage]: ...

    async def run_completion(self, chat: Any, prompt: str, options: dict) -> str: ...

    def stream_completion(
        self, chat: Any, prompt: str, options: dict
    ) -> AsyncIterator[str]: ...

    def layer_count(self, handle: Any) -> Optional[int]: ...


__all__ = ["HardwareProbe", "InferenceRuntime", "RemoteCatalog", "SettingsStore"]
