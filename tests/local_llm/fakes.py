"""In-memory stand-ins for the collaborators the local model layer drives."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import httpx

from mindstrike.local_llm.config import LocalLlmConfig
from mindstrike.local_llm.downloader import ModelDownloader
from mindstrike.local_llm.models import (
    ChatMessage,
    HardwareSnapshot,
    ModelLoadingSettings,
    RemoteModelInfo,
)
from mindstrike.local_llm.orchestrator import LocalLlmOrchestrator

GIB = 1024 * 1024 * 1024

ROOMY_HOST = HardwareSnapshot(
    total_ram=64 * GIB,
    free_ram=32 * GIB,
    cpu_threads=8,
    gpu_present=False,
)


class FakeHardware:
    def __init__(self, snapshot: HardwareSnapshot = ROOMY_HOST):
        self.snapshot = snapshot
        self.invalidations = 0

    async def get_hardware_snapshot(self) -> HardwareSnapshot:
        return self.snapshot

    def invalidate(self) -> None:
        self.invalidations += 1


class MemorySettingsStore:
    def __init__(self, initial: Optional[Dict[str, ModelLoadingSettings]] = None):
        self.saved: Dict[str, ModelLoadingSettings] = dict(initial or {})

    async def load_model_settings(self, model_id: str) -> Optional[ModelLoadingSettings]:
        return self.saved.get(model_id)

    async def save_model_settings(
        self, model_id: str, settings: ModelLoadingSettings
    ) -> None:
        self.saved[model_id] = settings


class FakeCatalog:
    def __init__(self, models: Sequence[RemoteModelInfo] = (), fail: bool = False):
        self.models = list(models)
        self.fail = fail

    async def list_available(self) -> List[RemoteModelInfo]:
        if self.fail:
            raise RuntimeError("catalog offline")
        return list(self.models)

    async def search(self, query: str) -> List[RemoteModelInfo]:
        if self.fail:
            raise RuntimeError("catalog offline")
        needle = query.lower()
        return [m for m in self.models if needle in m.filename.lower()]

    async def aclose(self) -> None:
        return None


class FakeHandle:
    def __init__(self, path: str, settings: ModelLoadingSettings):
        self.path = path
        self.settings = settings
        self.disposed = False


class FakeChat:
    def __init__(self, handle: FakeHandle, system_prompt: Optional[str]):
        self.handle = handle
        self.system_prompt = system_prompt
        self.history: List[ChatMessage] = []
        self.closed = False
        self.prompts: List[str] = []


def echo_reply(history: List[ChatMessage], prompt: str) -> str:
    return f"echo: {prompt}"


class FakeRuntime:
    """Scriptable runtime.

    ``gate`` (when set) blocks ``create_session`` until released and
    ``dispose_gate`` does the same for ``dispose``; ``tokens`` drive
    ``stream_completion``; ``fail_stream_after`` raises after that many chunks.
    """

    def __init__(
        self,
        *,
        reply: Callable[[List[ChatMessage], str], str] = echo_reply,
        tokens: Sequence[str] = ("Hel", "lo", " there"),
        layers: Optional[int] = 32,
        load_error: Optional[BaseException] = None,
        fail_stream_after: Optional[int] = None,
        token_delay_s: float = 0.0,
    ):
        self.reply = reply
        self.tokens = list(tokens)
        self.layers = layers
        self.load_error = load_error
        self.fail_stream_after = fail_stream_after
        self.token_delay_s = token_delay_s
        self.gate: Optional[asyncio.Event] = None
        self.dispose_gate: Optional[asyncio.Event] = None
        self.streams_open = 0
        self.disposed_while_streaming = 0
        self.created: List[FakeHandle] = []
        self.disposed: List[FakeHandle] = []
        self.chats: List[FakeChat] = []
        self.streams_closed = 0
        self.tokens_produced = 0
        self.last_options: dict = {}

    async def create_session(self, model_path: str, settings: ModelLoadingSettings):
        if self.gate is not None:
            await self.gate.wait()
        if self.load_error is not None:
            raise self.load_error
        handle = FakeHandle(model_path, settings)
        self.created.append(handle)
        return handle

    async def dispose(self, handle: FakeHandle) -> None:
        if self.dispose_gate is not None:
            await self.dispose_gate.wait()
        if self.streams_open:
            self.disposed_while_streaming += 1
        handle.disposed = True
        self.disposed.append(handle)

    def layer_count(self, handle: FakeHandle) -> Optional[int]:
        return self.layers

    async def open_chat(self, handle: FakeHandle, system_prompt: Optional[str] = None):
        chat = FakeChat(handle, system_prompt)
        self.chats.append(chat)
        return chat

    async def close_chat(self, chat: FakeChat) -> None:
        chat.closed = True

    async def set_history(self, chat: FakeChat, messages: Sequence[ChatMessage]) -> None:
        chat.history = list(messages)

    async def get_history(self, chat: FakeChat) -> List[ChatMessage]:
        return list(chat.history)

    async def run_completion(self, chat: FakeChat, prompt: str, options: dict) -> str:
        self.last_options = dict(options)
        chat.prompts.append(prompt)
        content = self.reply(list(chat.history), prompt)
        chat.history.extend(
            [ChatMessage("user", prompt), ChatMessage("assistant", content)]
        )
        return content

    async def stream_completion(self, chat: FakeChat, prompt: str, options: dict):
        self.last_options = dict(options)
        chat.prompts.append(prompt)
        produced: List[str] = []
        self.streams_open += 1
        try:
            for index, token in enumerate(self.tokens):
                if (
                    self.fail_stream_after is not None
                    and index >= self.fail_stream_after
                ):
                    raise RuntimeError("decode failed")
                if self.token_delay_s:
                    await asyncio.sleep(self.token_delay_s)
                self.tokens_produced += 1
                produced.append(token)
                yield token
            chat.history.extend(
                [
                    ChatMessage("user", prompt),
                    ChatMessage("assistant", "".join(produced)),
                ]
            )
        finally:
            self.streams_open -= 1
            self.streams_closed += 1


def write_model(directory: Path, filename: str, size: int = 1024) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename
    path.write_bytes(b"\0" * size)
    return path


def make_orchestrator(
    tmp_path: Path,
    *,
    runtime: Optional[FakeRuntime] = None,
    hardware: Optional[FakeHardware] = None,
    store: Optional[MemorySettingsStore] = None,
    catalog: Optional[FakeCatalog] = None,
    **config_overrides,
) -> LocalLlmOrchestrator:
    config = LocalLlmConfig(
        models_dir=str(tmp_path / "models"),
        settings_dir=str(tmp_path / "settings"),
        **config_overrides,
    )
    return LocalLlmOrchestrator(
        config,
        hardware=hardware or FakeHardware(),
        store=store if store is not None else MemorySettingsStore(),
        catalog=catalog or FakeCatalog(),
        runtime=runtime or FakeRuntime(),
    )


def mock_downloads(
    orchestrator: LocalLlmOrchestrator,
    payload: bytes,
    requests: Optional[List[httpx.Request]] = None,
) -> LocalLlmOrchestrator:
    """Route the orchestrator's downloads through an in-memory transport."""

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return httpx.Response(200, content=payload)

    downloader = ModelDownloader(
        orchestrator.catalog,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        chunk_bytes=128,
        progress_interval_s=0.0,
    )
    orchestrator.downloader = downloader
    orchestrator.discovery.downloader = downloader
    return orchestrator
