"""llama-cpp-python backed :class:`InferenceRuntime`.

``llama_cpp`` is imported lazily so the rest of the package (discovery,
downloads, settings) works on hosts without the native wheel installed.
All native calls run on worker threads; each loaded model serializes its
own calls through a per-handle lock because a ``Llama`` context is not
re-entrant.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional, Sequence

from .errors import RuntimeFailure
from .models import ChatMessage, ModelLoadingSettings

logger = logging.getLogger("mindstrike.local_llm.llama_runtime")

_QUEUE_SIZE = 64
_POLL_S = 0.25
_DONE = object()


def _import_llama():
    try:
        from llama_cpp import Llama
    except ImportError as exc:
        raise RuntimeFailure(
            "llama-cpp-python is not installed",
            "Install with: pip install 'mindstrike-local-llm[llama]'",
        ) from exc
    return Llama


@dataclass
class LlamaHandle:
    llm: Any
    model_path: str
    lock: threading.Lock = field(default_factory=threading.Lock)
    closing: threading.Event = field(default_factory=threading.Event)


@dataclass
class LlamaChat:
    handle: LlamaHandle
    system_prompt: Optional[str] = None
    history: List[ChatMessage] = field(default_factory=list)

    def messages_for(self, prompt: str) -> List[dict]:
        messages = [m.to_dict() for m in self.history]
        if self.system_prompt and not any(m.role == "system" for m in self.history):
            messages.insert(0, {"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages


def _completion_kwargs(options: dict) -> dict:
    kwargs: dict = {}
    if options.get("temperature") is not None:
        kwargs["temperature"] = float(options["temperature"])
    if options.get("max_tokens") is not None:
        kwargs["max_tokens"] = int(options["max_tokens"])
    return kwargs


class LlamaCppRuntime:
    def __init__(self, *, verbose: bool = False):
        self.verbose = verbose

    async def create_session(
        self, model_path: str, settings: ModelLoadingSettings
    ) -> LlamaHandle:
        if not Path(model_path).is_file():
            raise FileNotFoundError(model_path)
        Llama = _import_llama()
        kwargs = {
            "model_path": model_path,
            "n_gpu_layers": int(settings.gpu_layers or 0),
            "n_ctx": int(settings.context_size or 0),
            "verbose": self.verbose,
        }
        if settings.batch_size:
            kwargs["n_batch"] = int(settings.batch_size)
        if settings.threads:
            kwargs["n_threads"] = int(settings.threads)
        logger.info(
            "[llama] Creating context for %s (n_ctx=%s, n_gpu_layers=%s)",
            Path(model_path).name,
            kwargs["n_ctx"],
            kwargs["n_gpu_layers"],
        )
        llm = await asyncio.to_thread(Llama, **kwargs)
        return LlamaHandle(llm=llm, model_path=model_path)

    async def dispose(self, handle: LlamaHandle) -> None:
        # Stop any streaming worker, then wait for the context to be free.
        handle.closing.set()
        await asyncio.to_thread(self._close, handle)

    def _close(self, handle: LlamaHandle) -> None:
        with handle.lock:
            close = getattr(handle.llm, "close", None)
            if callable(close):
                close()
            handle.llm = None

    def layer_count(self, handle: LlamaHandle) -> Optional[int]:
        metadata = getattr(handle.llm, "metadata", None) or {}
        arch = metadata.get("general.architecture")
        value = metadata.get(f"{arch}.block_count") if arch else None
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    async def open_chat(
        self, handle: LlamaHandle, system_prompt: Optional[str] = None
    ) -> LlamaChat:
        history = [ChatMessage("system", system_prompt)] if system_prompt else []
        return LlamaChat(handle=handle, system_prompt=system_prompt, history=history)

    async def close_chat(self, chat: LlamaChat) -> None:
        chat.history = []

    async def set_history(self, chat: LlamaChat, messages: Sequence[ChatMessage]) -> None:
        chat.history = [ChatMessage.coerce(m) for m in messages]

    async def get_history(self, chat: LlamaChat) -> List[ChatMessage]:
        return list(chat.history)

    def _complete(self, chat: LlamaChat, messages: List[dict], kwargs: dict) -> str:
        handle = chat.handle
        with handle.lock:
            if handle.llm is None:
                raise RuntimeFailure("Model context has been disposed")
            result = handle.llm.create_chat_completion(messages=messages, **kwargs)
        return result["choices"][0]["message"].get("content") or ""

    async def run_completion(self, chat: LlamaChat, prompt: str, options: dict) -> str:
        messages = chat.messages_for(prompt)
        content = await asyncio.to_thread(
            self._complete, chat, messages, _completion_kwargs(options)
        )
        chat.history.extend(
            [ChatMessage("user", prompt), ChatMessage("assistant", content)]
        )
        return content

    async def stream_completion(
        self, chat: LlamaChat, prompt: str, options: dict
    ) -> AsyncIterator[str]:
        """Stream deltas from a worker thread through a bounded queue.

        Closing the iterator sets ``stop``; the worker notices it between
        tokens and releases the model lock.
        """

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=_QUEUE_SIZE)
        stop = threading.Event()
        messages = chat.messages_for(prompt)
        kwargs = _completion_kwargs(options)

        def put(item: Any) -> bool:
            future = asyncio.run_coroutine_threadsafe(queue.put(item), loop)
            while not stop.is_set():
                try:
                    future.result(timeout=_POLL_S)
                    return True
                except TimeoutError:
                    continue
            future.cancel()
            return False

        def work() -> None:
            handle = chat.handle
            try:
                with handle.lock:
                    if handle.llm is None:
                        raise RuntimeFailure("Model context has been disposed")
                    stream = handle.llm.create_chat_completion(
                        messages=messages, stream=True, **kwargs
                    )
                    try:
                        for event in stream:
                            if stop.is_set() or handle.closing.is_set():
                                break
                            delta = event["choices"][0].get("delta", {})
                            text = delta.get("content")
                            if text and not put(text):
                                break
                    finally:
                        # Finish the native generator before the lock is released.
                        close = getattr(stream, "close", None)
                        if callable(close):
                            close()
            except Exception as exc:  # noqa: BLE001 - re-raised on the event loop
                put(exc)
                return
            if handle.closing.is_set() and not stop.is_set():
                put(RuntimeFailure("Model context was disposed during generation"))
                return
            put(_DONE)

        worker = loop.run_in_executor(None, work)
        parts: List[str] = []
        completed = False
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    completed = True
                    break
                if isinstance(item, BaseException):
                    raise item
                parts.append(item)
                yield item
        finally:
            stop.set()
            await worker
            if completed:
                chat.history.extend(
                    [
                        ChatMessage("user", prompt),
                        ChatMessage("assistant", "".join(parts)),
                    ]
                )


__all__ = ["LlamaChat", "LlamaCppRuntime", "LlamaHandle"]
