from __future__ import annotations

import inspect
import logging
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from .discovery import ModelDiscovery
from .errors import err_model_not_loaded, err_no_user_message
from .generator import ResponseGenerator
from .loader import ModelLoader
from .models import (
    ChatMessage,
    GenerationOptions,
    LoadedModelRuntime,
    LoadState,
    ModelStatus,
    SessionRecord,
)
from .registry import ModelRegistry
from .session_manager import SessionManager

logger = logging.getLogger("mindstrike.local_llm.responses")

HistoryProvider = Callable[
    [str], Union[Sequence[Any], Awaitable[Sequence[Any]]]
]


def split_prompt(messages: Sequence[Any]) -> Tuple[List[ChatMessage], str]:
    """Return (history before the last user message, last user message text)."""

    coerced = [ChatMessage.coerce(m) for m in messages]
    for index in range(len(coerced) - 1, -1, -1):
        if coerced[index].role == "user" and coerced[index].content:
            return coerced[:index], coerced[index].content
    raise err_no_user_message()


class ResponseService:
    """Generation against loaded models with per-thread serialization."""

    def __init__(
        self,
        registry: ModelRegistry,
        sessions: SessionManager,
        generator: ResponseGenerator,
        discovery: ModelDiscovery,
        loader: ModelLoader,
        history_provider: HistoryProvider | None = None,
    ):
        self.registry = registry
        self.sessions = sessions
        self.generator = generator
        self.discovery = discovery
        self.loader = loader
        self.history_provider = history_provider

    async def _find_loaded(self, id_or_name: str) -> Optional[LoadedModelRuntime]:
        runtime = self.registry.get_model_runtime_info(id_or_name)
        if runtime is not None:
            return runtime
        model = await self.discovery.find_model(id_or_name)
        if model is None:
            return None
        return self.registry.get_model_runtime_info(model.id)

    async def _require_loaded(self, id_or_name: str) -> LoadedModelRuntime:
        runtime = await self._find_loaded(id_or_name)
        if runtime is None:
            raise err_model_not_loaded(id_or_name)
        return runtime

    def _still_loaded(self, runtime: LoadedModelRuntime) -> bool:
        # Re-checked under the thread lock: an unload may have started while
        # this request waited for it.
        return (
            self.loader.get_state(runtime.model_id) == LoadState.LOADED
            and self.registry.get(runtime.model_id) is runtime
        )

    async def _sync(
        self, session: SessionRecord, messages: Sequence[ChatMessage]
    ) -> None:
        if session.synced_messages is not None and list(
            session.synced_messages
        ) == list(messages):
            return
        await self.sessions.update_history(session, messages)

    async def update_session_history(
        self,
        id_or_name: str,
        thread_id: str | None,
        messages: Optional[Sequence[Any]] = None,
    ) -> bool:
        """Replace the thread session's history; ``False`` when the model is not loaded."""

        runtime = await self._find_loaded(id_or_name)
        if runtime is None:
            logger.debug(
                "[responses] %s not loaded; history update for %s skipped",
                id_or_name,
                thread_id,
            )
            return False

        if messages is None and self.history_provider is not None and thread_id:
            provided = self.history_provider(thread_id)
            if inspect.isawaitable(provided):
                provided = await provided
            messages = provided
        if messages is None:
            return False

        coerced = [ChatMessage.coerce(m) for m in messages]
        async with self.sessions.thread_lock(runtime.model_id, thread_id):
            if not self._still_loaded(runtime):
                logger.debug(
                    "[responses] %s unloaded; history update for %s skipped",
                    runtime.model_id,
                    thread_id,
                )
                return False
            session = await self.sessions.get_or_create_session(runtime, thread_id)
            await self.sessions.update_history(session, coerced)
        if thread_id:
            self.registry.associate_thread(runtime.model_id, thread_id)
        return True

    async def generate_response(
        self,
        id_or_name: str,
        messages: Sequence[Any],
        options: GenerationOptions | None = None,
    ) -> str:
        options = options or GenerationOptions()
        history, prompt = split_prompt(messages)
        runtime = await self._require_loaded(id_or_name)
        thread_id = options.thread_id

        async with self.sessions.thread_lock(runtime.model_id, thread_id):
            if not self._still_loaded(runtime):
                raise err_model_not_loaded(id_or_name)
            session = await self.sessions.get_or_create_session(runtime, thread_id)
            await self._sync(session, history)
            result = await self.generator.generate(session, prompt, options)
            if result.stop_reason is not None:
                session.synced_messages = None
            elif not options.disable_chat_history:
                session.synced_messages = [
                    *history,
                    ChatMessage("user", prompt),
                    ChatMessage("assistant", result.content),
                ]
        self.registry.record_prompt_usage(runtime.model_id, result.tokens_generated)
        return result.content

    async def generate_stream_response(
        self,
        id_or_name: str,
        messages: Sequence[Any],
        options: GenerationOptions | None = None,
    ) -> AsyncIterator[str]:
        options = options or GenerationOptions()
        history, prompt = split_prompt(messages)
        runtime = await self._require_loaded(id_or_name)
        thread_id = options.thread_id

        chunks: List[str] = []
        completed = False
        async with self.sessions.thread_lock(runtime.model_id, thread_id):
            if not self._still_loaded(runtime):
                raise err_model_not_loaded(id_or_name)
            session = await self.sessions.get_or_create_session(runtime, thread_id)
            await self._sync(session, history)
            stream = self.generator.stream(session, prompt, options)
            try:
                async for chunk in stream:
                    chunks.append(chunk)
                    yield chunk
                completed = not (options.cancel and options.cancel.cancelled)
            finally:
                await stream.aclose()
                if not options.disable_chat_history:
                    if completed:
                        session.synced_messages = [
                            *history,
                            ChatMessage("user", prompt),
                            ChatMessage("assistant", "".join(chunks)),
                        ]
                    else:
                        # Partial turn: force a resync on the next call.
                        session.synced_messages = None
                self.registry.record_prompt_usage(runtime.model_id, len(chunks))

    async def get_model_status(self, model_id: str) -> ModelStatus:
        state = self.loader.get_state(model_id)
        runtime = self.registry.get(model_id)
        if runtime is None:
            return ModelStatus(
                loaded=False, loading=self.loader.is_loading(model_id), state=state
            )
        return ModelStatus(
            loaded=True,
            loading=False,
            state=state,
            context_size=runtime.context_size,
            gpu_layers=runtime.gpu_layers,
            batch_size=runtime.batch_size,
        )
