from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Sequence, Set, Tuple

from .errors import RuntimeFailure
from .interfaces import InferenceRuntime
from .models import ChatMessage, LoadedModelRuntime, SessionRecord

logger = logging.getLogger("mindstrike.local_llm.sessions")

SessionKey = Tuple[str, Optional[str]]

_HISTORY_ROLES = {"system", "user", "assistant"}


class SessionManager:
    """Conversation sessions per ``(model_id, thread_id)``.

    ``thread_id=None`` is the model's main session, opened at load time. Each
    key also owns an ``asyncio.Lock`` so history updates and generation for one
    thread never interleave while other threads proceed.
    """

    def __init__(self, runtime: InferenceRuntime, system_prompt: str | None = None):
        self._runtime = runtime
        self._system_prompt = system_prompt
        self._sessions: Dict[SessionKey, SessionRecord] = {}
        self._locks: Dict[SessionKey, asyncio.Lock] = {}
        self._closing: Set[str] = set()

    def thread_lock(self, model_id: str, thread_id: str | None = None) -> asyncio.Lock:
        key = (model_id, thread_id)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def get_session(
        self, model_id: str, thread_id: str | None = None
    ) -> Optional[SessionRecord]:
        return self._sessions.get((model_id, thread_id))

    def sessions_for(self, model_id: str) -> List[SessionRecord]:
        return [rec for key, rec in self._sessions.items() if key[0] == model_id]

    async def create_session(
        self, loaded: LoadedModelRuntime, thread_id: str | None = None
    ) -> SessionRecord:
        key = (loaded.model_id, thread_id)
        existing = self._sessions.get(key)
        if existing is not None:
            await self.dispose_session(*key)
        try:
            chat = await self._runtime.open_chat(
                loaded.native_handle, system_prompt=self._system_prompt
            )
        except Exception as exc:  # noqa: BLE001 - surfaced as a typed failure
            raise RuntimeFailure(
                f"Failed to open session for {loaded.model_id}: {exc}"
            ) from exc
        record = SessionRecord(
            model_id=loaded.model_id,
            thread_id=thread_id,
            native_session=chat,
            closing=loaded.model_id in self._closing,
        )
        self._sessions[key] = record
        logger.info(
            "[sessions] Created session %s/%s (context %d)",
            loaded.model_id,
            thread_id or "main",
            loaded.context_size,
        )
        return record

    async def get_or_create_session(
        self, loaded: LoadedModelRuntime, thread_id: str | None = None
    ) -> SessionRecord:
        record = self._sessions.get((loaded.model_id, thread_id))
        if record is not None and not record.disposed:
            return record
        return await self.create_session(loaded, thread_id)

    async def dispose_session(
        self, model_id: str, thread_id: str | None = None
    ) -> None:
        record = self._sessions.pop((model_id, thread_id), None)
        if record is None or record.disposed:
            return
        record.disposed = True
        try:
            await self._runtime.close_chat(record.native_session)
        except Exception:  # noqa: BLE001 - disposal continues for the other sessions
            logger.warning(
                "[sessions] Error disposing session %s/%s",
                model_id,
                thread_id or "main",
                exc_info=True,
            )
        logger.debug("[sessions] Disposed session %s/%s", model_id, thread_id or "main")

    async def dispose_model_sessions(self, model_id: str) -> int:
        keys = [key for key in self._sessions if key[0] == model_id]
        await asyncio.gather(*(self.dispose_session(*key) for key in keys))
        for key in [k for k in self._locks if k[0] == model_id]:
            if not self._locks[key].locked():
                del self._locks[key]
        if keys:
            logger.info("[sessions] Disposed %d session(s) for %s", len(keys), model_id)
        return len(keys)

    @asynccontextmanager
    async def quiesce(self, model_id: str) -> AsyncIterator[None]:
        """Hold every thread lock of ``model_id`` once its generations stop.

        Sessions are flagged ``closing`` first so running streams end at their
        next token batch instead of finishing the whole reply.
        """

        self._closing.add(model_id)
        for record in self.sessions_for(model_id):
            record.closing = True
        keys = {key for key in self._locks if key[0] == model_id}
        keys.update(key for key in self._sessions if key[0] == model_id)
        ordered = sorted(keys, key=lambda key: (key[1] is not None, key[1] or ""))
        held: List[asyncio.Lock] = []
        try:
            for key in ordered:
                lock = self.thread_lock(*key)
                await lock.acquire()
                held.append(lock)
            if held:
                logger.debug(
                    "[sessions] %s quiet (%d thread lock(s) held)", model_id, len(held)
                )
            yield
        finally:
            for lock in reversed(held):
                lock.release()
            self._closing.discard(model_id)
            for key in [k for k in self._locks if k[0] == model_id]:
                if not self._locks[key].locked():
                    del self._locks[key]

    def build_history(self, messages: Sequence[ChatMessage]) -> List[ChatMessage]:
        history: List[ChatMessage] = []
        if self._system_prompt:
            history.append(ChatMessage("system", self._system_prompt))
        for message in messages:
            msg = ChatMessage.coerce(message)
            if msg.role not in _HISTORY_ROLES:
                continue
            if msg.role == "system" and msg.content == self._system_prompt:
                continue
            history.append(msg)
        return history

    async def update_history(
        self, session: SessionRecord, messages: Sequence[ChatMessage]
    ) -> None:
        if session.disposed:
            raise RuntimeFailure(
                f"Session {session.model_id}/{session.thread_id or 'main'} was disposed"
            )
        coerced = [ChatMessage.coerce(m) for m in messages]
        await self._runtime.set_history(
            session.native_session, self.build_history(coerced)
        )
        session.synced_messages = coerced
        session.history_version += 1
        logger.debug(
            "[sessions] History of %s/%s set to %d message(s)",
            session.model_id,
            session.thread_id or "main",
            len(coerced),
        )

    async def history(self, session: SessionRecord) -> List[ChatMessage]:
        if session.disposed:
            return []
        return list(await self._runtime.get_history(session.native_session))
