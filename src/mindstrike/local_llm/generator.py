from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, List, Optional

from .errors import LocalLlmError, RuntimeFailure, StreamInterrupted
from .interfaces import InferenceRuntime
from .models import (
    ChatMessage,
    GenerationOptions,
    GenerationResult,
    SessionRecord,
)

logger = logging.getLogger("mindstrike.local_llm.generator")

STOP_ABORT = "abort"


def _approx_tokens(text: str) -> int:
    return len(text.split())


class ResponseGenerator:
    """Drives one prompt through a session, blocking or as a chunk stream."""

    def __init__(self, runtime: InferenceRuntime):
        self._runtime = runtime

    async def _snapshot(
        self, session: SessionRecord, options: GenerationOptions
    ) -> Optional[List[ChatMessage]]:
        if not options.disable_chat_history:
            return None
        return list(await self._runtime.get_history(session.native_session))

    async def _restore(
        self, session: SessionRecord, snapshot: Optional[List[ChatMessage]]
    ) -> None:
        if snapshot is None or session.disposed:
            return
        await self._runtime.set_history(session.native_session, snapshot)

    async def generate(
        self,
        session: SessionRecord,
        prompt: str,
        options: GenerationOptions | None = None,
    ) -> GenerationResult:
        options = options or GenerationOptions()
        cancel = options.cancel
        if cancel is not None and cancel.cancelled:
            return GenerationResult("", 0, STOP_ABORT)

        if cancel is not None:
            # Streaming keeps the text produced before a cancellation.
            parts: List[str] = []
            async for chunk in self.stream(session, prompt, options):
                parts.append(chunk)
            stop = STOP_ABORT if cancel.cancelled else None
            return GenerationResult("".join(parts), len(parts), stop)

        snapshot = await self._snapshot(session, options)
        try:
            content = await self._runtime.run_completion(
                session.native_session, prompt, options.runtime_options()
            )
        except (LocalLlmError, asyncio.CancelledError):
            raise
        except Exception as exc:  # noqa: BLE001 - surfaced as RuntimeFailure
            logger.error("[generator] Completion failed: %s", exc)
            raise RuntimeFailure(f"Generation failed: {exc}") from exc
        finally:
            await self._restore(session, snapshot)
        content = content or ""
        return GenerationResult(content, _approx_tokens(content))

    async def stream(
        self,
        session: SessionRecord,
        prompt: str,
        options: GenerationOptions | None = None,
    ) -> AsyncIterator[str]:
        """Yield token batches as the runtime produces them.

        Cancellation is checked after every batch and ends the stream normally.
        A runtime failure after the first chunk raises :class:`StreamInterrupted`
        carrying the text already delivered.
        """

        options = options or GenerationOptions()
        cancel = options.cancel
        if cancel is not None and cancel.cancelled:
            return

        snapshot = await self._snapshot(session, options)
        iterator = self._runtime.stream_completion(
            session.native_session, prompt, options.runtime_options()
        )
        delivered: List[str] = []
        try:
            async for chunk in iterator:
                if session.closing:
                    logger.info(
                        "[generator] Model %s unloading; stream stopped after %d chunk(s)",
                        session.model_id,
                        len(delivered),
                    )
                    raise StreamInterrupted(
                        "Model was unloaded during generation",
                        partial="".join(delivered),
                        chunks_delivered=len(delivered),
                    )
                if cancel is not None and cancel.cancelled:
                    logger.info(
                        "[generator] Stream cancelled after %d chunk(s)", len(delivered)
                    )
                    break
                if not chunk:
                    continue
                delivered.append(chunk)
                yield chunk
        except (LocalLlmError, asyncio.CancelledError, GeneratorExit):
            raise
        except Exception as exc:  # noqa: BLE001 - surfaced as a typed failure
            if delivered:
                logger.warning(
                    "[generator] Stream interrupted after %d chunk(s): %s",
                    len(delivered),
                    exc,
                )
                raise StreamInterrupted(
                    f"Generation stopped early: {exc}",
                    partial="".join(delivered),
                    chunks_delivered=len(delivered),
                ) from exc
            raise RuntimeFailure(f"Generation failed: {exc}") from exc
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
            await self._restore(session, snapshot)
