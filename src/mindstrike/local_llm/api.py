"""FastAPI surface over :class:`LocalLlmOrchestrator`."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .errors import LocalLlmError, StreamInterrupted
from .models import CancellationToken, GenerationOptions, RemoteModelInfo
from .orchestrator import LocalLlmOrchestrator

logger = logging.getLogger("mindstrike.local_llm.api")


class SettingsBody(BaseModel):
    gpu_layers: Optional[int] = Field(None, ge=-1)
    context_size: Optional[int] = Field(None, gt=0)
    batch_size: Optional[int] = Field(None, gt=0)
    threads: Optional[int] = Field(None, gt=0)
    temperature: Optional[float] = Field(None, ge=0)


class DownloadRequest(BaseModel):
    filename: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    size_bytes: int = 0
    name: str = ""
    model_id: str = ""
    quantization: Optional[str] = None
    trained_context_length: Optional[int] = None
    parameter_count: Optional[str] = None
    catalog_metadata: Dict = Field(default_factory=dict)


class Message(BaseModel):
    role: str
    content: str = ""


class HistoryRequest(BaseModel):
    messages: Optional[List[Message]] = None


class GenerateRequest(BaseModel):
    messages: List[Message] = Field(..., min_length=1)
    thread_id: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0)
    max_tokens: Optional[int] = Field(None, gt=0)
    disable_functions: bool = False
    disable_chat_history: bool = False
    stream: bool = False

    def options(self, cancel: CancellationToken | None = None) -> GenerationOptions:
        return GenerationOptions(
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            thread_id=self.thread_id,
            disable_functions=self.disable_functions,
            disable_chat_history=self.disable_chat_history,
            cancel=cancel,
        )


def _sse(payload) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n"


def create_app(orchestrator: LocalLlmOrchestrator) -> FastAPI:
    app = FastAPI(title="MindStrike Local LLM", version="0.3")
    app.state.orchestrator = orchestrator
    app.state.downloads = {}

    @app.exception_handler(LocalLlmError)
    async def _local_llm_error(request: Request, exc: LocalLlmError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.on_event("shutdown")
    async def _shutdown():  # pragma: no cover
        await orchestrator.aclose()

    # ------------------------------------------------------------------ models
    @app.get("/v1/local-models")
    async def list_local_models():
        models = await orchestrator.get_local_models()
        return {"object": "list", "data": [m.to_dict() for m in models]}

    @app.get("/v1/local-models/available")
    async def list_available_models():
        found = await orchestrator.get_available_models()
        return {
            "local": [m.to_dict() for m in found["local"]],
            "remote": [m.to_dict() for m in found["remote"]],
        }

    @app.get("/v1/local-models/search")
    async def search_models(q: str = ""):
        found = await orchestrator.search_models(q)
        return {
            "local": [m.to_dict() for m in found["local"]],
            "remote": [m.to_dict() for m in found["remote"]],
        }

    @app.delete("/v1/local-models/{model_id}")
    async def delete_model(model_id: str):
        model = await orchestrator.delete_model(model_id)
        return {"deleted": model.id, "filename": model.filename}

    # --------------------------------------------------------------- downloads
    @app.post("/v1/downloads", status_code=202)
    async def start_download(req: DownloadRequest):
        info = RemoteModelInfo(**req.model_dump())
        tasks: Dict[str, asyncio.Task] = app.state.downloads
        running = tasks.get(info.filename)
        if running is None or running.done():
            task = asyncio.create_task(orchestrator.download_model(info))

            def _done(t: asyncio.Task, filename: str = info.filename) -> None:
                tasks.pop(filename, None)
                if not t.cancelled() and t.exception() is not None:
                    logger.warning(
                        "[api] Download of %s failed: %s", filename, t.exception()
                    )

            task.add_done_callback(_done)
            tasks[info.filename] = task
            # Surface immediate failures (already exists, conflicting URL).
            await asyncio.sleep(0)
            if task.done() and task.exception() is not None:
                raise task.exception()
        progress = orchestrator.get_download_progress(info.filename)
        return {
            "filename": info.filename,
            "progress": progress.to_dict() if progress else None,
        }

    @app.get("/v1/downloads/{filename}")
    async def download_progress(filename: str):
        progress = orchestrator.get_download_progress(filename)
        if progress is None:
            raise HTTPException(
                status_code=404,
                detail={
                    "error": {
                        "type": "not_found",
                        "code": 404,
                        "message": f"No active download for '{filename}'",
                    }
                },
            )
        return progress.to_dict()

    @app.delete("/v1/downloads/{filename}")
    async def cancel_download(filename: str):
        return {"cancelled": orchestrator.cancel_download(filename)}

    # ---------------------------------------------------------------- settings
    @app.get("/v1/local-models/{model_id}/settings")
    async def get_settings(model_id: str):
        return (await orchestrator.get_model_settings(model_id)).to_dict()

    @app.put("/v1/local-models/{model_id}/settings")
    async def put_settings(model_id: str, body: SettingsBody):
        await orchestrator.set_model_settings(
            model_id, body.model_dump(exclude_none=True)
        )
        return {"status": "ok"}

    @app.post("/v1/local-models/{model_id}/settings/optimal")
    async def optimal_settings(model_id: str, body: Optional[SettingsBody] = None):
        user = body.model_dump(exclude_none=True) if body is not None else None
        settings = await orchestrator.calculate_optimal_settings(model_id, user)
        return settings.to_dict()

    @app.get("/v1/local-models/{model_id}/runtime")
    async def runtime_info(model_id: str):
        info = await orchestrator.get_model_runtime_info(model_id)
        return info.to_dict() if info else None

    @app.post("/v1/cache/context/clear")
    async def clear_context_cache():
        orchestrator.clear_context_size_cache()
        return {"status": "ok"}

    # --------------------------------------------------------------- lifecycle
    @app.post("/v1/local-models/{model_id}/load")
    async def load_model(model_id: str, thread_id: Optional[str] = None):
        return (await orchestrator.load_model(model_id, thread_id)).to_dict()

    @app.post("/v1/local-models/{model_id}/unload")
    async def unload_model(model_id: str):
        return {"unloaded": await orchestrator.unload_model(model_id)}

    @app.get("/v1/local-models/{model_id}/status")
    async def model_status(model_id: str):
        return (await orchestrator.get_model_status(model_id)).to_dict()

    # -------------------------------------------------------------- generation
    @app.put("/v1/local-models/{model_id}/threads/{thread_id}/history")
    async def update_history(model_id: str, thread_id: str, body: HistoryRequest):
        messages = (
            [m.model_dump() for m in body.messages] if body.messages is not None else None
        )
        updated = await orchestrator.update_session_history(
            model_id, thread_id, messages
        )
        return {"updated": updated}

    @app.post("/v1/local-models/{model_id}/generate")
    async def generate(model_id: str, req: GenerateRequest):
        messages = [m.model_dump() for m in req.messages]
        if not req.stream:
            content = await orchestrator.generate_response(
                model_id, messages, req.options()
            )
            return {"content": content}

        cancel = CancellationToken()
        stream = orchestrator.generate_stream_response(
            model_id, messages, req.options(cancel)
        )
        # Pull the first chunk here so lookup errors still map to a status code.
        try:
            first: Optional[str] = await stream.__anext__()
        except StopAsyncIteration:
            first = None

        async def streamer():
            try:
                if first is not None:
                    yield _sse({"chunk": first})
                    async for chunk in stream:
                        yield _sse({"chunk": chunk})
                yield _sse("[DONE]")
            except StreamInterrupted as exc:
                yield _sse({**exc.to_dict(), "truncated": True})
            except LocalLlmError as exc:
                yield _sse(exc.to_dict())
            finally:
                cancel.cancel("client disconnected")
                await stream.aclose()

        return StreamingResponse(streamer(), media_type="text/event-stream")

    return app


__all__ = ["create_app"]
