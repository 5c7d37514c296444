from __future__ import annotations

from typing import Any


class LocalLlmError(RuntimeError):
    """Base error for the local model layer.

    ``kind`` is the stable, transport-safe error type and ``status_code`` the
    HTTP status the API layer answers with.
    """

    kind = "local_llm_error"
    status_code = 500

    def __init__(self, message: str, hint: str | None = None):
        super().__init__(message)
        self.message = message
        self.hint = hint

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": {
                "type": self.kind,
                "code": self.status_code,
                "message": self.message,
            }
        }
        if self.hint:
            payload["error"]["hint"] = self.hint
        return payload


class NotFound(LocalLlmError):
    kind = "not_found"
    status_code = 404


class ModelNotFound(NotFound):
    kind = "model_not_found"


class ModelNotLoaded(NotFound):
    kind = "model_not_loaded"


class InvalidModelsDirectory(NotFound):
    kind = "invalid_models_directory"


class AlreadyInProgress(LocalLlmError):
    kind = "already_in_progress"
    status_code = 409


class ResourceExhausted(LocalLlmError):
    kind = "resource_exhausted"
    status_code = 507


class RuntimeFailure(LocalLlmError):
    kind = "runtime_failure"
    status_code = 500


class ModelFileError(RuntimeFailure):
    """The model file is missing or could not be parsed by the runtime."""

    kind = "model_file_error"

    def __init__(self, message: str, reason: str = "corrupt", hint: str | None = None):
        super().__init__(message, hint)
        self.reason = reason


class StreamInterrupted(RuntimeFailure):
    """Streaming generation failed after some chunks were delivered.

    Chunks already handed to the caller stay valid; the output is truncated.
    """

    kind = "stream_interrupted"

    def __init__(self, message: str, partial: str = "", chunks_delivered: int = 0):
        super().__init__(message, "Output is truncated, not invalid")
        self.partial = partial
        self.chunks_delivered = chunks_delivered
        self.truncated = True

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["error"]["truncated"] = True
        payload["error"]["chunks_delivered"] = self.chunks_delivered
        return payload


class IOFailure(LocalLlmError):
    kind = "io_failure"
    status_code = 502


class DownloadError(IOFailure):
    kind = "download_error"

    def __init__(self, message: str, reason: str = "network", hint: str | None = None):
        super().__init__(message, hint)
        self.reason = reason


class AlreadyExists(IOFailure):
    kind = "already_exists"
    status_code = 409


class Cancelled(LocalLlmError):
    """Caller-initiated stop. A normal terminal state, not a failure."""

    kind = "cancelled"
    status_code = 499


class InvalidRequest(LocalLlmError, ValueError):
    kind = "invalid_request"
    status_code = 400


def err_model_not_found(model: str) -> ModelNotFound:
    return ModelNotFound(
        f"Model '{model}' not found", "Check the local models list"
    )


def err_model_not_loaded(model: str) -> ModelNotLoaded:
    return ModelNotLoaded(
        f"Model '{model}' is not loaded", "Load the model before generating"
    )


def err_download_in_progress(filename: str) -> AlreadyInProgress:
    return AlreadyInProgress(f"Download of '{filename}' already in progress")


def err_no_user_message() -> InvalidRequest:
    return InvalidRequest("No user message found")
