from __future__ import annotations

import asyncio
import inspect
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Union

from gguf import GGUFReader, GGUFValueType

from .errors import InvalidModelsDirectory, IOFailure
from .models import LocalModel
from .naming import (
    GGUF_SUFFIX,
    display_name_for,
    model_id_for,
    parse_filename,
)

logger = logging.getLogger("mindstrike.local_llm.inventory")

DEFAULT_CONTEXT_LENGTH = 4096

ContextSizeResolver = Callable[
    [LocalModel, int], Union[int, Awaitable[int]]
]


@dataclass(frozen=True)
class GgufHeader:
    architecture: Optional[str] = None
    context_length: Optional[int] = None
    block_count: Optional[int] = None
    embedding_length: Optional[int] = None
    head_count: Optional[int] = None
    head_count_kv: Optional[int] = None


def _field_value(reader: GGUFReader, name: str) -> Any:
    field = reader.get_field(name)
    if field is None or not field.data:
        return None
    part = field.parts[field.data[0]]
    if field.types and field.types[0] == GGUFValueType.STRING:
        return bytes(part).decode("utf-8", errors="replace")
    return part.tolist()[0]


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def read_gguf_header(path: Path) -> GgufHeader:
    """Read the few header keys sizing needs; an unreadable file yields an empty header."""

    try:
        reader = GGUFReader(str(path))
    except Exception as exc:  # noqa: BLE001 - truncated or non-GGUF file
        logger.debug("[inventory] Unable to read GGUF header %s: %s", path, exc)
        return GgufHeader()

    arch = _field_value(reader, "general.architecture")
    if not isinstance(arch, str) or not arch:
        return GgufHeader()
    return GgufHeader(
        architecture=arch,
        context_length=_as_int(_field_value(reader, f"{arch}.context_length")),
        block_count=_as_int(_field_value(reader, f"{arch}.block_count")),
        embedding_length=_as_int(_field_value(reader, f"{arch}.embedding_length")),
        head_count=_as_int(_field_value(reader, f"{arch}.attention.head_count")),
        head_count_kv=_as_int(
            _field_value(reader, f"{arch}.attention.head_count_kv")
        ),
    )


class ModelInventory:
    """File-system view of the models directory. Holds no state between scans."""

    def __init__(
        self,
        models_dir: Path | str,
        *,
        create: bool = False,
        header_reader: Callable[[Path], GgufHeader] = read_gguf_header,
    ):
        self.root = Path(models_dir).expanduser()
        self._read_header = header_reader
        if create:
            self.root.mkdir(parents=True, exist_ok=True)

    def _ensure_root(self) -> None:
        if not self.root.exists():
            raise InvalidModelsDirectory(
                f"Models directory {self.root} does not exist",
                "Create it or set paths.models_dir in the config",
            )
        if not self.root.is_dir():
            raise InvalidModelsDirectory(f"Models path {self.root} is not a directory")

    def _scan(self) -> List[Path]:
        self._ensure_root()
        try:
            entries = list(self.root.iterdir())
        except OSError as exc:
            logger.warning("[inventory] Unable to read %s: %s", self.root, exc)
            return []
        return sorted(
            (p for p in entries if p.suffix.lower() == GGUF_SUFFIX and p.is_file()),
            key=lambda p: p.name,
        )

    def _describe(self, path: Path) -> Optional[LocalModel]:
        try:
            size = path.stat().st_size
        except OSError as exc:
            logger.warning("[inventory] Skipping %s: %s", path.name, exc)
            return None
        hints = parse_filename(path.name)
        header = self._read_header(path)
        return LocalModel(
            id=model_id_for(path.name),
            filename=path.name,
            path=str(path),
            size_bytes=size,
            display_name=display_name_for(path.name),
            quantization=hints.quantization,
            trained_context_length=header.context_length or hints.context_length,
            layer_count=header.block_count,
            parameter_count=hints.parameter_count,
            architecture=header.architecture,
            embedding_length=header.embedding_length,
            head_count=header.head_count,
            head_count_kv=header.head_count_kv,
        )

    def _collect(self) -> List[LocalModel]:
        models = []
        for path in self._scan():
            model = self._describe(path)
            if model is not None:
                models.append(model)
        return models

    async def list_local_models(
        self, context_size_resolver: ContextSizeResolver | None = None
    ) -> List[LocalModel]:
        models = await asyncio.to_thread(self._collect)
        if context_size_resolver is None:
            return [
                replace(
                    m,
                    context_length=m.trained_context_length or DEFAULT_CONTEXT_LENGTH,
                )
                for m in models
            ]

        resolved = []
        for model in models:
            requested = model.trained_context_length or DEFAULT_CONTEXT_LENGTH
            value = context_size_resolver(model, requested)
            if inspect.isawaitable(value):
                value = await value
            resolved.append(replace(model, context_length=int(value)))
        return resolved

    def resolve_path(self, filename: str) -> Path:
        name = (filename or "").strip()
        if not name or name in {".", ".."} or os.path.basename(name) != name:
            raise IOFailure(f"Invalid model filename '{filename}'")
        candidate = (self.root / name).resolve()
        if candidate.parent != self.root.resolve():
            raise IOFailure(f"Invalid model filename '{filename}'")
        return self.root / name

    def model_exists(self, filename: str) -> bool:
        return self.resolve_path(filename).exists()

    async def delete_file(self, path: Path | str) -> None:
        target = Path(path)
        try:
            await asyncio.to_thread(target.unlink)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise IOFailure(f"Failed to delete {target.name}: {exc}") from exc
        logger.info("[inventory] Deleted %s", target)
