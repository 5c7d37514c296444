from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

from .models import ModelLoadingSettings

logger = logging.getLogger("mindstrike.local_llm.settings_store")

SETTINGS_FILENAME = "model-settings.json"


class JsonSettingsStore:
    """Per-model load settings persisted as one JSON document keyed by model id."""

    def __init__(self, settings_dir: Path | str):
        self.path = Path(settings_dir).expanduser() / SETTINGS_FILENAME
        self._lock = asyncio.Lock()

    def _read(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "[settings-store] Ignoring unreadable %s: %s", self.path, exc
            )
            return {}
        if not isinstance(data, dict):
            logger.warning("[settings-store] %s is not a JSON object", self.path)
            return {}
        return data

    def _write(self, data: Dict[str, dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix="model_settings_", suffix=".json", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
            Path(tmp_path).replace(self.path)
        finally:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass

    async def load_model_settings(
        self, model_id: str
    ) -> Optional[ModelLoadingSettings]:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
        payload = data.get(model_id)
        if not isinstance(payload, dict):
            return None
        try:
            return ModelLoadingSettings.from_dict(payload)
        except (TypeError, ValueError) as exc:
            logger.warning(
                "[settings-store] Invalid settings for %s ignored: %s", model_id, exc
            )
            return None

    async def save_model_settings(
        self, model_id: str, settings: ModelLoadingSettings
    ) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            data[model_id] = settings.to_dict()
            await asyncio.to_thread(self._write, data)
        logger.debug("[settings-store] Saved settings for %s", model_id)
