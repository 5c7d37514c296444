from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional

from .context_calculator import ContextCalculator
from .downloader import ModelDownloader, ProgressCallback
from .errors import err_model_not_found
from .interfaces import HardwareProbe
from .inventory import ModelInventory
from .models import (
    CancellationToken,
    DownloadProgress,
    LocalModel,
    RemoteModelInfo,
)

logger = logging.getLogger("mindstrike.local_llm.discovery")


class ModelDiscovery:
    """Local inventory, remote catalog and downloads behind one lookup surface."""

    def __init__(
        self,
        inventory: ModelInventory,
        downloader: ModelDownloader,
        calculator: ContextCalculator,
        hardware: HardwareProbe,
    ):
        self.inventory = inventory
        self.downloader = downloader
        self.calculator = calculator
        self.hardware = hardware

    async def get_local_models(self) -> List[LocalModel]:
        snapshot = await self.hardware.get_hardware_snapshot()

        def resolve(model: LocalModel, requested: int) -> int:
            return self.calculator.calculate_safe_context_size(
                model, snapshot, requested
            )

        return await self.inventory.list_local_models(resolve)

    async def get_available_models(self) -> Dict[str, list]:
        local, remote = await asyncio.gather(
            self.get_local_models(), self.downloader.get_available_models()
        )
        return {"local": local, "remote": remote}

    async def search_models(self, query: str) -> Dict[str, list]:
        needle = (query or "").strip().lower()

        async def local_matches() -> List[LocalModel]:
            models = await self.get_local_models()
            if not needle:
                return models
            return [
                m
                for m in models
                if needle in m.display_name.lower() or needle in m.filename.lower()
            ]

        local, remote = await asyncio.gather(
            local_matches(), self.downloader.search_models(query)
        )
        return {"local": local, "remote": remote}

    async def find_model(self, id_or_name: str) -> Optional[LocalModel]:
        for model in await self.get_local_models():
            if id_or_name in (model.id, model.display_name, model.filename):
                return model
        return None

    async def require_model(self, id_or_name: str) -> LocalModel:
        model = await self.find_model(id_or_name)
        if model is None:
            raise err_model_not_found(id_or_name)
        return model

    async def download_model(
        self,
        info: RemoteModelInfo,
        on_progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> Path:
        destination = self.inventory.resolve_path(info.filename)
        return await self.downloader.download_model(
            info, destination, on_progress=on_progress, cancel=cancel
        )

    def cancel_download(self, filename: str) -> bool:
        return self.downloader.cancel_download(filename)

    def get_download_progress(self, filename: str) -> Optional[DownloadProgress]:
        return self.downloader.get_download_progress(filename)

    async def delete_model(self, model_id: str) -> LocalModel:
        model = await self.find_model(model_id)
        if model is None:
            raise err_model_not_found(model_id)
        await self.inventory.delete_file(model.path)
        logger.info("[discovery] Deleted model %s (%s)", model.filename, model.id)
        return model
