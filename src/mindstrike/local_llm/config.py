from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass
class LocalLlmConfig:
    models_dir: str = "~/.mindstrike/local-models"
    settings_dir: str = "~/.mindstrike/settings"
    log_dir: Optional[str] = None
    log_level: str = "INFO"
    create_models_dir: bool = True
    # Remote catalog (Hugging Face GGUF listing)
    catalog_base_url: str = "https://huggingface.co"
    catalog_limit: int = 100
    catalog_cache_ttl_s: int = 600
    catalog_max_retries: int = 3
    huggingface_token: Optional[str] = None
    http_timeout_s: float = 30.0
    # Downloads
    download_chunk_bytes: int = 1024 * 1024
    download_progress_interval_s: float = 1.0
    # Caches
    context_cache_ttl_s: int = 300
    hardware_cache_ttl_s: int = 10
    # Loading
    exclusive_models: bool = True
    default_system_prompt: Optional[str] = None
    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8765
    config_file_path: Optional[str] = None

    @property
    def models_path(self) -> Path:
        return Path(self.models_dir).expanduser()

    @property
    def settings_path(self) -> Path:
        return Path(self.settings_dir).expanduser()

    @classmethod
    def load(cls) -> "LocalLlmConfig":
        from .config_loader import load_local_llm_config

        return load_local_llm_config()
