from __future__ import annotations

import os
import tempfile
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Callable, Union, get_args

import tomllib

from .config import LocalLlmConfig

CONFIG_FILE_ENV = "MINDSTRIKE_LLM_CONFIG_FILE"
ENV_PREFIX = "MINDSTRIKE_LLM_"
DEFAULT_CONFIG_PATH = Path("configs/local_llm.toml")

_SECTION_MAP: dict[str, list[str]] = {
    "paths": ["models_dir", "settings_dir", "log_dir", "create_models_dir"],
    "logging": ["log_level"],
    "catalog": [
        "catalog_base_url",
        "catalog_limit",
        "catalog_cache_ttl_s",
        "catalog_max_retries",
        "huggingface_token",
        "http_timeout_s",
    ],
    "downloads": ["download_chunk_bytes", "download_progress_interval_s"],
    "caches": ["context_cache_ttl_s", "hardware_cache_ttl_s"],
    "loading": ["exclusive_models", "default_system_prompt"],
    "api": ["api_host", "api_port"],
}


def _field_types() -> dict[str, Any]:
    # `from __future__ import annotations` leaves the annotations as strings.
    import typing

    hints = typing.get_type_hints(LocalLlmConfig)
    return {f.name: hints.get(f.name, str) for f in fields(LocalLlmConfig)}


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return int(str(value).strip())


def _coerce_float(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    return float(str(value).strip())


def _coerce_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


_CASTERS: dict[Any, Callable[[Any], Any]] = {
    bool: _coerce_bool,
    int: _coerce_int,
    float: _coerce_float,
    str: _coerce_str,
}


def _coerce_value(field_type: Any, value: Any) -> Any:
    origin = getattr(field_type, "__origin__", None)
    if origin is None:
        caster = _CASTERS.get(field_type)
        return caster(value) if caster else value

    if origin is Union:
        args = [arg for arg in get_args(field_type) if arg is not type(None)]
        if value in ("", None):
            return None
        if len(args) == 1 and args[0] in _CASTERS:
            return _CASTERS[args[0]](value)
    return value


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    out: dict[str, Any] = {}
    for section, keys in _SECTION_MAP.items():
        section_values = data.get(section, {})
        if not isinstance(section_values, dict):
            continue
        for key in keys:
            if key in section_values:
                out[key] = section_values[key]
    return out


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Apply ``MINDSTRIKE_LLM_<FIELD>`` overrides; unparsable values are ignored."""

    field_types = _field_types()
    for key in list(config):
        raw = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
        if raw is None:
            continue
        try:
            config[key] = _coerce_value(field_types[key], raw)
        except (TypeError, ValueError):
            continue
    return config


def _default_config_dict() -> dict[str, Any]:
    data = asdict(LocalLlmConfig())
    data.pop("config_file_path", None)
    return data


def _normalize(config: dict[str, Any]) -> dict[str, Any]:
    field_types = _field_types()
    normalized = {}
    for key, default_value in _default_config_dict().items():
        value = config.get(key, default_value)
        try:
            normalized[key] = _coerce_value(field_types.get(key), value)
        except (TypeError, ValueError):
            normalized[key] = default_value
    return normalized


def config_file_path() -> Path:
    return Path(os.environ.get(CONFIG_FILE_ENV, DEFAULT_CONFIG_PATH)).expanduser()


def load_local_llm_config(path: Path | None = None) -> LocalLlmConfig:
    """Defaults, then the TOML file (if present), then environment overrides."""

    candidate = Path(path).expanduser() if path else config_file_path()
    normalized = _normalize(_read_config_file(candidate))
    normalized = _apply_env_overrides(normalized)
    cfg = LocalLlmConfig(**normalized)
    cfg.config_file_path = str(candidate)
    return cfg


def _format_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        inner = ", ".join(_format_value(item) for item in value)
        return f"[{inner}]"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if value is None:
        return '""'
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config(config: LocalLlmConfig, path: Path | None = None) -> Path:
    path = Path(path).expanduser() if path else config_file_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    config_dict = asdict(config)
    lines: list[str] = [
        "# MindStrike local model configuration.",
        "# Generated automatically. Edit values as needed.",
    ]
    for section, keys in _SECTION_MAP.items():
        lines.append("")
        lines.append(f"[{section}]")
        for key in keys:
            lines.append(f"{key} = {_format_value(config_dict[key])}")

    tmp_fd, tmp_path = tempfile.mkstemp(
        prefix="local_llm_config_", suffix=".toml", dir=str(path.parent)
    )
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write("\n".join(lines) + "\n")
        Path(tmp_path).replace(path)
    finally:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
    return path


def list_env_overrides() -> dict[str, str]:
    return {
        key: value for key, value in os.environ.items() if key.startswith(ENV_PREFIX)
    }
