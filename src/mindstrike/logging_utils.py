"""Centralised logging utilities for MindStrike services."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

__all__ = ["configure_logging", "resolve_level"]

_MANAGED_HANDLER_FLAG = "_mindstrike_managed_handler"
_DEFAULT_MAX_BYTES = 10_000_000


def _default_log_directory() -> Path:
    """Return the directory log files go to unless one is passed explicitly."""

    env_override = os.environ.get("MINDSTRIKE_LOG_DIR")
    if env_override:
        return Path(env_override).expanduser()
    return Path("~/.mindstrike/logs").expanduser()


def resolve_level(level: Union[int, str, None]) -> int:
    """Turn ``"debug"``/``"INFO"``/``20`` style values into a logging level.

    ``MINDSTRIKE_LOG_LEVEL`` wins over the argument when set.
    """

    env_level = os.environ.get("MINDSTRIKE_LOG_LEVEL")
    if env_level:
        level = env_level
    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _remove_managed_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, _MANAGED_HANDLER_FLAG, False):
            logger.removeHandler(handler)
            handler.close()


def configure_logging(
    log_name: str,
    *,
    level: Union[int, str, None] = logging.INFO,
    log_dir: Optional[Path] = None,
    include_console: bool = True,
    max_bytes: int = _DEFAULT_MAX_BYTES,
) -> Path:
    """Route root logging to ``<log_dir>/<log_name>.log`` (rotating) and stderr.

    Calling this again replaces the handlers installed by the previous call, so
    the CLI and the API server can both configure logging in one process.
    """

    target_directory = (
        Path(log_dir).expanduser() if log_dir else _default_log_directory()
    )
    target_directory.mkdir(parents=True, exist_ok=True)
    log_path = target_directory / f"{log_name}.log"
    resolved = resolve_level(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(resolved)
    _remove_managed_handlers(root_logger)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=3, encoding="utf-8"
    )
    file_handler.setLevel(resolved)
    file_handler.setFormatter(formatter)
    setattr(file_handler, _MANAGED_HANDLER_FLAG, True)
    root_logger.addHandler(file_handler)

    if include_console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(resolved)
        console_handler.setFormatter(formatter)
        setattr(console_handler, _MANAGED_HANDLER_FLAG, True)
        root_logger.addHandler(console_handler)

    # httpx logs every request at INFO; keep download/catalog chatter out.
    logging.getLogger("httpx").setLevel(max(resolved, logging.WARNING))
    logging.captureWarnings(True)

    return log_path
