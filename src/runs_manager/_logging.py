"""Centralized logging configuration for runs_manager."""

from __future__ import annotations

import logging
import os
from pathlib import Path

_STREAM_HANDLER_ID = "runs_stream"
_FILE_HANDLER_ID = "runs_file"
_FORMAT = "ts=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)s"


def _resolve_level(level: int | str | None) -> int:
    if isinstance(level, int):
        return level
    raw = level if level is not None else os.environ.get("RUNS_LOG_LEVEL", "")
    name = str(raw).strip().upper()
    resolved = getattr(logging, name, None) if name else None
    if not isinstance(resolved, int):
        return logging.WARNING
    return resolved


def _mark_handler(handler: logging.Handler, handler_id: str) -> None:
    setattr(handler, "_runs_handler_id", handler_id)


def _get_handler(root: logging.Logger, handler_id: str) -> logging.Handler | None:
    for handler in root.handlers:
        if getattr(handler, "_runs_handler_id", None) == handler_id:
            return handler
    return None


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the ``runs_manager`` namespace."""
    return logging.getLogger(f"runs_manager.{name}")


def setup_logging(*, level: int | str | None = None) -> None:
    """Configure the root ``runs_manager`` logger.

    The level comes from *level* (an int or a level name such as ``"INFO"``)
    or the ``RUNS_LOG_LEVEL`` environment variable, defaulting to WARNING.
    If ``RUNS_LOG_FILE`` is set, a file handler is attached and records at
    least INFO-level lifecycle events.
    """
    stream_level = _resolve_level(level)

    root = logging.getLogger("runs_manager")
    stream_handler = _get_handler(root, _STREAM_HANDLER_ID)
    if stream_handler is None:
        stream_handler = logging.StreamHandler()
        _mark_handler(stream_handler, _STREAM_HANDLER_ID)
        root.addHandler(stream_handler)
    stream_handler.setFormatter(logging.Formatter(_FORMAT))
    stream_handler.setLevel(stream_level)

    file_path_raw = os.environ.get("RUNS_LOG_FILE", "").strip()
    file_level: int | None = None
    file_handler = _get_handler(root, _FILE_HANDLER_ID)
    if file_path_raw:
        file_path = Path(file_path_raw).expanduser().resolve()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        if (
            file_handler is None
            or not isinstance(file_handler, logging.FileHandler)
            or Path(file_handler.baseFilename).resolve() != file_path
        ):
            if file_handler is not None:
                root.removeHandler(file_handler)
                file_handler.close()
            file_handler = logging.FileHandler(file_path, encoding="utf-8")
            _mark_handler(file_handler, _FILE_HANDLER_ID)
            root.addHandler(file_handler)
        file_level = min(stream_level, logging.INFO)
        file_handler.setFormatter(logging.Formatter(_FORMAT))
        file_handler.setLevel(file_level)
    elif file_handler is not None:
        root.removeHandler(file_handler)
        file_handler.close()

    effective_level = stream_level
    if file_level is not None:
        effective_level = min(effective_level, file_level)
    root.setLevel(effective_level)
