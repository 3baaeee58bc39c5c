"""Shared logging configuration and logger factory for photo_sorter."""

from __future__ import annotations

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_LOG_ROOT = _PROJECT_ROOT / "log"
_LOG_FILE_NAME = "photo_sorter.log"
_STANDARD_KEYS = frozenset(logging.makeLogRecord({}).__dict__.keys()) | {"stack_info", "asctime", "message"}


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Return the attributes attached to a record through ``extra=``."""

    return {key: value for key, value in record.__dict__.items() if key not in _STANDARD_KEYS}


def _json_safe(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool, type(None))):
        return value
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    return str(value)


class _JsonLineFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update(_extra_fields(record))
        return json.dumps(_json_safe(payload), ensure_ascii=False, sort_keys=True)


class _KeyValueConsoleFormatter(logging.Formatter):
    """Console formatter that appends ``extra`` fields as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = _extra_fields(record)
        if not extras:
            return base
        rendered = " ".join(f"{key}={value!r}" for key, value in sorted(extras.items()))
        return f"{base} | {rendered}"


def _resolve_level() -> int:
    raw = os.getenv("PHOTO_SORTER_LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO


def _configure_root_logger() -> None:
    """Attach console and rotating JSONL file handlers to the root logger once."""

    root = logging.getLogger()
    if root.handlers:
        return

    root.setLevel(_resolve_level())

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(_KeyValueConsoleFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(console_handler)

    log_root = Path(os.getenv("PHOTO_SORTER_LOG_DIR") or _DEFAULT_LOG_ROOT)
    try:
        log_root.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_root / _LOG_FILE_NAME,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
    except OSError as exc:
        # Console logging keeps working when the log directory is read-only.
        root.warning("file_logging_disabled", extra={"log_root": str(log_root), "error": str(exc)})
        return

    file_handler.setFormatter(_JsonLineFormatter())
    root.addHandler(file_handler)


class _MergingLoggerAdapter(logging.LoggerAdapter):
    """Adapter that merges call-site ``extra`` with the bound base mapping."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs


def get_logger(name: str, extra: Dict[str, Any] | None = None) -> logging.LoggerAdapter:
    """Return a structured logger adapter for ``name``.

    The first call configures the root handlers. ``extra`` is a base mapping
    attached to every record emitted through the returned adapter.
    """

    _configure_root_logger()
    return _MergingLoggerAdapter(logging.getLogger(name), extra or {})


__all__ = ["get_logger"]
