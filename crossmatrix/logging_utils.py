from __future__ import annotations

import json
import logging
import os
import sys
import threading
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable

DEFAULT_RUNTIME_MAX_BYTES = 5_000_000
DEFAULT_RUNTIME_BACKUP_COUNT = 3
DEFAULT_RUNTIME_FORMAT = (
    "%(asctime)sZ [%(levelname)s] %(name)s:%(lineno)d | %(message)s"
)
DEFAULT_RUNTIME_DATEFMT = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS: tuple[str, ...] = (
    "asyncio",
    "aiohttp.access",
    "aiosqlite",
    "sqlalchemy.engine",
)

_HANDLER_SENTINEL = "_crossmatrix_stdout_handler"

_warn_once_lock = threading.Lock()
_warn_once_last_emit: dict[str, float] = {}


class _UTCFormatter(logging.Formatter):
    """Formatter that renders timestamps in UTC."""

    converter = time.gmtime


_LOG_RECORD_RESERVED = set(logging.LogRecord(None, 0, "", 0, "", (), None).__dict__.keys())


class JsonFormatter(logging.Formatter):
    """Structured logging formatter producing JSON payloads."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - short summary sufficient
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .replace(tzinfo=None)
            .isoformat(timespec="milliseconds")
            + "Z",
            "level": record.levelname,
            "logger": record.name,
            "line": record.lineno,
            "msg": record.getMessage(),
        }

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in payload or key.startswith("_") or key in _LOG_RECORD_RESERVED:
                continue
            payload[key] = value

        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)


def _parse_log_level(value: str | int | None) -> int:
    if not value:
        return logging.INFO
    if isinstance(value, int):
        return value
    level = value.strip().upper()
    if level.isdigit():
        return int(level)
    resolved = getattr(logging, level, logging.INFO)
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_stdout_logging(
    *,
    level: str | int | None = None,
    json_logs: bool | None = None,
    fmt: str | None = None,
    datefmt: str | None = None,
    propagate_off: Iterable[str] = _NOISY_LOGGERS,
) -> logging.StreamHandler:
    """Ensure a single ``StreamHandler`` to ``sys.stdout`` exists on the root logger.

    ``LOG_LEVEL`` and ``LOG_JSON`` are consulted when the matching argument is
    omitted.  Calling this repeatedly reconfigures the same handler.
    """

    resolved_level = _parse_log_level(level or os.getenv("LOG_LEVEL"))
    if json_logs is None:
        json_logs = (os.getenv("LOG_JSON") or "").strip().lower() in {"1", "true", "yes", "on"}

    root = logging.getLogger()
    root.setLevel(resolved_level)

    handler = getattr(root, _HANDLER_SENTINEL, None)
    if not isinstance(handler, logging.StreamHandler) or handler not in root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        root.addHandler(handler)
        setattr(root, _HANDLER_SENTINEL, handler)

    handler.setLevel(resolved_level)
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            _UTCFormatter(fmt or DEFAULT_RUNTIME_FORMAT, datefmt=datefmt or DEFAULT_RUNTIME_DATEFMT)
        )

    for name in propagate_off:
        logging.getLogger(name).setLevel(max(resolved_level, logging.WARNING))

    return handler


def add_file_logging(
    path: str | Path,
    *,
    level: str | int | None = None,
    max_bytes: int = DEFAULT_RUNTIME_MAX_BYTES,
    backup_count: int = DEFAULT_RUNTIME_BACKUP_COUNT,
) -> logging.Handler:
    """Attach a rotating file handler for ``path`` unless one already exists."""

    log_path = Path(path).resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    for handler in root.handlers:
        if getattr(handler, "baseFilename", None) == str(log_path):
            return handler
    handler = RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(_parse_log_level(level or os.getenv("LOG_LEVEL")))
    handler.setFormatter(_UTCFormatter(DEFAULT_RUNTIME_FORMAT, datefmt=DEFAULT_RUNTIME_DATEFMT))
    root.addHandler(handler)
    return handler


def warn_once_per(
    minutes: float,
    key: str,
    message: str,
    *args: Any,
    logger: logging.Logger | None = None,
    **kwargs: Any,
) -> bool:
    """Emit ``logger.warning`` for *message* at most once per *minutes* interval."""

    interval = max(0.0, minutes) * 60.0
    now = time.monotonic()

    with _warn_once_lock:
        last = _warn_once_last_emit.get(key)
        if last is not None and interval > 0 and now - last < interval:
            return False
        _warn_once_last_emit[key] = now

    target = logger or logging.getLogger()
    target.warning(message, *args, **kwargs)
    return True


def reset_warn_once_cache() -> None:
    """Clear cached emission timestamps for :func:`warn_once_per`."""

    with _warn_once_lock:
        _warn_once_last_emit.clear()
