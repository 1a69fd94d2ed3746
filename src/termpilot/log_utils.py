"""Logging setup and structured event helpers.

Records go to a rotating file, optionally mirrored to stderr, and never to
stdout: stdout is the terminal the agent draws into. Every setting comes from
``TERMPILOT_LOG_*`` environment variables.
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, TypeVar

from termpilot.paths import log_dir

T = TypeVar("T")

DEFAULT_LOG_FILE = "termpilot.log"
DEFAULT_LOG_MAX_BYTES = 5_000_000
DEFAULT_LOG_BACKUPS = 3
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Chatty transport libraries stay quiet unless they have a problem.
QUIET_LOGGERS = ("httpx", "httpcore")

_context_fields: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "termpilot_log_context", default={}
)


def _level(raw: str) -> int:
    if raw.isdigit():
        return int(raw)
    level = logging.getLevelNamesMapping().get(raw.upper())
    if level is None:
        raise ValueError(raw)
    return level


def _flag(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _setting(name: str, default: T, parse: Callable[[str], T]) -> T:
    """Read ``TERMPILOT_LOG_<name>``; unset, empty or unparsable values give ``default``."""
    raw = os.getenv(f"TERMPILOT_LOG_{name}")
    if not raw:
        return default
    try:
        return parse(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class LogConfig:
    log_file: Path
    level: int = logging.INFO
    stderr: bool = False
    json: bool = False
    log_chunks: bool = False
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUPS
    logger_levels: Dict[str, int] = field(default_factory=dict)

    def formatter(self) -> logging.Formatter:
        return JsonFormatter() if self.json else ContextFormatter(TEXT_FORMAT)


_active: LogConfig | None = None


def build_log_config(*, log_file_name: str = DEFAULT_LOG_FILE, default_level: int = logging.INFO) -> LogConfig:
    directory = Path(_setting("DIR", "", str) or log_dir())
    directory.mkdir(parents=True, exist_ok=True)
    return LogConfig(
        log_file=directory / log_file_name,
        level=_setting("LEVEL", default_level, _level),
        stderr=_setting("STDERR", False, _flag),
        json=_setting("JSON", False, _flag),
        log_chunks=_setting("CHUNKS", False, _flag),
        max_bytes=_setting("MAX_BYTES", DEFAULT_LOG_MAX_BYTES, int),
        backup_count=_setting("BACKUPS", DEFAULT_LOG_BACKUPS, int),
        logger_levels={name: logging.WARNING for name in QUIET_LOGGERS},
    )


def configure_logging(config: LogConfig) -> None:
    """Replace the root logger's handlers with ones built from ``config``."""
    global _active
    _active = config

    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            config.log_file,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
    ]
    if config.stderr:
        handlers.append(logging.StreamHandler())

    formatter = config.formatter()
    context_filter = ContextFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(config.level)

    for name, level in config.logger_levels.items():
        logging.getLogger(name).setLevel(level)


def log_chunks_enabled() -> bool:
    """True when every raw SSE chunk should be logged."""
    return _active is not None and _active.log_chunks


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Tag every record logged inside the block with ``fields`` (None values skipped)."""
    merged = dict(_context_fields.get())
    merged.update((key, value) for key, value in fields.items() if value is not None)
    token = _context_fields.set(merged)
    try:
        yield
    finally:
        _context_fields.reset(token)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    logger.log(level, event, extra={"event_fields": fields})


def _record_fields(record: logging.LogRecord) -> tuple[Dict[str, Any], Dict[str, Any]]:
    return getattr(record, "context_fields", {}), getattr(record, "event_fields", {})


def _render(value: Any) -> str:
    if isinstance(value, str):
        plain = value and not any(ch.isspace() or ch in '="' for ch in value)
        return value if plain else json.dumps(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=True, separators=(",", ":"))
    return str(value)


def _pairs(fields: Dict[str, Any]) -> Iterator[str]:
    for key in sorted(fields):
        if fields[key] is not None:
            yield f"{key}={_render(fields[key])}"


class ContextFilter(logging.Filter):
    """Stamps the active ``log_context`` fields onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging API name
        record.context_fields = dict(_context_fields.get())
        if not hasattr(record, "event_fields"):
            record.event_fields = {}
        return True


class ContextFormatter(logging.Formatter):
    """``<base line> ctx=... field=...``: context pairs first, then event fields, each sorted."""

    def format(self, record: logging.LogRecord) -> str:
        context, fields = _record_fields(record)
        return " ".join([super().format(record), *_pairs(context), *_pairs(fields)])


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        context, fields = _record_fields(record)
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if context:
            payload["context"] = context
        if fields:
            payload["fields"] = fields
        return json.dumps(payload, ensure_ascii=True, default=str)
