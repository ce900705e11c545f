"""structlog setup: JSON lines to a daily-rotated file, mirrored to stderr."""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler
from typing import Any, TextIO

import structlog

LOG_FILE_NAME = "convkeeper.jsonl"

_SECRET_KEYS = frozenset({"api_key", "auth_token", "authorization", "x-api-key"})


def _redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in _SECRET_KEYS & event_dict.keys():
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


class _TeeWriter:
    """File-like sink that writes each rendered event to every stream."""

    def __init__(self, *streams: TextIO) -> None:
        self._streams = streams

    def write(self, message: str) -> None:
        for stream in self._streams:
            stream.write(message)
            stream.flush()

    def flush(self) -> None:
        for stream in self._streams:
            stream.flush()


def setup_logging(log_dir: str = "logs", log_level: str = "INFO", console: bool = True) -> None:
    """Route structlog events and stdlib records (aiohttp, httpx) to one log file.

    The CLI subcommands pass ``console=False`` so their stdout output stays
    readable; the server mirrors every event to stderr.
    """
    level = logging.getLevelName(log_level.upper())
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, LOG_FILE_NAME)

    handlers: list[logging.Handler] = [
        TimedRotatingFileHandler(log_path, when="midnight", backupCount=14, utc=True),
    ]
    if console:
        handlers.append(logging.StreamHandler())
    logging.basicConfig(level=level, handlers=handlers, force=True)

    streams: list[TextIO] = [open(log_path, "a")]  # noqa: SIM115
    if console:
        streams.append(sys.stderr)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.WriteLoggerFactory(file=_TeeWriter(*streams)),
        cache_logger_on_first_use=True,
    )
