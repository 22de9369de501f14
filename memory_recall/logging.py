"""Structured logging setup for memory-recall."""

import logging
from pathlib import Path
import sys
from typing import TextIO

import structlog

from memory_recall.config import Config, get_config

# Libraries that log every request at INFO through stdlib logging.
_NOISY_LIBRARIES = ("httpx", "httpcore")

_log_file: TextIO | None = None


def _open_log_stream(config: Config, stream: TextIO | None) -> TextIO:
    global _log_file
    if stream is not None:
        return stream
    if _log_file is not None:
        _log_file.close()
        _log_file = None
    if config.logging.file:
        path = Path(config.logging.file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        _log_file = open(path, "a", encoding="utf-8")
        return _log_file
    return sys.stderr


def configure_logging(config: Config | None = None, *, stream: TextIO | None = None) -> None:
    """Configure structlog from ``config.logging``.

    Events go to ``stream`` when given, else to ``logging.file`` when set,
    else to stderr. ``format`` selects the console or JSON renderer.
    """
    config = config or get_config()
    log_level = getattr(logging, config.logging.level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]
    if config.logging.format == "json":
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=_open_log_stream(config, stream)),
        cache_logger_on_first_use=True,
    )
    for name in _NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
