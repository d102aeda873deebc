"""structlog setup: coloured console lines, or JSON lines on stderr or in a file."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

_SHARED_PROCESSORS: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.StackInfoRenderer(),
    structlog.dev.set_exc_info,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]


def setup_logging(level: str = "INFO", fmt: str = "console", log_file: Optional[str] = None) -> None:
    """Configure structlog once for the whole process.

    A *log_file* always gets JSON lines appended, whatever *fmt* says, so the
    file stays machine-readable for the audit trail.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger_factory = structlog.WriteLoggerFactory(file=path.open("a", encoding="utf-8"))
        fmt = "json"
    else:
        logger_factory = structlog.PrintLoggerFactory(file=sys.stderr)

    if fmt == "json":
        tail = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer(ensure_ascii=False)]
    else:
        tail = [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=[*_SHARED_PROCESSORS, *tail],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=logger_factory,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
