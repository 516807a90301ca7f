"""Structured logging setup for Artive."""

import os
from pathlib import Path
from typing import Any

import structlog

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def configure_logging(log_dir: Path | None = None) -> None:
    """
    Send structlog JSON lines to <log_dir>/artive.log.

    ``log_dir`` defaults to ~/.cache/artive/logs. ARTIVE_LOG_LEVEL picks the
    threshold (DEBUG shows raw stream lines and every extractor attempt);
    unknown values fall back to INFO. Task runs bind ``task_id`` through
    contextvars, so every line of a run carries it.
    """
    log_dir = log_dir or Path.home() / ".cache" / "artive" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    level = os.environ.get("ARTIVE_LOG_LEVEL", "INFO").upper()
    if level not in _LEVELS:
        level = "INFO"

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            # Chinese titles and errors stay readable in the file
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.WriteLoggerFactory(
            file=open(log_dir / "artive.log", "a", encoding="utf-8"),
        ),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    """Module logger; log with an event name plus keyword context."""
    return structlog.get_logger(name)
