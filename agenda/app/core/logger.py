"""Logging setup.

Modules log through `logging.getLogger(__name__)`; `setup_logging` is called
once by process entry points to install the console and file handlers.
"""

from __future__ import annotations

import logging

from rich.logging import RichHandler

from agenda.app.core.constants import LOG_FILE, LOG_LEVEL_NAME

__all__ = ["setup_logging"]

_NOISY_LOGGERS = ("asyncpg", "alembic", "sqlalchemy.engine", "httpx", "httpcore")


def setup_logging(level: str | None = None, log_file: str | None = None) -> logging.Logger:
    """Configure root logging: rich console output plus an optional WARNING+ file log."""
    console_handler = RichHandler(
        rich_tracebacks=True,
        markup=False,
        show_time=True,
        show_level=True,
        show_path=False,
        log_time_format="%H:%M:%S",
    )
    handlers: list[logging.Handler] = [console_handler]

    path = log_file if log_file is not None else LOG_FILE
    if path:
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setLevel(logging.WARNING)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
        handlers.append(file_handler)

    resolved = getattr(logging, (level or LOG_LEVEL_NAME).upper(), logging.INFO)
    logging.basicConfig(level=resolved, format="%(message)s", handlers=handlers, force=True)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logging.getLogger("agenda")
