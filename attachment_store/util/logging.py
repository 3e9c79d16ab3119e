"""Logging configuration."""

from __future__ import annotations

import logging
from pathlib import Path


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str, log_file: str | None = None) -> None:
    """Send warnings to stderr and, if ``log_file`` is set, everything at ``level`` to the file."""
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG)

    formatter = logging.Formatter(LOG_FORMAT)
    configured = getattr(logging, level.upper(), logging.INFO)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(max(configured, logging.WARNING))
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(configured)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # SQLAlchemy echoes every statement at INFO.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
