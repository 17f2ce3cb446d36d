"""
Logging Configuration
~~~~~~~~~~~~~~~~~~~~~

Human-readable text logging for interactive deploys, or JSON lines for
log shippers. Only the ``swapguard`` logger is configured; library code
never touches handlers.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

__all__ = ["JSONFormatter", "configure_logging"]

TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def configure_logging(
    level: str = "INFO",
    fmt: Literal["text", "json"] = "text",
    log_file: Path | None = None,
) -> logging.Logger:
    """
    Configure the ``swapguard`` logger.

    Args:
        level: Level name, e.g. ``"DEBUG"``.
        fmt: ``"text"`` or ``"json"``.
        log_file: Optional file receiving the same records.

    Returns:
        The configured logger.
    """
    logger = logging.getLogger("swapguard")
    logger.setLevel(level.upper())
    logger.handlers.clear()

    formatter: logging.Formatter
    if fmt == "json":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
