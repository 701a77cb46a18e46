"""
Centralized logging configuration.

Console output goes to stdout with a severity prefix the operator can grep
for::

    [INFO] Building kernel (this will take a while)...
    [WARN] Build failed due to submodule issue (attempt 3/20)...
    [ERROR] Build failed after 20 retries. Check oasis-linux/build.log

Environment Variables:
    OASISBUILD_LOG_LEVEL - Set log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    NO_COLOR             - Disable ANSI colours on the console
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional

LEVEL_LABELS = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "ERROR",
}

LEVEL_COLORS = {
    logging.INFO: "\033[0;32m",
    logging.WARNING: "\033[1;33m",
    logging.ERROR: "\033[0;31m",
    logging.CRITICAL: "\033[0;31m",
}
RESET = "\033[0m"


class SeverityFormatter(logging.Formatter):
    """Formats records as ``[LEVEL] message`` with optional colour."""

    def __init__(self, use_color: bool = False):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        label = LEVEL_LABELS.get(record.levelno, record.levelname)
        if self.use_color and record.levelno in LEVEL_COLORS:
            label = f"{LEVEL_COLORS[record.levelno]}[{label}]{RESET}"
        else:
            label = f"[{label}]"
        message = f"{label} {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def _stream_supports_color(stream) -> bool:
    if "NO_COLOR" in os.environ:
        return False
    return hasattr(stream, "isatty") and stream.isatty()


def configure_logging(
    log_level: Optional[str] = None,
    log_file: Optional[Path] = None,
    stream=None,
) -> logging.Logger:
    """
    Configure logging for the ``oasisbuild`` logger tree.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file receiving full DEBUG output with timestamps
        stream: Console stream (defaults to sys.stdout)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger("oasisbuild")

    # Clear existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    if log_level is None:
        log_level = os.environ.get("OASISBUILD_LOG_LEVEL", "INFO")
    level = getattr(logging, log_level.upper(), logging.INFO)
    logger.setLevel(min(level, logging.DEBUG) if log_file else level)

    if stream is None:
        stream = sys.stdout
    console_handler = logging.StreamHandler(stream)
    console_handler.setLevel(level)
    console_handler.setFormatter(SeverityFormatter(use_color=_stream_supports_color(stream)))
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)

    return logger
