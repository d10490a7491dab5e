"""Logging utilities for the agent coordination core.

Wraps the standard library logger with a formatter that renders structured
context (``extra={"context": {...}}``) as ``key=value`` pairs and color-codes
the level tag so lifecycle noise and failures are easy to tell apart.
"""

import logging
import os
import sys
from enum import Enum
from typing import Any, Dict, Optional

from .config import Config

ROOT_LOGGER_NAME = "atlas_agents"


class Color(Enum):
    """ANSI color codes for terminal output."""

    BLUE = "\033[94m"      # Debug chatter (heartbeats, handler registration)
    GREEN = "\033[92m"     # Info (state changes, published events)
    YELLOW = "\033[93m"    # Warnings (no-op transitions, skipped subscribers)
    RED = "\033[91m"       # Errors
    CYAN = "\033[96m"      # Metadata (logger names, context)

    # Formatting
    BOLD = "\033[1m"
    RESET = "\033[0m"


LEVEL_COLORS: Dict[int, Color] = {
    logging.DEBUG: Color.BLUE,
    logging.INFO: Color.GREEN,
    logging.WARNING: Color.YELLOW,
    logging.ERROR: Color.RED,
    logging.CRITICAL: Color.RED,
}


def colored(text: str, color: Color, bold: bool = False) -> str:
    """Wrap text in ANSI color codes if colors are enabled.

    Args:
        text: Text to colorize
        color: Color to apply
        bold: Whether to make text bold

    Returns:
        Colorized text if ATLAS_NO_COLOR is not set, otherwise plain text
    """
    if os.getenv("ATLAS_NO_COLOR"):
        return text

    prefix = color.value
    if bold:
        prefix = Color.BOLD.value + prefix

    return f"{prefix}{text}{Color.RESET.value}"


def format_context(context: Optional[Dict[str, Any]]) -> str:
    """Render a context mapping as sorted ``key=value`` pairs."""
    if not context:
        return ""
    return " ".join(f"{key}={context[key]!r}" for key in sorted(context))


class StructuredFormatter(logging.Formatter):
    """Formatter producing ``timestamp [LEVEL] logger: message key=value ...``."""

    def __init__(self, use_color: bool = True):
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        level_tag = f"[{record.levelname}]"
        name = record.name
        if self.use_color:
            level_tag = colored(level_tag, LEVEL_COLORS.get(record.levelno, Color.CYAN), bold=record.levelno >= logging.ERROR)
            name = colored(name, Color.CYAN)

        line = f"{self.formatTime(record, self.datefmt)} {level_tag} {name}: {record.getMessage()}"
        context = format_context(getattr(record, "context", None))
        if context:
            line = f"{line} {context}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level: Optional[str] = None, stream=None) -> logging.Logger:
    """Install the structured handler on the package logger.

    Safe to call repeatedly: an existing handler installed by a previous call
    is reused and only the level is updated.

    Args:
        level: Level name; defaults to Config.LOG_LEVEL
        stream: Output stream; defaults to stdout

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO))

    for handler in logger.handlers:
        if getattr(handler, "_atlas_handler", False):
            return logger

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredFormatter(use_color=not os.getenv("ATLAS_NO_COLOR")))
    handler._atlas_handler = True
    logger.addHandler(handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a child of the package logger.

    Args:
        name: Logger name (usually __name__)
    """
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
