"""Logging utilities for latchgrid."""
import logging
import sys
import os
import threading
from typing import Optional


# Environment variable consulted when no explicit level is given
LOG_LEVEL_ENV = "LATCHGRID_LOG_LEVEL"

# Handler attachment must happen once per logger, even if two threads race
_logger_init_lock = threading.Lock()


class GridFormatter(logging.Formatter):
    """Compact single-line formatter.

    Format: [{level[0]} {time} {module_basename[:9]}] {message}
    Example: [I 14:23:45.123 grid     ] Attached to m0000001 at 127.0.0.1:14656
    """

    def format(self, record):
        # Get first character of level name
        level_char = record.levelname[0]

        # Dotted logger names collapse to their last component
        module_name = record.name.split('.')[-1]
        # Truncate to 9 chars and right-pad
        module_padded = module_name[:9].ljust(9)

        # Format timestamp with milliseconds
        timestamp = self.formatTime(record, "%H:%M:%S")
        msecs = f"{record.msecs:03.0f}"

        # Build the log line
        line = f"[{level_char} {timestamp}.{msecs} {module_padded}] {record.getMessage()}"

        # Tracebacks go on the following lines
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def resolve_level(level: Optional[str] = None) -> int:
    """Map a level name to a logging constant.

    Falls back to the LATCHGRID_LOG_LEVEL env var, then INFO. Unknown
    names resolve to INFO.
    """
    # Parameter > env var > INFO default
    if level is None:
        level = os.getenv(LOG_LEVEL_ENV, "INFO")
    return getattr(logging, str(level).upper(), logging.INFO)


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Get logger for a latchgrid component.

    Args:
        name: Component name (usually __name__)
        level: Optional level (DEBUG/INFO/WARNING/ERROR)
               Falls back to LATCHGRID_LOG_LEVEL env var, then INFO

    Returns:
        Configured logger instance

    Example:
        >>> from latchgrid.log import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("Discovery request sent")
        [I 14:23:45.123 discovery] Discovery request sent
    """
    logger = logging.getLogger(name)
    logger.setLevel(resolve_level(level))

    # Add handler if not already configured (thread-safe)
    with _logger_init_lock:
        if not logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(GridFormatter())
            logger.addHandler(handler)

    return logger


def set_level(level: str) -> None:
    """Apply a level to every latchgrid logger created so far."""
    resolved = resolve_level(level)

    # loggerDict also holds PlaceHolder entries for dotted parents; skip those
    for name, logger in list(logging.Logger.manager.loggerDict.items()):
        if isinstance(logger, logging.Logger) and name.startswith("latchgrid"):
            logger.setLevel(resolved)
