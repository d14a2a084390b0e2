"""
Console logging for the Blockflow services.

API, worker and engine all log to stdout with colored level names.
Values passed through ``extra=`` (run ids, node ids, app ids) are appended to
the line so they survive plain-text log collection.

Usage:
    from shared.logger import get_logger

    logger = get_logger(__name__)
    logger.info("Run finished", extra={"run_id": run_id})
"""

import logging
import sys

# Global cache of loggers
_loggers = {}

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name and appends ``extra`` fields."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'
    }

    def format(self, record):
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.COLORS['RESET']}"

        line = super().format(record)
        record.levelname = levelname

        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if extras:
            rendered = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
            line = f"{line} | {rendered}"
        return line


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Get a logger that writes colored, structured lines to stdout.

    Args:
        name: Logger name (typically __name__)
        level: Logging level (default: INFO)

    Returns:
        Configured logger instance
    """
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        ColoredFormatter(
            fmt='%(asctime)s | %(name)s | %(levelname)s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
    )
    logger.addHandler(console_handler)

    _loggers[name] = logger
    return logger
