"""
QueueSync - Logging Configuration

Configures logging to stdout and an append-mode log file.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, TextIO

LOGGER_NAME = "queuesync"


def setup_logging(
    name: str = LOGGER_NAME,
    log_file: Optional[str] = None,
    level: str = "INFO",
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """
    Configure logging to a console stream and (optionally) a file.

    Args:
        name: Logger name (child loggers like "queuesync.cleanup" propagate here)
        log_file: Full path to log file, or None for stdout only
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        stream: Console stream, stdout if None

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Prevent duplicate handlers on repeated calls
    if logger.handlers:
        return logger

    # Format: timestamp [LEVEL] message
    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)  # Capture everything in file
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    stdout_handler = logging.StreamHandler(stream or sys.stdout)
    stdout_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    stdout_handler.setFormatter(formatter)
    logger.addHandler(stdout_handler)

    return logger


def get_job_logger(log_file: Optional[str] = None, level: str = "INFO") -> logging.Logger:
    """Get logger configured for the scheduled jobs."""
    return setup_logging(LOGGER_NAME, log_file, level)
