"""
Centralized logging configuration for the segment recorder.

This module provides consistent logging setup with:
- Multiple log levels (DEBUG, INFO, WARNING, ERROR, CRITICAL)
- Console and file output handlers
- Log rotation to prevent disk space issues
- Structured lifecycle events for segments and merges
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Any, Optional

# Lifecycle events emitted by the pipeline
SEGMENT_CREATED = "segment_created"
SEGMENT_FINALIZED = "segment_finalized"
SEGMENT_FAILED = "segment_failed"
MERGE_STARTED = "merge_started"
MERGE_COMPLETED = "merge_completed"
MERGE_FAILED = "merge_failed"


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    log_file: str = "segment_recorder.log",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    console_output: bool = True
) -> None:
    """
    Configure application-wide logging with console and file handlers.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for log files (default: ./logs)
        log_file: Name of the log file
        max_bytes: Maximum size of each log file before rotation
        backup_count: Number of backup log files to keep
        console_output: Whether to output logs to console
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    log_path = Path(log_dir) if log_dir else Path("logs")
    log_path.mkdir(parents=True, exist_ok=True)
    full_log_file = log_path / log_file

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_formatter = logging.Formatter(
        fmt='%(levelname)s - %(name)s - %(message)s'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    file_handler = logging.handlers.RotatingFileHandler(
        filename=str(full_log_file),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8'
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(detailed_formatter)
    root_logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(console_formatter)
        root_logger.addHandler(console_handler)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized: level={log_level}, file={full_log_file}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the specified name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **fields: Any
) -> None:
    """
    Emit a structured lifecycle event.

    The message stays human readable (``[segment_created] session=abc ...``)
    while the event name and fields ride along on the record for handlers
    that want them.

    Args:
        logger: Logger to emit on
        event: Event name, one of the module level event constants
        level: Logging level for the record
        **fields: Key/value context for the event
    """
    rendered = " ".join(f"{key}={value}" for key, value in fields.items())
    logger.log(
        level,
        f"[{event}] {rendered}".rstrip(),
        extra={'event': event, 'event_fields': dict(fields)}
    )
