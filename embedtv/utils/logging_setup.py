"""Logging setup for EmbedTV with console, rotating file and in-memory buffer output"""

import logging
import logging.handlers
import re
import sys
from pathlib import Path

from embedtv.utils.log_buffer import LogBuffer, get_log_buffer

# Chatty third-party loggers
_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "asyncio")


def parse_size(value: str | int) -> int:
    """
    Parse a human-readable size such as "10MB" into bytes.

    Plain integers are taken as bytes.
    """
    if isinstance(value, int):
        return value

    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*([KMG]?B?)\s*", value.upper())
    if not match:
        raise ValueError(f"Invalid size: {value!r}")

    number = float(match.group(1))
    unit = match.group(2).rstrip("B")
    multiplier = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3}[unit]
    return int(number * multiplier)


def setup_logging(
    log_level: str = "INFO",
    log_file_name: str | None = None,
    log_to_console: bool = True,
    log_to_file: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    log_format: str | None = None,
    log_buffer: LogBuffer | None = None,
) -> logging.Logger:
    """
    Set up logging for the EmbedTV application.

    This configures logging to write to:
    - Console (stdout)
    - File with rotation
    - The in-memory LogBuffer that backs /api/logs and the SSE log stream

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file_name: Path to log file (can be absolute or relative)
        log_to_console: Whether to log to console
        log_to_file: Whether to log to file
        max_bytes: Maximum size of log file before rotation
        backup_count: Number of backup files to keep
        log_format: Custom log format string
        log_buffer: Buffer handler to attach (defaults to the global buffer)

    Returns:
        Configured root logger
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear any existing handlers to avoid duplicates
    root_logger.handlers.clear()

    detailed_formatter = logging.Formatter(
        log_format or "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(levelname)s - %(message)s", datefmt="%H:%M:%S")
        )
        root_logger.addHandler(console_handler)

    log_file_path = None
    if log_to_file:
        log_file_path = Path(log_file_name or "logs/embedtv.log")
        log_file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(detailed_formatter)
        root_logger.addHandler(file_handler)

    buffer_handler = log_buffer or get_log_buffer()
    buffer_handler.setLevel(numeric_level)
    root_logger.addHandler(buffer_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    root_logger.info(f"EmbedTV logging initialized - Level: {log_level}")
    if log_file_path:
        root_logger.info(
            f"Log file: {log_file_path} "
            f"(max {max_bytes / (1024 * 1024):.1f} MB, {backup_count} backups)"
        )

    return root_logger


def log_exception(
    logger: logging.Logger, exception: Exception, message: str = "Exception occurred"
) -> None:
    """Log an exception with full traceback."""
    logger.error(f"{message}: {exception!s}", exc_info=True)
