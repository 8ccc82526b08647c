"""Utility modules for EmbedTV"""

from .log_buffer import LogBuffer, get_log_buffer, init_log_buffer
from .logging_setup import log_exception, parse_size, setup_logging

__all__ = [
    "LogBuffer",
    "get_log_buffer",
    "init_log_buffer",
    "log_exception",
    "parse_size",
    "setup_logging",
]
