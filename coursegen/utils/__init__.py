"""Shared helpers: structured logging with an in-memory buffer."""

from coursegen.utils.logging import AppLogger, LogLevel, configure_logging, get_log_buffer, get_logger

__all__ = ["AppLogger", "LogLevel", "configure_logging", "get_log_buffer", "get_logger"]
