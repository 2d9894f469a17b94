"""
Logger Utility
==============

Context-aware logging for the orchestration pipeline.

Every component creates its own Logger with a context name ("Router",
"ToolExecutor", ...). A pipeline run derives child loggers from it so each
line carries the request it belongs to:

    [2025-10-19T10:30:00] [INFO] [Pipeline:req-8f2a] Stage main_processing finished

Two output formats are supported, selected with LOG_FORMAT:
- text: colour-coded lines for terminals (default)
- json: one JSON object per line for log shippers

Usage:
    from orchestrator.utils.logger import Logger

    logger = Logger("Router")
    logger.info("Resolved agent", {"agent_id": "a-1", "provider": "openai"})

    run_logger = logger.child("req-8f2a")
    run_logger.debug("Calling provider")
"""

import json
import os
import sys
from datetime import datetime
from enum import IntEnum
from typing import Any


class LogLevel(IntEnum):
    """
    Log levels with numeric values for comparison.
    Higher values = more severe = always shown.
    """
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40


class Colors:
    """ANSI escape codes for colored terminal output."""
    RESET = "\033[0m"
    DEBUG = "\033[36m"    # Cyan
    INFO = "\033[32m"     # Green
    WARNING = "\033[33m"  # Yellow
    ERROR = "\033[31m"    # Red
    DIM = "\033[2m"       # Dimmed text


_LEVEL_NAMES = {
    "DEBUG": LogLevel.DEBUG,
    "INFO": LogLevel.INFO,
    "WARNING": LogLevel.WARNING,
    "WARN": LogLevel.WARNING,
    "ERROR": LogLevel.ERROR,
}


def _get_log_level_from_env() -> LogLevel:
    """
    Parse the LOG_LEVEL environment variable.

    Returns:
        LogLevel: The configured log level, defaults to INFO
    """
    level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    return _LEVEL_NAMES.get(level_str, LogLevel.INFO)


def _json_output_enabled() -> bool:
    return os.getenv("LOG_FORMAT", "text").lower() == "json"


class Logger:
    """
    A context-aware logger with colored or JSON output.

    The logger supports:
    - Multiple log levels (debug, info, warning, error)
    - Context prefixes for tracing a request through the pipeline
    - Optional structured data
    - Child loggers for nested contexts

    Example:
        logger = Logger("Pipeline")
        run = logger.child("req-123")
        run.info("Stage finished", {"stage": "enrichment", "ms": 41})
    """

    def __init__(self, context: str = ""):
        """
        Initialize a logger with an optional context.

        Args:
            context: A string prefix for all log messages (e.g., "Router", "Memory")
        """
        self.context = context
        self._min_level = _get_log_level_from_env()
        self._json = _json_output_enabled()

    def child(self, child_context: str) -> "Logger":
        """
        Create a child logger with additional context.

        Args:
            child_context: Additional context to append

        Returns:
            A new Logger with combined context
        """
        new_context = f"{self.context}:{child_context}" if self.context else child_context
        return Logger(new_context)

    def is_enabled_for(self, level: LogLevel) -> bool:
        """Check whether messages at `level` would be emitted."""
        return level >= self._min_level

    def _format_text(self, level: str, message: str, color: str) -> str:
        """
        Format a log message with timestamp, level, and context.

        Output format: [TIMESTAMP] [LEVEL] [context] message
        """
        timestamp = datetime.now().isoformat(timespec="seconds")
        context_str = f"[{self.context}] " if self.context else ""

        return (
            f"{Colors.DIM}[{timestamp}]{Colors.RESET} "
            f"{color}[{level}]{Colors.RESET} "
            f"{context_str}{message}"
        )

    def _format_json(
        self,
        level: str,
        message: str,
        data: dict[str, Any] | None
    ) -> str:
        record: dict[str, Any] = {
            "ts": datetime.now().isoformat(timespec="milliseconds"),
            "level": level,
            "context": self.context,
            "message": message,
        }
        if data:
            record["data"] = data
        return json.dumps(record, default=str)

    def _log(
        self,
        level: LogLevel,
        level_name: str,
        color: str,
        message: str,
        data: dict[str, Any] | None = None
    ) -> None:
        """
        Internal logging method.

        Args:
            level: The log level for filtering
            level_name: Display name of the level
            color: ANSI color code for the level
            message: The log message
            data: Optional structured data to include
        """
        if level < self._min_level:
            return

        stream = sys.stderr if level >= LogLevel.ERROR else sys.stdout

        if self._json:
            print(self._format_json(level_name, message, data), file=stream)
            return

        print(self._format_text(level_name, message, color), file=stream)
        if data:
            data_str = json.dumps(data, indent=2, default=str)
            print(f"{Colors.DIM}{data_str}{Colors.RESET}", file=stream)

    def debug(self, message: str, data: dict[str, Any] | None = None) -> None:
        """Log a debug message. Only shown when LOG_LEVEL=DEBUG."""
        self._log(LogLevel.DEBUG, "DEBUG", Colors.DEBUG, message, data)

    def info(self, message: str, data: dict[str, Any] | None = None) -> None:
        """Log an info message."""
        self._log(LogLevel.INFO, "INFO", Colors.INFO, message, data)

    def warning(self, message: str, data: dict[str, Any] | None = None) -> None:
        """
        Log a warning message.

        Warnings are for recoverable problems: a context source timing out,
        a retryable provider error, a tool failure the model will retry.
        """
        self._log(LogLevel.WARNING, "WARN", Colors.WARNING, message, data)

    def error(self, message: str, error: Exception | None = None) -> None:
        """
        Log an error message.

        Args:
            message: The error message
            error: Optional exception to include details from. Pipeline
                errors also contribute their kind and failing stage.
        """
        data = None
        if error:
            data = {
                "error_type": type(error).__name__,
                "error_message": str(error),
            }
            kind = getattr(error, "kind", None)
            if kind:
                data["error_kind"] = kind
            stage = getattr(error, "stage", None)
            if stage:
                data["stage"] = stage
        self._log(LogLevel.ERROR, "ERROR", Colors.ERROR, message, data)


# Default logger instance for general use
logger = Logger("Orchestrator")
