"""Structured logging configuration with secret sanitization.

This module configures structlog for the triage engine:
- Configurable log levels and output formats (JSON/console)
- Automatic secret sanitization in log output
- Context injection (service name, version, bound run/issue ids)
- File and console output support
"""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from enum import StrEnum
from pathlib import Path
from typing import Any, cast

import structlog

from triage_engine.utils.security import SecretRedactor

SERVICE_NAME = "triage-engine"


class LogFormat(StrEnum):
    """Log output format options."""

    JSON = "json"
    CONSOLE = "console"


class LogLevel(StrEnum):
    """Log level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


_redactor: SecretRedactor | None = None


def _get_redactor() -> SecretRedactor:
    """Get or create the shared redactor used by the log processor."""
    global _redactor
    if _redactor is None:
        _redactor = SecretRedactor(placeholder="[REDACTED]")
    return _redactor


def sanitize_log_value(value: Any) -> Any:
    """Recursively sanitize secrets from log values.

    Args:
        value: Value to sanitize (can be nested dict/list/str)

    Returns:
        Sanitized value with secrets redacted
    """
    redactor = _get_redactor()

    if isinstance(value, str):
        return redactor.redact(value)
    elif isinstance(value, dict):
        return {k: sanitize_log_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return type(value)(sanitize_log_value(v) for v in value)
    else:
        return value


def secret_sanitizer(
    logger: logging.Logger,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Structlog processor that redacts secrets from every log entry."""
    return cast(MutableMapping[str, Any], sanitize_log_value(event_dict))


def add_context_processor(
    logger: logging.Logger,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Add service name and version to all log entries."""
    from triage_engine._version import __version__

    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = __version__
    return event_dict


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    log_format: LogFormat | str = LogFormat.JSON,
    file_path: Path | str | None = None,
    file_enabled: bool = False,
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format (json or console)
        file_path: Path to log file (if file logging enabled)
        file_enabled: Whether to enable file logging

    Example:
        configure_logging(level="DEBUG", log_format="console")
    """
    if isinstance(level, str):
        level = LogLevel(level.upper())
    if isinstance(log_format, str):
        log_format = LogFormat(log_format.lower())

    numeric_level = getattr(logging, level.value)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_context_processor,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        secret_sanitizer,
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == LogFormat.JSON:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True, exception_formatter=structlog.dev.plain_traceback
            )
        )

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    handlers.append(console_handler)

    if file_enabled and file_path:
        try:
            file_path = Path(file_path)
            file_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(file_path)
            file_handler.setLevel(numeric_level)
            handlers.append(file_handler)
        except OSError as e:
            # Console-only is an acceptable fallback
            logging.getLogger("triage_engine.logging").warning(
                f"Could not create log file {file_path}: {e}"
            )

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=handlers,
        force=True,
    )


def bind_context(**kwargs: Any) -> None:
    """Bind contextual variables for all subsequent log calls.

    Example:
        bind_context(run_id="run-1a2b3c", issue_id="sentry-42")
        log.info("agent_line_received")  # Includes run_id and issue_id
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove contextual variables."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound contextual variables."""
    structlog.contextvars.clear_contextvars()


class LogEventNames:
    """Standard log event names used across the engine."""

    # Issue source
    ISSUES_FETCH_START = "issues_fetch_start"
    ISSUES_FETCHED = "issues_fetched"
    ISSUES_FETCH_ERROR = "issues_fetch_error"
    ISSUE_NORMALIZE_SKIPPED = "issue_normalize_skipped"

    # View pipeline
    FILTER_INPUT_RECOVERED = "filter_input_recovered"
    VIEW_COMPOSED = "view_composed"

    # Sessions
    SESSION_STARTED = "session_started"
    SESSION_CONFLICT = "session_conflict"
    SESSION_IMPLICIT_CREATED = "session_implicit_created"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"
    SESSION_CANCELLED = "session_cancelled"
    SESSION_TERMINAL_EVENT_IGNORED = "session_terminal_event_ignored"
    SESSION_PAYLOAD_DROPPED = "session_payload_dropped"
    SUBSCRIBER_ERROR = "subscriber_error"

    # Agent runs
    AGENT_LAUNCHING = "agent_launching"
    AGENT_LAUNCH_FAILED = "agent_launch_failed"
    AGENT_EXITED = "agent_exited"
    AGENT_STREAM_FAILED = "agent_stream_failed"
    AGENT_SYSTEM_EVENT = "agent_system_event"
    AGENT_TERMINATING = "agent_terminating"
    STREAM_LINE_FALLBACK = "stream_line_fallback"

    # Event streams
    STREAM_HEARTBEAT = "stream_heartbeat"
    STREAM_IDLE_TIMEOUT = "stream_idle_timeout"
    STREAM_RECONNECTING = "stream_reconnecting"
    STREAM_CLOSED = "stream_closed"
    STREAM_FRAME_UNDECODABLE = "stream_frame_undecodable"

    # History, tags and service
    HISTORY_RECORDED = "history_recorded"
    HISTORY_ENTRY_SKIPPED = "history_entry_skipped"
    TAG_CREATED = "tag_created"
    TAG_DELETED = "tag_deleted"
    TAGS_IMPORTED = "tags_imported"
    PROCESSING_DISPATCHED = "processing_dispatched"
    PROCESSING_WARNING = "processing_warning"
    PROCESSING_CANCELLED = "processing_cancelled"
