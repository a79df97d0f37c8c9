"""Utility functions and helpers.

This module provides the ambient pieces shared by the engine:
- async_helpers: Error taxonomy, retry, timeouts, cancellation
- logging: Structured logging with secret sanitization
- metrics: In-process counters for sessions and streams
- security: Secret redaction and terminal-code stripping
"""

from triage_engine.utils.async_helpers import (
    CancellationToken,
    ConflictError,
    IdleTimeoutError,
    IssueFetchError,
    StreamParseError,
    TransportError,
    TriageError,
    ValidationError,
)
from triage_engine.utils.logging import (
    LogEventNames,
    LogFormat,
    LogLevel,
    bind_context,
    clear_context,
    configure_logging,
    unbind_context,
)
from triage_engine.utils.metrics import (
    Counter,
    Gauge,
    Histogram,
    MetricsRegistry,
    Timer,
    get_metrics,
)
from triage_engine.utils.security import (
    RedactionError,
    SecretRedactor,
    SecurityError,
    strip_terminal_codes,
)

__all__ = [
    # Errors
    "CancellationToken",
    "ConflictError",
    # Metrics
    "Counter",
    "Gauge",
    "Histogram",
    "IdleTimeoutError",
    "IssueFetchError",
    # Logging
    "LogEventNames",
    "LogFormat",
    "LogLevel",
    "MetricsRegistry",
    # Security
    "RedactionError",
    "SecretRedactor",
    "SecurityError",
    "StreamParseError",
    "Timer",
    "TransportError",
    "TriageError",
    "ValidationError",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_metrics",
    "strip_terminal_codes",
    "unbind_context",
]
