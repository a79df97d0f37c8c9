"""Configuration loading and validation."""

from .loader import load_config
from .schema import (
    AgentRunnerConfig,
    HistoryConfig,
    LoggingConfig,
    PriorityRules,
    RetryConfig,
    SourceConfig,
    StreamConfig,
    TriageConfig,
    ViewConfig,
)

__all__ = [
    # Loader
    "load_config",
    # Root config
    "TriageConfig",
    # Sections
    "SourceConfig",
    "AgentRunnerConfig",
    "StreamConfig",
    "PriorityRules",
    "ViewConfig",
    "HistoryConfig",
    "LoggingConfig",
    "RetryConfig",
]
