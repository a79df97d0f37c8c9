"""Data models and transfer objects."""

from .issue import Issue, IssueStatus, Severity
from .session import (
    Activity,
    ActivityFeed,
    ActivityStatus,
    ActivityType,
    ExecutionMetrics,
    ProcessingOptions,
    ProcessingSession,
    SessionStatus,
    StreamEvent,
    StreamEventType,
)
from .view import (
    CountRange,
    DateRange,
    FilterState,
    GroupBy,
    GroupedIssues,
    SearchScope,
    SortDirection,
    SortField,
    SortState,
    ViewResult,
)

__all__ = [
    # Issue models
    "Severity",
    "IssueStatus",
    "Issue",
    # View models
    "SearchScope",
    "CountRange",
    "DateRange",
    "FilterState",
    "SortField",
    "SortDirection",
    "SortState",
    "GroupBy",
    "GroupedIssues",
    "ViewResult",
    # Session models
    "SessionStatus",
    "ActivityType",
    "ActivityStatus",
    "Activity",
    "ActivityFeed",
    "ExecutionMetrics",
    "StreamEventType",
    "StreamEvent",
    "ProcessingOptions",
    "ProcessingSession",
]
