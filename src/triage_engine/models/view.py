"""View state: search scope, filters, sort and grouping."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from .issue import Issue, IssueStatus, Severity

DEFAULT_PRIORITY_RANGE: tuple[int, int] = (0, 100)


class SearchScope(StrEnum):
    """Which issue fields a query matches."""

    ALL = "all"
    TITLE = "title"
    DESCRIPTION = "description"
    LOCATION = "location"
    ID = "id"


class SortField(StrEnum):
    """Sortable issue fields."""

    PRIORITY = "priority"
    SEVERITY = "severity"
    COUNT = "count"
    TITLE = "title"
    PROVIDER = "provider"
    REPO = "repo"
    DATE = "date"


class SortDirection(StrEnum):
    """Sort direction."""

    ASC = "asc"
    DESC = "desc"


class GroupBy(StrEnum):
    """Dimensions the issue list can be partitioned by."""

    PROVIDER = "provider"
    SEVERITY = "severity"
    REPO = "repo"
    LOCATION = "location"


@dataclass(frozen=True)
class CountRange:
    """Inclusive occurrence-count bounds; None leaves a side open."""

    min: int | None = None
    max: int | None = None

    @property
    def is_unbounded(self) -> bool:
        return self.min is None and self.max is None


@dataclass(frozen=True)
class DateRange:
    """Inclusive ISO date bounds; None leaves a side open."""

    start: str | None = None
    end: str | None = None

    @property
    def is_unbounded(self) -> bool:
        return self.start is None and self.end is None


@dataclass(frozen=True)
class FilterState:
    """Compound filter. Empty collections and open ranges constrain nothing."""

    providers: frozenset[str] = frozenset()
    severities: frozenset[Severity] = frozenset()
    priority_range: tuple[int, int] = DEFAULT_PRIORITY_RANGE
    status: frozenset[IssueStatus] = frozenset()
    tags: frozenset[str] = frozenset()
    count_range: CountRange = field(default_factory=CountRange)
    date_range: DateRange = field(default_factory=DateRange)


@dataclass(frozen=True)
class SortState:
    """Active sort field and direction."""

    field: SortField = SortField.PRIORITY
    direction: SortDirection = SortDirection.DESC


@dataclass(frozen=True)
class GroupedIssues:
    """One labeled partition of the visible list."""

    key: str
    label: str
    issues: tuple[Issue, ...]

    @property
    def count(self) -> int:
        return len(self.issues)


@dataclass(frozen=True)
class ViewResult:
    """Output of one pass through the view pipeline."""

    groups: tuple[GroupedIssues, ...]
    visible: tuple[Issue, ...]
    total: int

    @property
    def visible_count(self) -> int:
        return len(self.visible)
