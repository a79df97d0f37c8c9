"""View composition: search, then filter, then sort, then group."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from triage_engine.core.filters import FilterController, StatusResolver, TagResolver
from triage_engine.core.grouping import GroupingState, group_issues
from triage_engine.core.search import SearchHistory, coerce_scope, search
from triage_engine.core.sorting import SortController
from triage_engine.models.issue import Issue, IssueStatus, Severity
from triage_engine.models.view import (
    CountRange,
    DateRange,
    FilterState,
    GroupBy,
    SearchScope,
    SortDirection,
    SortField,
    SortState,
    ViewResult,
)
from triage_engine.utils.async_helpers import ValidationError
from triage_engine.utils.logging import LogEventNames

log = structlog.get_logger()


@dataclass(frozen=True)
class SavedView:
    """Snapshot of everything that shapes the visible list."""

    name: str
    query: str = ""
    scope: SearchScope = SearchScope.ALL
    filters: FilterState = field(default_factory=FilterState)
    sort: SortState = field(default_factory=SortState)
    group_by: GroupBy | None = None

    def to_dict(self) -> dict[str, Any]:
        filters = self.filters
        return {
            "name": self.name,
            "query": self.query,
            "scope": self.scope.value,
            "filters": {
                "providers": sorted(filters.providers),
                "severities": sorted(s.value for s in filters.severities),
                "priority_range": list(filters.priority_range),
                "status": sorted(s.value for s in filters.status),
                "tags": sorted(filters.tags),
                "count_range": [filters.count_range.min, filters.count_range.max],
                "date_range": [filters.date_range.start, filters.date_range.end],
            },
            "sort": {"field": self.sort.field.value, "direction": self.sort.direction.value},
            "group_by": self.group_by.value if self.group_by else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SavedView:
        """Rebuild a saved view.

        Raises:
            ValueError: If an enum value is unknown or a range is malformed.
        """
        raw = data.get("filters") or {}
        count = raw.get("count_range") or [None, None]
        dates = raw.get("date_range") or [None, None]
        filters = FilterState(
            providers=frozenset(raw.get("providers") or ()),
            severities=frozenset(Severity(s) for s in raw.get("severities") or ()),
            priority_range=tuple(raw.get("priority_range") or (0, 100)),  # type: ignore[arg-type]
            status=frozenset(IssueStatus(s) for s in raw.get("status") or ()),
            tags=frozenset(raw.get("tags") or ()),
            count_range=CountRange(count[0], count[1]),
            date_range=DateRange(dates[0], dates[1]),
        )
        sort = data.get("sort") or {}
        group_by = data.get("group_by")
        return cls(
            name=str(data.get("name", "")),
            query=str(data.get("query", "")),
            scope=SearchScope(data.get("scope", SearchScope.ALL)),
            filters=filters,
            sort=SortState(
                SortField(sort.get("field", SortField.PRIORITY)),
                SortDirection(sort.get("direction", SortDirection.DESC)),
            ),
            group_by=GroupBy(group_by) if group_by else None,
        )


class ViewPipeline:
    """Holds the view state and turns an issue list into grouped output.

    The query, the filters, the sort and the grouping are independent:
    changing one never resets another.

    Example:
        pipeline = ViewPipeline()
        pipeline.set_query("sql")
        pipeline.filters.toggle_provider("zeropath")
        result = pipeline.compose(issues)
        for group in result.groups:
            print(group.label, group.count)
    """

    def __init__(
        self,
        query: str = "",
        scope: SearchScope | str = SearchScope.ALL,
        filters: FilterController | None = None,
        sort: SortController | None = None,
        grouping: GroupingState | None = None,
        status_of: StatusResolver | None = None,
        tags_of: TagResolver | None = None,
    ) -> None:
        self.query = query
        self.scope = coerce_scope(scope)
        self.filters = filters or FilterController()
        self.sort = sort or SortController()
        self.grouping = grouping or GroupingState()
        self.status_of = status_of
        self.tags_of = tags_of
        self.history = SearchHistory()

    def set_query(self, query: str, scope: SearchScope | str | None = None) -> None:
        """Replace the search query, optionally switching scope.

        An unknown scope is logged and the current scope kept.
        """
        self.query = query if isinstance(query, str) else ""
        if scope is not None:
            try:
                self.scope = coerce_scope(scope)
            except ValidationError as e:
                log.warning(LogEventNames.FILTER_INPUT_RECOVERED, field="scope", error=str(e))
        self.history.add(self.query)

    def clear_query(self) -> None:
        self.query = ""

    def visible(self, issues: Sequence[Issue]) -> list[Issue]:
        """Search, filter and sort, in that order."""
        found = search(issues, self.query, self.scope)
        kept = self.filters.apply(found, self.status_of, self.tags_of)
        return self.sort.apply(kept)

    def compose(self, issues: Sequence[Issue]) -> ViewResult:
        visible = self.visible(issues)
        groups = group_issues(visible, self.grouping.group_by)
        log.debug(
            LogEventNames.VIEW_COMPOSED,
            total=len(issues),
            visible=len(visible),
            groups=len(groups),
        )
        return ViewResult(groups=tuple(groups), visible=tuple(visible), total=len(issues))

    def snapshot(self, name: str) -> SavedView:
        return SavedView(
            name=name,
            query=self.query,
            scope=self.scope,
            filters=self.filters.state,
            sort=self.sort.state,
            group_by=self.grouping.group_by,
        )

    def restore(self, view: SavedView) -> None:
        self.query = view.query
        self.scope = view.scope
        self.filters = FilterController(view.filters)
        self.sort = SortController(view.sort)
        self.grouping.set_group_by(view.group_by)
