"""Free-text search over issues."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog

from triage_engine.models.issue import Issue
from triage_engine.models.view import SearchScope
from triage_engine.utils.async_helpers import ValidationError
from triage_engine.utils.logging import LogEventNames

log = structlog.get_logger()

MAX_SEARCH_HISTORY = 10


def coerce_scope(scope: Any) -> SearchScope:
    """Parse a scope name.

    Raises:
        ValidationError: If the scope is not one of the known scopes.
    """
    if isinstance(scope, SearchScope):
        return scope
    try:
        return SearchScope(str(scope).lower())
    except ValueError as e:
        raise ValidationError(f"Unknown search scope: {scope!r}") from e


def _normalize_query(query: Any) -> str:
    if not isinstance(query, str):
        return ""
    return query.strip().lower()


def matches(issue: Issue, needle: str, scope: SearchScope) -> bool:
    """Whether an issue matches an already lowercased, stripped query."""
    if scope is SearchScope.ID:
        return issue.id.lower() == needle
    if scope is SearchScope.TITLE:
        return needle in issue.title.lower()
    if scope is SearchScope.DESCRIPTION:
        return needle in issue.description.lower()
    if scope is SearchScope.LOCATION:
        return needle in issue.location.lower()
    return (
        needle in issue.title.lower()
        or needle in issue.description.lower()
        or needle in issue.location.lower()
        or issue.id.lower() == needle
    )


def search(
    issues: Sequence[Issue],
    query: Any,
    scope: SearchScope | str = SearchScope.ALL,
) -> list[Issue]:
    """Return the issues matching ``query`` in ``scope``, in input order.

    Matching is case-insensitive: exact for the ``id`` scope, substring
    otherwise. An empty or whitespace-only query (or a non-string) returns
    every issue. An unknown scope is logged and searched as ``all``.
    """
    try:
        resolved = coerce_scope(scope)
    except ValidationError as e:
        log.warning(LogEventNames.FILTER_INPUT_RECOVERED, field="scope", error=str(e))
        resolved = SearchScope.ALL
    needle = _normalize_query(query)
    if not needle:
        return list(issues)
    return [issue for issue in issues if matches(issue, needle, resolved)]


def highlight_match(text: str, query: str) -> tuple[str, str, str] | None:
    """Split ``text`` around the first case-insensitive occurrence of ``query``.

    Returns:
        ``(before, match, after)`` with the original casing, or None when the
        query is empty or absent.
    """
    needle = query.strip().lower() if isinstance(query, str) else ""
    if not needle or not text:
        return None
    start = text.lower().find(needle)
    if start < 0:
        return None
    end = start + len(needle)
    return text[:start], text[start:end], text[end:]


class SearchHistory:
    """Most recent distinct queries, newest first."""

    def __init__(self, max_items: int = MAX_SEARCH_HISTORY) -> None:
        self._max_items = max_items
        self._items: list[str] = []

    def add(self, query: str) -> None:
        """Record a query; blank queries are ignored, repeats move to the front."""
        cleaned = query.strip() if isinstance(query, str) else ""
        if not cleaned:
            return
        self._items = [item for item in self._items if item.lower() != cleaned.lower()]
        self._items.insert(0, cleaned)
        del self._items[self._max_items :]

    def remove(self, query: str) -> None:
        self._items = [item for item in self._items if item.lower() != query.strip().lower()]

    def clear(self) -> None:
        self._items.clear()

    @property
    def items(self) -> list[str]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)
