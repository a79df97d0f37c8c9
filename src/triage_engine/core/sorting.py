"""Ordering of issues by field and direction."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from triage_engine.models.issue import Issue
from triage_engine.models.view import SortDirection, SortField, SortState

DEFAULT_DIRECTIONS: dict[SortField, SortDirection] = {
    SortField.PRIORITY: SortDirection.DESC,
    SortField.COUNT: SortDirection.DESC,
    SortField.SEVERITY: SortDirection.DESC,
    SortField.DATE: SortDirection.DESC,
    SortField.TITLE: SortDirection.ASC,
    SortField.PROVIDER: SortDirection.ASC,
    SortField.REPO: SortDirection.ASC,
}

UNKNOWN_REPO = "Unknown"


def repo_name(issue: Issue) -> str:
    """Repository an issue targets, or ``"Unknown"``.

    Looks at ``target_repo.fullName``, then ``target_repo.repo``, then the
    same keys (and ``full_name``) under ``metadata.target_repo``.
    """
    candidates: list[Mapping[str, Any]] = []
    if issue.target_repo:
        candidates.append(issue.target_repo)
    nested = issue.metadata.get("target_repo")
    if isinstance(nested, Mapping):
        candidates.append(nested)
    for candidate in candidates:
        for key in ("fullName", "full_name", "repo"):
            value = candidate.get(key)
            if value:
                return str(value)
    return UNKNOWN_REPO


def _sort_value(issue: Issue, field: SortField) -> Any:
    if field is SortField.PRIORITY:
        return issue.priority
    if field is SortField.COUNT:
        return issue.count
    if field is SortField.SEVERITY:
        return issue.severity.rank
    if field is SortField.TITLE:
        return issue.title.lower()
    if field is SortField.PROVIDER:
        return issue.provider.lower()
    if field is SortField.REPO:
        return repo_name(issue).lower()
    return issue.date


def sort_issues(
    issues: Sequence[Issue],
    field: SortField | str = SortField.PRIORITY,
    direction: SortDirection | str = SortDirection.DESC,
) -> list[Issue]:
    """Return a new list ordered by ``field`` in ``direction``.

    Ties are broken by ``id`` ascending whichever the direction. For the date
    field, issues without a date come after every dated issue.

    Raises:
        ValueError: If ``field`` or ``direction`` is not a known value.
    """
    sort_field = SortField(field)
    descending = SortDirection(direction) is SortDirection.DESC

    # Stable sorts compose: order by id first, then by the field.
    by_id = sorted(issues, key=lambda issue: issue.id)

    if sort_field is SortField.DATE:
        dated = [issue for issue in by_id if issue.date is not None]
        undated = [issue for issue in by_id if issue.date is None]
        dated.sort(key=lambda issue: issue.date or "", reverse=descending)
        return dated + undated

    by_id.sort(key=lambda issue: _sort_value(issue, sort_field), reverse=descending)
    return by_id


class SortController:
    """Current sort state with header-click toggling."""

    def __init__(self, state: SortState | None = None) -> None:
        self._state = state or SortState()

    @property
    def state(self) -> SortState:
        return self._state

    @property
    def field(self) -> SortField:
        return self._state.field

    @property
    def direction(self) -> SortDirection:
        return self._state.direction

    def toggle(self, field: SortField | str) -> SortState:
        """Flip direction on the active field; switch fields at their default direction."""
        sort_field = SortField(field)
        if sort_field is self._state.field:
            flipped = (
                SortDirection.ASC
                if self._state.direction is SortDirection.DESC
                else SortDirection.DESC
            )
            self._state = SortState(sort_field, flipped)
        else:
            self._state = SortState(sort_field, DEFAULT_DIRECTIONS[sort_field])
        return self._state

    def set(self, field: SortField | str, direction: SortDirection | str) -> SortState:
        self._state = SortState(SortField(field), SortDirection(direction))
        return self._state

    def reset(self) -> SortState:
        self._state = SortState()
        return self._state

    def apply(self, issues: Sequence[Issue]) -> list[Issue]:
        return sort_issues(issues, self._state.field, self._state.direction)
