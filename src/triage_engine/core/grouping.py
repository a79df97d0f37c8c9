"""Partitioning of the visible issue list into labeled groups."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from triage_engine.core.sorting import repo_name
from triage_engine.models.issue import Issue
from triage_engine.models.view import GroupBy, GroupedIssues

ALL_KEY = "all"
ALL_LABEL = "All Issues"
MAX_LOCATION_LABEL = 50

# Order used when cycling through grouping modes; None means ungrouped
GROUP_BY_CYCLE: tuple[GroupBy | None, ...] = (
    None,
    GroupBy.PROVIDER,
    GroupBy.SEVERITY,
    GroupBy.REPO,
    GroupBy.LOCATION,
)


def location_directory(location: str) -> str:
    """Directory part of a location; ``"Root"`` for bare files, ``"Unknown"`` if empty."""
    if not location:
        return "Unknown"
    if "/" not in location:
        return "Root"
    return location.rsplit("/", 1)[0] or "Root"


def group_key(issue: Issue, group_by: GroupBy) -> str:
    if group_by is GroupBy.PROVIDER:
        return issue.provider
    if group_by is GroupBy.SEVERITY:
        return issue.severity.value
    if group_by is GroupBy.REPO:
        return repo_name(issue)
    return location_directory(issue.location)


def group_label(key: str, group_by: GroupBy) -> str:
    if group_by is GroupBy.PROVIDER:
        return key[:1].upper() + key[1:]
    if group_by is GroupBy.LOCATION and len(key) > MAX_LOCATION_LABEL:
        return "..." + key[-(MAX_LOCATION_LABEL - 3) :]
    return key


def group_issues(
    issues: Sequence[Issue],
    group_by: GroupBy | str | None,
) -> list[GroupedIssues]:
    """Partition issues by ``group_by``.

    Groups are ordered by size, largest first, ties by key. Members keep
    their input order. With no grouping a single ``"all"`` group holds
    everything.

    Raises:
        ValueError: If ``group_by`` is not a known dimension.
    """
    if group_by is None:
        return [GroupedIssues(ALL_KEY, ALL_LABEL, tuple(issues))]

    dimension = GroupBy(group_by)
    buckets: dict[str, list[Issue]] = {}
    for issue in issues:
        buckets.setdefault(group_key(issue, dimension), []).append(issue)

    ordered = sorted(buckets.items(), key=lambda item: (-len(item[1]), item[0]))
    return [
        GroupedIssues(key, group_label(key, dimension), tuple(members))
        for key, members in ordered
    ]


class GroupingState:
    """Active grouping dimension and which groups are collapsed."""

    def __init__(self, group_by: GroupBy | None = None) -> None:
        self._group_by = group_by
        self._collapsed: set[str] = set()

    @property
    def group_by(self) -> GroupBy | None:
        return self._group_by

    def set_group_by(self, group_by: GroupBy | str | None) -> None:
        """Switch dimension; collapse state is per-dimension so it is cleared."""
        self._group_by = GroupBy(group_by) if group_by is not None else None
        self._collapsed.clear()

    def cycle_group_by(self) -> GroupBy | None:
        index = GROUP_BY_CYCLE.index(self._group_by)
        self.set_group_by(GROUP_BY_CYCLE[(index + 1) % len(GROUP_BY_CYCLE)])
        return self._group_by

    def toggle_group(self, key: str) -> bool:
        """Flip one group; returns True if it is now collapsed."""
        if key in self._collapsed:
            self._collapsed.discard(key)
            return False
        self._collapsed.add(key)
        return True

    def collapse_all(self, groups: Iterable[GroupedIssues | str]) -> None:
        self._collapsed = {
            group.key if isinstance(group, GroupedIssues) else group for group in groups
        }

    def expand_all(self) -> None:
        self._collapsed.clear()

    def is_collapsed(self, key: str) -> bool:
        return key in self._collapsed

    @property
    def collapsed_count(self) -> int:
        return len(self._collapsed)

    @property
    def collapsed(self) -> frozenset[str]:
        return frozenset(self._collapsed)
