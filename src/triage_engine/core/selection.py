"""Selected issue IDs, kept independent of what is currently visible."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from triage_engine.models.issue import Issue


class SelectionTracker:
    """Set of selected issue IDs.

    Selection survives search and filter changes: an issue hidden by the
    current view stays selected until it is toggled off, the selection is
    replaced by ``select_all``, or ``prune`` drops it explicitly.
    """

    def __init__(self, selected: Iterable[str] = ()) -> None:
        self._selected: set[str] = set(selected)

    def toggle(self, issue_id: str) -> bool:
        """Flip one id; returns True if it is now selected."""
        if issue_id in self._selected:
            self._selected.discard(issue_id)
            return False
        self._selected.add(issue_id)
        return True

    def select(self, issue_ids: Iterable[str]) -> None:
        self._selected.update(issue_ids)

    def select_all(self, visible_issues: Iterable[Issue]) -> None:
        """Replace the selection with exactly the given issues."""
        self._selected = {issue.id for issue in visible_issues}

    def deselect_all(self) -> None:
        self._selected.clear()

    def is_selected(self, issue_id: str) -> bool:
        return issue_id in self._selected

    @property
    def selected(self) -> frozenset[str]:
        return frozenset(self._selected)

    @property
    def count(self) -> int:
        return len(self._selected)

    def selected_issues(self, issues: Sequence[Issue]) -> list[Issue]:
        """Selected members of ``issues``, in their given order."""
        return [issue for issue in issues if issue.id in self._selected]

    def prune(self, issues: Iterable[Issue]) -> set[str]:
        """Drop ids with no matching issue; returns the ids removed."""
        known = {issue.id for issue in issues}
        orphans = self._selected - known
        self._selected -= orphans
        return orphans

    def __contains__(self, issue_id: object) -> bool:
        return issue_id in self._selected

    def __len__(self) -> int:
        return len(self._selected)
