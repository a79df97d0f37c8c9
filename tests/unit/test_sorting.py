"""Tests for issue ordering."""

import pytest

from triage_engine.core.sorting import (
    DEFAULT_DIRECTIONS,
    SortController,
    repo_name,
    sort_issues,
)
from triage_engine.models.issue import Issue, Severity
from triage_engine.models.view import SortDirection, SortField, SortState


def _ids(issues):
    return [issue.id for issue in issues]


def _issue(issue_id, **kwargs):
    defaults = {"provider": "github", "title": issue_id, "severity": Severity.LOW, "priority": 10}
    defaults.update(kwargs)
    return Issue(id=issue_id, **defaults)


class TestSortIssues:
    """Test sort_issues on the canonical issues."""

    @pytest.mark.parametrize(
        "field,direction,expected",
        [
            ("priority", "desc", ["z1", "z2", "s1", "s2"]),
            ("priority", "asc", ["s2", "s1", "z2", "z1"]),
            ("severity", "asc", ["s2", "s1", "z2", "z1"]),
            ("count", "desc", ["s1", "s2", "z1", "z2"]),
            ("title", "asc", ["s1", "s2", "z1", "z2"]),
            ("provider", "asc", ["s1", "s2", "z1", "z2"]),
            ("provider", "desc", ["z1", "z2", "s1", "s2"]),
        ],
    )
    def test_field_orders(self, issues, field, direction, expected):
        """Test each sortable field."""
        assert _ids(sort_issues(issues, field, direction)) == expected

    def test_date_desc_undated_last(self, issues):
        """Test undated issues go last when sorting newest first."""
        assert _ids(sort_issues(issues, SortField.DATE, SortDirection.DESC)) == [
            "z2",
            "z1",
            "s1",
            "s2",
        ]

    def test_date_asc_undated_last(self, issues):
        """Test undated issues go last when sorting oldest first."""
        assert _ids(sort_issues(issues, SortField.DATE, SortDirection.ASC)) == [
            "s1",
            "z1",
            "z2",
            "s2",
        ]

    def test_ties_break_by_id(self):
        """Test equal keys are ordered by id in both directions."""
        items = [_issue("c"), _issue("a"), _issue("b")]
        assert _ids(sort_issues(items, "priority", "desc")) == ["a", "b", "c"]
        assert _ids(sort_issues(items, "priority", "asc")) == ["a", "b", "c"]

    def test_title_is_case_insensitive(self):
        """Test titles compare without case."""
        items = [_issue("1", title="beta"), _issue("2", title="Alpha")]
        assert _ids(sort_issues(items, "title", "asc")) == ["2", "1"]

    def test_returns_new_list(self, issues):
        """Test the input is never mutated."""
        before = list(issues)
        result = sort_issues(issues, "priority", "asc")
        assert issues == before
        assert result is not issues

    def test_unknown_field(self, issues):
        """Test unknown fields are rejected."""
        with pytest.raises(ValueError):
            sort_issues(issues, "colour", "asc")


@pytest.fixture
def distinct_issues():
    """Five issues that differ on every sortable field."""
    rows = [
        ("i3", "linear", "Delta", Severity.MEDIUM, 40, 7, "acme/d", "2024-03-04"),
        ("i1", "zeropath", "alpha", Severity.CRITICAL, 90, 2, "acme/b", "2024-01-09"),
        ("i5", "codecov", "Echo", Severity.INFO, 5, 30, "acme/e", "2024-05-01"),
        ("i2", "sentry", "charlie", Severity.HIGH, 70, 11, "acme/a", "2024-02-14"),
        ("i4", "github", "bravo", Severity.LOW, 20, 1, "acme/c", "2023-12-31"),
    ]
    return [
        Issue(
            id=issue_id,
            provider=provider,
            title=title,
            severity=severity,
            priority=priority,
            count=count,
            target_repo={"fullName": repo},
            metadata={"firstSeen": first_seen},
        )
        for issue_id, provider, title, severity, priority, count, repo, first_seen in rows
    ]


class TestSortProperties:
    """Properties that hold for every field and direction."""

    @pytest.mark.parametrize("direction", list(SortDirection))
    @pytest.mark.parametrize("field", list(SortField))
    def test_sorting_is_idempotent(self, issues, distinct_issues, field, direction):
        """Test sorting a sorted list again changes nothing."""
        for items in (issues, distinct_issues):
            once = sort_issues(items, field, direction)
            assert sort_issues(once, field, direction) == once
            assert sort_issues(list(reversed(items)), field, direction) == once

    @pytest.mark.parametrize("field", list(SortField))
    def test_directions_are_exact_reverses(self, distinct_issues, field):
        """Test flipping direction on tie-free data reverses the order."""
        ascending = sort_issues(distinct_issues, field, SortDirection.ASC)
        descending = sort_issues(distinct_issues, field, SortDirection.DESC)
        assert _ids(descending) == list(reversed(_ids(ascending)))
        assert sorted(_ids(ascending)) == ["i1", "i2", "i3", "i4", "i5"]


class TestRepoName:
    """Test repository name extraction."""

    def test_target_repo_full_name(self):
        """Test fullName on target_repo wins."""
        assert repo_name(_issue("x", target_repo={"fullName": "acme/api", "repo": "api"})) == (
            "acme/api"
        )

    def test_target_repo_repo(self):
        """Test repo is used when fullName is absent."""
        assert repo_name(_issue("x", target_repo={"repo": "api"})) == "api"

    def test_metadata_fallback(self):
        """Test the metadata-embedded target_repo."""
        issue = _issue("x", metadata={"target_repo": {"full_name": "acme/web"}})
        assert repo_name(issue) == "acme/web"

    def test_unknown(self, issues):
        """Test issues without a repo object."""
        assert repo_name(issues[0]) == "Unknown"

    def test_sort_by_repo(self):
        """Test repo ordering with the Unknown fallback."""
        items = [
            _issue("1", target_repo={"fullName": "zeta/app"}),
            _issue("2"),
            _issue("3", target_repo={"fullName": "acme/api"}),
        ]
        assert _ids(sort_issues(items, "repo", "asc")) == ["3", "2", "1"]


class TestSortController:
    """Test header-click toggling."""

    def test_default_state(self):
        """Test the default is priority descending."""
        assert SortController().state == SortState(SortField.PRIORITY, SortDirection.DESC)

    def test_toggle_same_field_flips(self):
        """Test clicking the active field flips direction."""
        controller = SortController()
        assert controller.toggle("priority").direction is SortDirection.ASC
        assert controller.toggle("priority").direction is SortDirection.DESC

    @pytest.mark.parametrize("field", [f for f in SortField if f is not SortField.TITLE])
    def test_toggle_new_field_uses_default(self, field):
        """Test switching fields starts at that field's default direction."""
        controller = SortController(SortState(SortField.TITLE, SortDirection.DESC))
        assert controller.toggle(field) == SortState(field, DEFAULT_DIRECTIONS[field])

    def test_set_and_reset(self, issues):
        """Test explicit set, apply and reset."""
        controller = SortController()
        controller.set("count", "asc")
        assert _ids(controller.apply(issues))[:2] == ["z1", "z2"]
        controller.reset()
        assert controller.field is SortField.PRIORITY
