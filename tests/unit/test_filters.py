"""Tests for compound issue filters."""

import pytest

from triage_engine.core.filters import (
    FilterController,
    active_filter_count,
    filter_issues,
    validate_count_range,
    validate_date_range,
    validate_priority_range,
)
from triage_engine.core.search import search
from triage_engine.models.issue import IssueStatus, Severity
from triage_engine.models.view import CountRange, DateRange, FilterState
from triage_engine.utils.async_helpers import ValidationError


def _ids(issues):
    return {issue.id for issue in issues}


class TestFilterIssues:
    """Test filter_issues across dimensions."""

    def test_default_state_keeps_everything(self, issues):
        """Test an empty filter constrains nothing."""
        assert filter_issues(issues, FilterState()) == issues

    def test_provider_filter(self, issues):
        """Test filtering by provider."""
        state = FilterState(providers=frozenset({"zeropath"}))
        assert _ids(filter_issues(issues, state)) == {"z1", "z2"}

    def test_severity_members_are_ored(self, issues):
        """Test that severities within one dimension are alternatives."""
        state = FilterState(severities=frozenset({Severity.CRITICAL, Severity.LOW}))
        assert _ids(filter_issues(issues, state)) == {"z1", "s2"}

    def test_dimensions_are_anded(self, issues):
        """Test that dimensions combine conjunctively."""
        state = FilterState(
            providers=frozenset({"sentry"}),
            severities=frozenset({Severity.CRITICAL}),
        )
        assert filter_issues(issues, state) == []

    def test_priority_range_inclusive(self, issues):
        """Test that range bounds are inclusive."""
        state = FilterState(priority_range=(50, 75))
        assert _ids(filter_issues(issues, state)) == {"z2", "s1"}

    def test_count_range(self, issues):
        """Test occurrence count bounds with an open side."""
        state = FilterState(count_range=CountRange(min=5))
        assert _ids(filter_issues(issues, state)) == {"s1", "s2"}

    def test_tags(self, issues):
        """Test that any matching tag passes."""
        state = FilterState(tags=frozenset({"security", "frontend"}))
        assert _ids(filter_issues(issues, state)) == {"z1"}

    def test_date_range_keeps_undated(self, issues):
        """Test date bounds; issues without a date pass."""
        state = FilterState(date_range=DateRange("2026-01-10", "2026-01-11"))
        assert _ids(filter_issues(issues, state)) == {"z1", "s2"}

    def test_date_end_includes_whole_day(self, issues):
        """Test that a bare date end bound covers that day."""
        state = FilterState(date_range=DateRange(end="2026-01-12"))
        assert "z2" in _ids(filter_issues(issues, state))

    def test_status_uses_issue_status(self, issues):
        """Test status filtering on the issue's own status."""
        state = FilterState(status=frozenset({IssueStatus.PENDING}))
        assert len(filter_issues(issues, state)) == 4

    def test_status_resolver(self, issues):
        """Test that a live status resolver replaces issue.status."""
        state = FilterState(status=frozenset({IssueStatus.PROCESSING}))

        def status_of(issue):
            return IssueStatus.PROCESSING if issue.id == "s1" else IssueStatus.PENDING

        assert _ids(filter_issues(issues, state, status_of)) == {"s1"}

    def test_narrowing_only_shrinks(self, issues):
        """Test that adding a dimension never grows the result."""
        broad = filter_issues(issues, FilterState(providers=frozenset({"zeropath"})))
        narrow = filter_issues(
            issues,
            FilterState(providers=frozenset({"zeropath"}), priority_range=(80, 100)),
        )
        assert _ids(narrow) <= _ids(broad)


class TestValidation:
    """Test range repair and validation."""

    def test_priority_swapped_and_clamped(self):
        """Test inverted and out-of-range bounds are repaired."""
        assert validate_priority_range(150, -10) == (0, 100)
        assert validate_priority_range("80", 20) == (20, 80)

    @pytest.mark.parametrize("bad", ["high", None, True])
    def test_priority_non_numeric(self, bad):
        """Test non-numeric bounds are rejected."""
        with pytest.raises(ValidationError):
            validate_priority_range(bad, 100)

    def test_count_range(self):
        """Test count bounds are ordered and floored at zero."""
        assert validate_count_range(10, 2) == CountRange(2, 10)
        assert validate_count_range(-4, "") == CountRange(0, None)

    def test_date_range(self):
        """Test date bounds are ordered and blanks stay open."""
        assert validate_date_range("2026-02-01", "2026-01-01") == DateRange(
            "2026-01-01", "2026-02-01"
        )
        assert validate_date_range("", None) == DateRange()

    def test_date_range_rejects_non_strings(self):
        """Test non-string date bounds are rejected."""
        with pytest.raises(ValidationError):
            validate_date_range(20260101, None)


class TestFilterController:
    """Test the filter controller."""

    def test_priority_range_scenario(self, issues):
        """Test 70-100 keeps z1 and z2 and counts one active dimension."""
        controller = FilterController()
        controller.set_priority_range(70, 100)
        assert _ids(controller.apply(issues)) == {"z1", "z2"}
        assert controller.active_filter_count == 1
        assert controller.has_active_filters

    def test_search_and_filter_compose(self, issues):
        """Test that clearing search restores the filtered set."""
        controller = FilterController()
        controller.toggle_provider("zeropath")
        filtered = controller.apply(issues)
        assert _ids(filtered) == {"z1", "z2"}
        assert _ids(search(filtered, "XSS")) == {"z2"}
        assert _ids(search(controller.apply(issues), "")) == {"z1", "z2"}

    def test_toggle_provider_twice(self):
        """Test toggling adds then removes."""
        controller = FilterController()
        controller.toggle_provider("Sentry")
        assert controller.state.providers == {"sentry"}
        controller.toggle_provider("sentry")
        assert controller.state.providers == frozenset()

    def test_toggle_severity_coerces(self):
        """Test severity names are coerced."""
        controller = FilterController()
        controller.toggle_severity("critical")
        assert controller.state.severities == {Severity.CRITICAL}

    def test_invalid_status_leaves_state(self):
        """Test an unknown status is ignored."""
        controller = FilterController()
        before = controller.state
        assert controller.toggle_status("archived") is before

    def test_invalid_range_leaves_state(self):
        """Test an unrepairable range keeps the previous bounds."""
        controller = FilterController()
        controller.set_priority_range(20, 80)
        controller.set_priority_range("low", 80)
        assert controller.state.priority_range == (20, 80)

    def test_update_many(self):
        """Test applying several edits at once."""
        controller = FilterController()
        state = controller.update(
            providers=["zeropath"],
            severities=["HIGH"],
            status=["failed", "bogus"],
            tags=["security"],
            priority_range=(10, 90),
            count_range=CountRange(1, 3),
            date_range=("2026-01-01", None),
            colour="red",
        )
        assert state.providers == {"zeropath"}
        assert state.severities == {Severity.HIGH}
        assert state.status == {IssueStatus.FAILED}
        assert state.tags == {"security"}
        assert state.priority_range == (10, 90)
        assert state.count_range == CountRange(1, 3)
        assert state.date_range == DateRange("2026-01-01", None)
        assert active_filter_count(state) == 7

    def test_states_are_new_objects(self):
        """Test edits never mutate a previous state."""
        controller = FilterController()
        first = controller.state
        controller.toggle_tag("security")
        assert first.tags == frozenset()

    def test_clear(self):
        """Test clearing resets every dimension."""
        controller = FilterController()
        controller.toggle_provider("sentry")
        controller.set_count_range(1, 5)
        controller.clear()
        assert not controller.has_active_filters
