"""Tests for view composition."""

import pytest

from triage_engine.core.pipeline import SavedView, ViewPipeline
from triage_engine.core.sessions import SessionStore
from triage_engine.models.issue import IssueStatus, Severity
from triage_engine.models.view import GroupBy, SearchScope, SortDirection, SortField
from triage_engine.models.session import StreamEvent


def _ids(issues):
    return [issue.id for issue in issues]


class TestCompose:
    """Test the search, filter, sort and group sequence."""

    def test_default_view(self, issues):
        """Test the default view shows everything by priority."""
        result = ViewPipeline().compose(issues)
        assert result.total == 4
        assert result.visible_count == 4
        assert _ids(result.visible) == ["z1", "z2", "s1", "s2"]
        assert len(result.groups) == 1

    def test_search_then_filter(self, issues):
        """Test removing the search restores the filtered set."""
        pipeline = ViewPipeline()
        pipeline.filters.toggle_provider("zeropath")
        pipeline.set_query("XSS")
        assert _ids(pipeline.visible(issues)) == ["z2"]
        pipeline.clear_query()
        assert _ids(pipeline.visible(issues)) == ["z1", "z2"]
        assert pipeline.filters.state.providers == {"zeropath"}

    def test_sort_applies_after_filter(self, issues):
        """Test the visible list is sorted."""
        pipeline = ViewPipeline()
        pipeline.sort.set(SortField.COUNT, SortDirection.DESC)
        pipeline.filters.toggle_provider("sentry")
        assert _ids(pipeline.visible(issues)) == ["s1", "s2"]

    def test_grouped_output(self, issues):
        """Test grouping partitions the sorted visible list."""
        pipeline = ViewPipeline()
        pipeline.grouping.set_group_by(GroupBy.PROVIDER)
        result = pipeline.compose(issues)
        assert [g.key for g in result.groups] == ["sentry", "zeropath"]
        assert _ids(result.groups[1].issues) == ["z1", "z2"]

    def test_empty_result(self, issues):
        """Test a view that hides everything."""
        pipeline = ViewPipeline()
        pipeline.set_query("nothing matches this")
        result = pipeline.compose(issues)
        assert result.visible_count == 0
        assert result.total == 4

    def test_status_resolver_from_store(self, issues, store: SessionStore):
        """Test live session status drives the status filter."""
        pipeline = ViewPipeline(status_of=store.status_of)
        pipeline.filters.toggle_status(IssueStatus.PROCESSING)
        store.start_session("s2")
        assert _ids(pipeline.visible(issues)) == ["s2"]
        store.record_event("s2", StreamEvent.complete("s2"))
        assert pipeline.visible(issues) == []

    def test_changing_sort_keeps_filters_and_query(self, issues):
        """Test view dimensions are independent."""
        pipeline = ViewPipeline()
        pipeline.set_query("src/auth", SearchScope.LOCATION)
        pipeline.filters.set_priority_range(40, 100)
        pipeline.sort.toggle(SortField.TITLE)
        assert pipeline.query == "src/auth"
        assert pipeline.filters.state.priority_range == (40, 100)
        assert _ids(pipeline.visible(issues)) == ["s1", "z1"]


class TestQuery:
    """Test query handling."""

    def test_set_query_records_history(self):
        """Test queries are remembered."""
        pipeline = ViewPipeline()
        pipeline.set_query("sql")
        pipeline.set_query("xss")
        assert pipeline.history.items == ["xss", "sql"]

    def test_bad_scope_keeps_current(self):
        """Test an unknown scope leaves the scope unchanged."""
        pipeline = ViewPipeline(scope="title")
        pipeline.set_query("sql", "everywhere")
        assert pipeline.scope is SearchScope.TITLE
        assert pipeline.query == "sql"

    def test_non_string_query(self):
        """Test a non-string query is treated as empty."""
        pipeline = ViewPipeline()
        pipeline.set_query(None)  # type: ignore[arg-type]
        assert pipeline.query == ""


class TestSavedView:
    """Test snapshots of the view state."""

    def test_snapshot_and_restore(self, issues):
        """Test a restored view reproduces the visible list."""
        pipeline = ViewPipeline()
        pipeline.set_query("src", SearchScope.LOCATION)
        pipeline.filters.toggle_severity(Severity.HIGH)
        pipeline.filters.toggle_severity(Severity.CRITICAL)
        pipeline.sort.set(SortField.TITLE, SortDirection.ASC)
        pipeline.grouping.set_group_by(GroupBy.SEVERITY)
        saved = pipeline.snapshot("security")
        expected = _ids(pipeline.visible(issues))

        other = ViewPipeline()
        other.restore(SavedView.from_dict(saved.to_dict()))
        assert _ids(other.visible(issues)) == expected
        assert other.grouping.group_by is GroupBy.SEVERITY

    def test_to_dict(self):
        """Test the serialized shape."""
        pipeline = ViewPipeline()
        pipeline.filters.set_count_range(2, None)
        data = pipeline.snapshot("busy").to_dict()
        assert data["name"] == "busy"
        assert data["filters"]["count_range"] == [2, None]
        assert data["sort"] == {"field": "priority", "direction": "desc"}
        assert data["group_by"] is None

    def test_from_dict_unknown_enum(self):
        """Test unknown enum values are rejected."""
        with pytest.raises(ValueError):
            SavedView.from_dict({"name": "x", "filters": {"severities": ["SPICY"]}})
