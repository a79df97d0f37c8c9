"""Tests for free-text search."""

import pytest

from triage_engine.core.search import (
    MAX_SEARCH_HISTORY,
    SearchHistory,
    coerce_scope,
    highlight_match,
    search,
)
from triage_engine.models.view import SearchScope
from triage_engine.utils.async_helpers import ValidationError


def _ids(issues):
    return [issue.id for issue in issues]


class TestSearch:
    """Test search over the canonical issues."""

    def test_title_match_isolates_issue(self, issues):
        """Test that "SQL" finds only the SQL injection issue."""
        assert _ids(search(issues, "SQL")) == ["z1"]

    def test_case_insensitive(self, issues):
        """Test that matching ignores case."""
        assert _ids(search(issues, "xss")) == ["z2"]

    @pytest.mark.parametrize("scope", list(SearchScope))
    @pytest.mark.parametrize("query", ["", "   ", None, 42])
    def test_empty_query_returns_everything(self, issues, query, scope):
        """Test that blank or non-string queries do not filter in any scope."""
        assert _ids(search(issues, query, scope)) == ["z1", "z2", "s1", "s2"]

    def test_preserves_input_order(self, issues):
        """Test that results keep the input order."""
        reversed_issues = list(reversed(issues))
        assert _ids(search(reversed_issues, "src/")) == ["s2", "s1", "z2", "z1"]

    def test_title_scope_ignores_description(self, issues):
        """Test that the title scope does not look at descriptions."""
        assert search(issues, "unescaped", SearchScope.TITLE) == []
        assert _ids(search(issues, "unescaped", SearchScope.DESCRIPTION)) == ["z2"]

    def test_location_scope(self, issues):
        """Test matching on the file location."""
        assert _ids(search(issues, "src/auth", "location")) == ["z1", "s1"]

    def test_id_scope_is_exact(self, issues):
        """Test that the id scope needs the whole id."""
        assert _ids(search(issues, "Z1", SearchScope.ID)) == ["z1"]
        assert search(issues, "z", SearchScope.ID) == []

    def test_all_scope_matches_exact_id(self, issues):
        """Test that the default scope also matches ids exactly."""
        assert _ids(search(issues, "s2")) == ["s2"]

    def test_no_match(self, issues):
        """Test a query that matches nothing."""
        assert search(issues, "kubernetes") == []

    def test_does_not_mutate_input(self, issues):
        """Test that the input list is untouched."""
        before = list(issues)
        search(issues, "sql")
        assert issues == before

    def test_unknown_scope_searches_everything(self, issues):
        """Test that an unknown scope falls back to the all scope."""
        assert _ids(search(issues, "sql", "everywhere")) == _ids(search(issues, "sql"))
        assert _ids(search(issues, "s2", "bogus")) == ["s2"]


class TestCoerceScope:
    """Test scope parsing."""

    def test_string(self):
        """Test names are case-insensitive."""
        assert coerce_scope("Title") is SearchScope.TITLE

    def test_enum_passthrough(self):
        """Test enum members pass through."""
        assert coerce_scope(SearchScope.ID) is SearchScope.ID

    def test_unknown_rejected(self):
        """Test strict parsing still rejects unknown names."""
        with pytest.raises(ValidationError, match="Unknown search scope"):
            coerce_scope("everywhere")


class TestHighlightMatch:
    """Test match highlighting."""

    def test_splits_around_match(self):
        """Test the original casing is preserved."""
        assert highlight_match("SQL Injection in login", "injection") == (
            "SQL ",
            "Injection",
            " in login",
        )

    @pytest.mark.parametrize("query", ["", "  ", "absent"])
    def test_no_match(self, query):
        """Test empty or absent queries give None."""
        assert highlight_match("SQL Injection", query) is None


class TestSearchHistory:
    """Test recent query history."""

    def test_newest_first(self):
        """Test queries are listed newest first."""
        history = SearchHistory()
        history.add("sql")
        history.add("xss")
        assert history.items == ["xss", "sql"]

    def test_repeat_moves_to_front(self):
        """Test a repeated query is not duplicated."""
        history = SearchHistory()
        history.add("sql")
        history.add("xss")
        history.add("SQL")
        assert history.items == ["SQL", "xss"]

    def test_blank_ignored(self):
        """Test blank queries are not recorded."""
        history = SearchHistory()
        history.add("   ")
        assert len(history) == 0

    def test_capped(self):
        """Test the history keeps only the most recent queries."""
        history = SearchHistory()
        for n in range(MAX_SEARCH_HISTORY + 3):
            history.add(f"q{n}")
        assert len(history) == MAX_SEARCH_HISTORY
        assert history.items[0] == f"q{MAX_SEARCH_HISTORY + 2}"

    def test_remove_and_clear(self):
        """Test removing one query and clearing."""
        history = SearchHistory()
        history.add("sql")
        history.add("xss")
        history.remove("SQL")
        assert history.items == ["xss"]
        history.clear()
        assert history.items == []
