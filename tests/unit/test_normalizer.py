"""Tests for provider payload normalization."""

import pytest

from triage_engine.config.schema import PriorityRules, SentryPriority
from triage_engine.core.normalizer import (
    clamp_priority,
    detect_provider,
    github_label_priority,
    is_canonical,
    normalize_issue,
    normalize_issues,
    sanitize_path_id,
    severity_from_priority,
)
from triage_engine.models.issue import IssueStatus, Severity
from triage_engine.utils.async_helpers import ValidationError


class TestHelpers:
    """Test the small conversion helpers."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (50, 50),
            ("75", 75),
            (150, 100),
            (-5, 0),
            ("high", 0),
            (None, 0),
            (float("nan"), 0),
            (float("inf"), 0),
            ("-inf", 0),
            (1e999, 0),
        ],
    )
    def test_clamp_priority(self, value, expected):
        """Test priorities are coerced into 0-100."""
        assert clamp_priority(value) == expected

    @pytest.mark.parametrize(
        "priority,expected",
        [
            (95, Severity.CRITICAL),
            (90, Severity.CRITICAL),
            (70, Severity.HIGH),
            (50, Severity.MEDIUM),
            (30, Severity.LOW),
            (29, Severity.INFO),
        ],
    )
    def test_severity_from_priority(self, priority, expected):
        """Test priority bands."""
        assert severity_from_priority(priority) is expected

    def test_sanitize_path_id(self):
        """Test file paths become id fragments."""
        assert sanitize_path_id("src/billing/invoice.py") == "src-billing-invoice-py"
        assert sanitize_path_id("a b/c_d.py") == "ab-cd-py"

    def test_github_label_priority_precedence(self):
        """Test that security outranks bug regardless of label order."""
        rules = PriorityRules()
        assert github_label_priority(["bug", "Security"], rules) == 95
        assert github_label_priority(["P1"], rules) == 70
        assert github_label_priority(["docs"], rules) == 25

    def test_is_canonical(self, canonical_records):
        """Test canonical detection needs every canonical key."""
        assert is_canonical(canonical_records[0])
        assert not is_canonical({"id": "x", "title": "y"})


class TestDetectProvider:
    """Test provider sniffing on raw payloads."""

    @pytest.mark.parametrize("provider", ["zeropath", "sentry", "codecov", "github", "linear"])
    def test_detects_each_provider(self, raw_payloads, provider):
        """Test each fixture payload is recognized."""
        assert detect_provider(raw_payloads[provider]) == provider

    def test_unknown_shape(self):
        """Test an unrecognized payload."""
        assert detect_provider({"foo": "bar"}) is None


class TestCanonicalRecords:
    """Test canonical record coercion."""

    def test_fields_are_kept(self, canonical_records):
        """Test that canonical ids and values pass through."""
        issue = normalize_issue(canonical_records[0])
        assert issue.id == "z1"
        assert issue.provider == "zeropath"
        assert issue.severity is Severity.CRITICAL
        assert issue.priority == 95
        assert issue.tags == ("security",)
        assert issue.first_seen == "2026-01-10T08:00:00Z"

    def test_coercion(self):
        """Test loose values are coerced."""
        issue = normalize_issue(
            {
                "id": "x1",
                "provider": "Sentry",
                "title": "t",
                "severity": "fatal",
                "priority": "250",
                "count": "bad",
                "tags": "solo",
                "status": "Completed",
                "metadata": "not a mapping",
            }
        )
        assert issue.provider == "sentry"
        assert issue.severity is Severity.CRITICAL
        assert issue.priority == 100
        assert issue.count == 1
        assert issue.tags == ("solo",)
        assert issue.status is IssueStatus.COMPLETED
        assert dict(issue.metadata) == {}

    def test_unknown_status_is_pending(self):
        """Test unknown statuses fall back to pending."""
        issue = normalize_issue(
            {"id": "x", "provider": "p", "title": "t", "severity": "LOW", "priority": 1,
             "status": "archived"}
        )
        assert issue.status is IssueStatus.PENDING

    def test_blank_id_rejected(self):
        """Test records need an id."""
        with pytest.raises(ValidationError, match="no id"):
            normalize_issue(
                {"id": " ", "provider": "p", "title": "t", "severity": "LOW", "priority": 1}
            )


class TestRawPayloads:
    """Test conversion of raw provider API objects."""

    def test_zeropath(self, raw_payloads):
        """Test a scanner finding with score 8.1."""
        issue = normalize_issue(raw_payloads["zeropath"])
        assert issue.id == "zeropath-vuln-881"
        assert issue.title == "Path traversal in upload handler"
        assert issue.severity is Severity.HIGH
        assert issue.priority == 90
        assert issue.raw_severity == "8.1"
        assert issue.location == "src/files/upload.py"
        assert issue.permalink == "https://zeropath.com"
        assert issue.first_seen == "2026-02-01T10:00:00Z"

    def test_sentry_high_volume_error(self, raw_payloads):
        """Test that an error above the volume threshold gets the boosted priority."""
        issue = normalize_issue(raw_payloads["sentry"])
        assert issue.id == "sentry-4402"
        assert issue.severity is Severity.HIGH
        assert issue.priority == 65
        assert issue.count == 250
        assert issue.description == "'NoneType' object is not subscriptable"
        assert issue.metadata["errorType"] == "TypeError"

    def test_sentry_low_volume_error(self, raw_payloads):
        """Test an error at or below the threshold."""
        raw = dict(raw_payloads["sentry"], count=100)
        assert normalize_issue(raw).priority == 50

    def test_sentry_custom_rules(self, raw_payloads):
        """Test that weights come from the rules."""
        rules = PriorityRules(sentry=SentryPriority(error_high_volume=80))
        assert normalize_issue(raw_payloads["sentry"], rules=rules).priority == 80

    def test_codecov(self, raw_payloads):
        """Test a file at 35.7% coverage."""
        issue = normalize_issue(raw_payloads["codecov"])
        assert issue.id == "codecov-src-billing-invoice-py"
        assert issue.title == "Low coverage: src/billing/invoice.py (35%)"
        assert issue.severity is Severity.HIGH
        assert issue.priority == 64
        assert issue.count == 90
        assert issue.metadata["lines_total"] == 140

    def test_codecov_well_covered_is_info(self, raw_payloads):
        """Test that coverage above every threshold is informational."""
        raw = {"name": "src/ok.py", "totals": {"coverage": 95}}
        issue = normalize_issue(raw)
        assert issue.severity is Severity.INFO
        assert issue.priority == 5

    def test_github(self, raw_payloads):
        """Test a GitHub issue labelled bug and P2."""
        issue = normalize_issue(raw_payloads["github"])
        assert issue.id == "github-1201"
        assert issue.priority == 60
        assert issue.severity is Severity.MEDIUM
        assert issue.count == 4
        assert issue.tags == ("bug", "P2")
        assert issue.location == "acme/api"
        assert dict(issue.target_repo or {}) == {"fullName": "acme/api"}

    def test_linear(self, raw_payloads):
        """Test a Linear issue at priority 2."""
        issue = normalize_issue(raw_payloads["linear"])
        assert issue.id == "linear-b3f1"
        assert issue.severity is Severity.HIGH
        assert issue.priority == 75
        assert issue.location == "In Progress"
        assert issue.tags == ("backend",)

    def test_explicit_provider(self):
        """Test the provider argument overrides sniffing."""
        issue = normalize_issue({"id": "9", "title": "t", "priority": 1}, provider="linear")
        assert issue.id == "linear-9"
        assert issue.priority == 95

    def test_prefixed_id_not_doubled(self):
        """Test that an already prefixed id is kept."""
        issue = normalize_issue({"id": "linear-9", "title": "t"}, provider="linear")
        assert issue.id == "linear-9"

    def test_unknown_provider(self):
        """Test undetectable payloads are rejected."""
        with pytest.raises(ValidationError, match="Cannot determine provider"):
            normalize_issue({"foo": 1})

    def test_non_mapping(self):
        """Test non-object records are rejected."""
        with pytest.raises(ValidationError, match="must be an object"):
            normalize_issue(["not", "a", "dict"])  # type: ignore[arg-type]


class TestNormalizeIssues:
    """Test batch normalization."""

    def test_mixed_batch(self, canonical_records, raw_payloads):
        """Test canonical and raw records together."""
        issues = normalize_issues([*canonical_records, *raw_payloads.values()])
        assert len(issues) == 9

    def test_skips_malformed(self, canonical_records):
        """Test malformed records are skipped, not fatal."""
        issues = normalize_issues([canonical_records[0], {"foo": 1}, "junk", canonical_records[1]])
        assert [i.id for i in issues] == ["z1", "z2"]

    def test_duplicate_ids_keep_first(self, canonical_records):
        """Test that the first occurrence of an id wins."""
        duplicate = dict(canonical_records[0], title="Second copy")
        issues = normalize_issues([canonical_records[0], duplicate])
        assert len(issues) == 1
        assert issues[0].title == "SQL Injection in login handler"

    def test_non_finite_numbers(self, canonical_records):
        """Test infinite priorities and counts do not abort the batch."""
        broken = dict(canonical_records[0], priority=1e999, count="inf")
        issues = normalize_issues([broken, canonical_records[2]])
        assert [i.id for i in issues] == ["z1", "s1"]
        assert issues[0].priority == 0
        assert issues[0].count == 1

    @pytest.mark.parametrize(
        "provider,raw",
        [
            ("sentry", {"id": "9", "level": "error", "metadata": ["oops"], "culprit": "a.py"}),
            ("codecov", {"name": "src/a.py", "totals": "n/a"}),
            ("codecov", {"name": "src/b.py", "totals": {"coverage": "inf", "misses": 1e999}}),
            (
                "github",
                {
                    "id": 7,
                    "labels": "bug",
                    "repository": ["acme/api"],
                    "user": "octocat",
                    "milestone": 3,
                },
            ),
            ("linear", {"id": "L1", "state": "Todo", "labels": {"nodes": ["x", None]}}),
            ("linear", {"id": "L2", "labels": ["bug"]}),
        ],
    )
    def test_malformed_nested_fields(self, canonical_records, provider, raw):
        """Test wrongly typed nested provider fields degrade to defaults."""
        issues = normalize_issues([raw, canonical_records[0]], provider=provider)
        assert [i.provider for i in issues] == [provider, "zeropath"]

    def test_malformed_nested_defaults(self):
        """Test what a wrongly typed nested field falls back to."""
        sentry = normalize_issue(
            {"id": "9", "title": "Boom", "metadata": ["oops"]}, provider="sentry"
        )
        assert sentry.description == "Boom"
        assert sentry.metadata["errorType"] is None
        codecov = normalize_issue({"name": "src/a.py", "totals": "n/a"}, provider="codecov")
        assert codecov.severity is Severity.CRITICAL
        assert codecov.count == 0
        github = normalize_issue({"id": 7, "repository": ["acme/api"]}, provider="github")
        assert github.location == ""
        assert github.target_repo is None
