"""Aggregate numbers for the dashboard header."""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field

from triage_engine.core.filters import StatusResolver
from triage_engine.models.issue import Issue, IssueStatus, Severity

TOP_FILES_LIMIT = 10

PRIORITY_BUCKETS: tuple[tuple[str, int, int], ...] = (
    ("0-19", 0, 19),
    ("20-39", 20, 39),
    ("40-59", 40, 59),
    ("60-79", 60, 79),
    ("80-100", 80, 100),
)


@dataclass(frozen=True)
class DashboardStats:
    total_issues: int
    by_provider: dict[str, int]
    by_severity: dict[Severity, int]
    by_status: dict[IssueStatus, int]
    priority_distribution: list[tuple[str, int]]
    processing_success_rate: float
    top_files: list[tuple[str, int]] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "totalIssues": self.total_issues,
            "byProvider": dict(self.by_provider),
            "bySeverity": {s.value: n for s, n in self.by_severity.items()},
            "byStatus": {s.value: n for s, n in self.by_status.items()},
            "priorityDistribution": [
                {"range": label, "count": n} for label, n in self.priority_distribution
            ],
            "processingSuccessRate": self.processing_success_rate,
            "topFilesByIssues": [{"file": f, "count": n} for f, n in self.top_files],
        }


def _bucket(priority: int) -> str:
    for label, low, high in PRIORITY_BUCKETS:
        if low <= priority <= high:
            return label
    return PRIORITY_BUCKETS[-1][0] if priority > 100 else PRIORITY_BUCKETS[0][0]


def calculate_stats(
    issues: Sequence[Issue],
    completed: int = 0,
    failed: int = 0,
    status_of: StatusResolver | None = None,
) -> DashboardStats:
    """Count issues by provider, severity, status, priority band and file.

    Args:
        issues: Issues to summarize.
        completed: Finished runs that succeeded.
        failed: Finished runs that failed.
        status_of: Live status lookup; defaults to each issue's own status.

    Returns:
        Stats with every severity, status and priority band present, zero
        when empty. The success rate is a percentage, 0 with no runs.
    """
    resolve = status_of or (lambda issue: issue.status)
    by_severity = dict.fromkeys(Severity, 0)
    by_status = dict.fromkeys(IssueStatus, 0)
    buckets = dict.fromkeys((label for label, _, _ in PRIORITY_BUCKETS), 0)
    providers: Counter[str] = Counter()
    files: Counter[str] = Counter()

    for issue in issues:
        providers[issue.provider] += 1
        by_severity[issue.severity] += 1
        by_status[resolve(issue)] += 1
        buckets[_bucket(issue.priority)] += 1
        if issue.location:
            files[issue.location] += 1

    processed = completed + failed
    top_files = sorted(files.items(), key=lambda item: (-item[1], item[0]))[:TOP_FILES_LIMIT]
    return DashboardStats(
        total_issues=len(issues),
        by_provider=dict(providers),
        by_severity=by_severity,
        by_status=by_status,
        priority_distribution=list(buckets.items()),
        processing_success_rate=(completed / processed * 100) if processed else 0.0,
        top_files=top_files,
    )
