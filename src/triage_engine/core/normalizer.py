"""Conversion of provider payloads into canonical Issue records.

Two input shapes are accepted:

1. Canonical records, as printed by the provider CLI with ``--json``. These
   already carry ``id``, ``provider``, ``title``, ``severity`` and
   ``priority`` and are only coerced field by field.
2. Raw provider API objects (vulnerability scanner findings, error-tracker
   groups, coverage report files, GitHub and Linear issues). These are
   converted with the same mapping tables the provider scripts use, with
   weights taken from ``PriorityRules``.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Iterable, Mapping
from typing import Any

import structlog

from triage_engine.config.schema import PriorityRules
from triage_engine.models.issue import Issue, IssueStatus, Severity
from triage_engine.utils.async_helpers import ValidationError
from triage_engine.utils.logging import LogEventNames

log = structlog.get_logger()

CANONICAL_KEYS = ("id", "provider", "title", "severity", "priority")

# Label categories, in precedence order, and the substrings that select them
GITHUB_LABEL_KEYWORDS: dict[str, tuple[str, ...]] = {
    "security": ("security", "vulnerability", "cve"),
    "critical": ("critical", "urgent", "p0"),
    "high": ("high", "p1"),
    "bug": ("bug", "defect", "error"),
    "medium": ("medium", "p2"),
    "low": ("low", "p3"),
    "enhancement": ("enhancement", "feature", "improvement"),
}

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9-]")

RawConverter = Callable[[Mapping[str, Any], PriorityRules], Issue]


def _finite(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def clamp_priority(value: Any) -> int:
    """Coerce a priority to an int in 0-100; non-numeric or non-finite becomes 0."""
    number = _finite(value)
    if number is None:
        return 0
    return max(0, min(100, int(number)))


def _non_negative_int(value: Any, default: int = 0) -> int:
    number = _finite(value)
    return default if number is None else max(0, int(number))


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _prefixed_id(provider: str, raw_id: Any) -> str:
    raw = _text(raw_id).strip()
    if not raw:
        raise ValidationError(f"{provider} record has no id")
    prefix = f"{provider}-"
    return raw if raw.startswith(prefix) else prefix + raw


def severity_from_priority(priority: int) -> Severity:
    """Severity band for a 0-100 priority."""
    if priority >= 90:
        return Severity.CRITICAL
    if priority >= 70:
        return Severity.HIGH
    if priority >= 50:
        return Severity.MEDIUM
    if priority >= 30:
        return Severity.LOW
    return Severity.INFO


def sanitize_path_id(path: str) -> str:
    """Turn a file path into an id fragment (``src/a.py`` -> ``src-a-py``)."""
    return _UNSAFE_ID_CHARS.sub("", path.replace("/", "-").replace(".", "-"))


# =============================================================================
# Raw provider converters
# =============================================================================


def _from_zeropath(raw: Mapping[str, Any], rules: PriorityRules) -> Issue:
    weights = rules.zeropath
    score = _finite(raw.get("severity")) or 0.0

    if score >= weights.critical_score:
        severity, priority = Severity.CRITICAL, weights.critical
    elif score >= weights.high_score:
        severity, priority = Severity.HIGH, weights.high
    elif score >= weights.medium_score:
        severity, priority = Severity.MEDIUM, weights.medium
    else:
        severity, priority = Severity.LOW, weights.low

    return Issue(
        id=_prefixed_id("zeropath", raw.get("id")),
        provider="zeropath",
        title=_text(raw.get("generatedTitle") or raw.get("title")),
        description=_text(raw.get("generatedDescription") or raw.get("description")),
        severity=severity,
        raw_severity=_text(raw.get("severity")),
        priority=priority,
        count=1,
        location=_text(raw.get("affectedFile")),
        permalink=_text(raw.get("permalink") or "https://zeropath.com"),
        metadata={
            "vulnClass": raw.get("vulnClass"),
            "codeSnippet": raw.get("codeSnippet"),
            "fixRecommendation": raw.get("fixRecommendation"),
            "createdAt": raw.get("createdAt"),
            "firstSeen": raw.get("createdAt"),
        },
    )


def _from_sentry(raw: Mapping[str, Any], rules: PriorityRules) -> Issue:
    weights = rules.sentry
    level = _text(raw.get("level")).lower()
    count = _non_negative_int(raw.get("count"))

    if level == "fatal":
        severity, priority = Severity.CRITICAL, weights.fatal
    elif level == "error":
        severity = Severity.HIGH
        priority = weights.error_high_volume if count > weights.high_volume_count else weights.error
    elif level == "warning":
        severity, priority = Severity.MEDIUM, weights.warning
    else:
        severity, priority = Severity.LOW, weights.other

    raw_metadata = _mapping(raw.get("metadata"))
    title = _text(raw.get("title"))
    return Issue(
        id=_prefixed_id("sentry", raw.get("id")),
        provider="sentry",
        title=title,
        description=_text(raw_metadata.get("value") or title),
        severity=severity,
        raw_severity=level,
        priority=priority,
        count=count,
        location=_text(raw.get("culprit")),
        permalink=_text(raw.get("permalink")),
        metadata={
            "shortId": raw.get("shortId"),
            "level": level,
            "firstSeen": raw.get("firstSeen"),
            "lastSeen": raw.get("lastSeen"),
            "userCount": raw.get("userCount"),
            "errorType": raw_metadata.get("type"),
            "filename": raw_metadata.get("filename"),
            "function": raw_metadata.get("function"),
        },
    )


def _from_codecov(raw: Mapping[str, Any], rules: PriorityRules) -> Issue:
    thresholds = rules.codecov
    path = _text(raw.get("name")).strip()
    if not path:
        raise ValidationError("codecov record has no file name")
    totals = _mapping(raw.get("totals"))
    coverage = min(100.0, max(0.0, _finite(totals.get("coverage")) or 0.0))

    if coverage <= thresholds.critical:
        severity = Severity.CRITICAL
    elif coverage <= thresholds.high:
        severity = Severity.HIGH
    elif coverage <= thresholds.medium:
        severity = Severity.MEDIUM
    elif coverage <= thresholds.low:
        severity = Severity.LOW
    else:
        severity = Severity.INFO

    misses = _non_negative_int(totals.get("misses"))
    lines = _non_negative_int(totals.get("lines"))
    floored = math.floor(coverage)
    return Issue(
        id=f"codecov-{sanitize_path_id(path)}",
        provider="codecov",
        title=f"Low coverage: {path} ({floored}%)",
        description=(
            f"File has {floored}% line coverage. {misses} of {lines} lines uncovered."
        ),
        severity=severity,
        raw_severity=_text(totals.get("coverage")),
        priority=clamp_priority(math.floor(100 - coverage)),
        count=misses,
        location=path,
        permalink=_text(raw.get("permalink")),
        metadata={
            "coverage_percent": coverage,
            "lines_covered": _non_negative_int(totals.get("hits")),
            "lines_missed": misses,
            "lines_total": lines,
            "partials": _non_negative_int(totals.get("partials")),
        },
    )


def github_label_priority(labels: Iterable[str], rules: PriorityRules) -> int:
    """Priority of a GitHub issue from its labels; first matching category wins."""
    lowered = [label.lower() for label in labels]
    for category, weight in rules.github_labels.items():
        keywords = GITHUB_LABEL_KEYWORDS.get(category, (category,))
        if any(keyword in label for label in lowered for keyword in keywords):
            return weight
    return rules.github_default


def _from_github(raw: Mapping[str, Any], rules: PriorityRules) -> Issue:
    labels = [
        _text(label.get("name") if isinstance(label, Mapping) else label)
        for label in _list(raw.get("labels"))
    ]
    priority = github_label_priority(labels, rules)
    repository = _mapping(raw.get("repository"))
    repo_name = _text(repository.get("full_name"))
    return Issue(
        id=_prefixed_id("github", raw.get("id")),
        provider="github",
        title=_text(raw.get("title")),
        description=_text(raw.get("body")),
        severity=severity_from_priority(priority),
        raw_severity=",".join(labels),
        priority=priority,
        count=_non_negative_int(raw.get("comments")) + 1,
        location=repo_name,
        permalink=_text(raw.get("html_url")),
        metadata={
            "number": raw.get("number"),
            "labels": labels,
            "author": _mapping(raw.get("user")).get("login"),
            "milestone": _mapping(raw.get("milestone")).get("title"),
            "comments": _non_negative_int(raw.get("comments")),
            "firstSeen": raw.get("created_at"),
            "lastSeen": raw.get("updated_at"),
        },
        tags=tuple(labels),
        target_repo={"fullName": repo_name} if repo_name else None,
    )


def _from_linear(raw: Mapping[str, Any], rules: PriorityRules) -> Issue:
    weights = rules.linear
    level = _non_negative_int(raw.get("priority"))
    if level == 1:
        severity, priority = Severity.CRITICAL, weights.urgent
    elif level == 2:
        severity, priority = Severity.HIGH, weights.high
    elif level == 3:
        severity, priority = Severity.MEDIUM, weights.medium
    else:
        severity, priority = Severity.LOW, weights.other

    state = _mapping(raw.get("state"))
    labels = [
        _text(_mapping(node).get("name"))
        for node in _list(_mapping(raw.get("labels")).get("nodes"))
    ]
    return Issue(
        id=_prefixed_id("linear", raw.get("id")),
        provider="linear",
        title=_text(raw.get("title")),
        description=_text(raw.get("description")),
        severity=severity,
        raw_severity=str(level),
        priority=priority,
        count=1,
        location=_text(state.get("name") or "Unknown"),
        permalink=_text(raw.get("url")),
        metadata={
            "identifier": raw.get("identifier"),
            "state": state.get("name"),
            "stateType": state.get("type"),
            "priorityLabel": raw.get("priorityLabel"),
            "firstSeen": raw.get("createdAt"),
            "lastSeen": raw.get("updatedAt"),
        },
        tags=tuple(labels),
    )


RAW_CONVERTERS: dict[str, RawConverter] = {
    "zeropath": _from_zeropath,
    "sentry": _from_sentry,
    "codecov": _from_codecov,
    "github": _from_github,
    "linear": _from_linear,
}


def detect_provider(raw: Mapping[str, Any]) -> str | None:
    """Guess which provider API a raw payload came from."""
    if "generatedTitle" in raw or "affectedFile" in raw:
        return "zeropath"
    if "culprit" in raw or ("level" in raw and "permalink" in raw):
        return "sentry"
    if "totals" in raw and "name" in raw:
        return "codecov"
    if "html_url" in raw and "number" in raw:
        return "github"
    if "identifier" in raw:
        return "linear"
    return None


# =============================================================================
# Canonical records
# =============================================================================


def _coerce_status(value: Any) -> IssueStatus:
    try:
        return IssueStatus(_text(value).lower())
    except ValueError:
        return IssueStatus.PENDING


def _coerce_canonical(raw: Mapping[str, Any]) -> Issue:
    issue_id = _text(raw.get("id")).strip()
    if not issue_id:
        raise ValidationError("Issue record has no id")

    tags = raw.get("tags") or ()
    if isinstance(tags, str):
        tags = (tags,)
    elif not isinstance(tags, (list, tuple)):
        tags = ()
    target_repo = raw.get("target_repo")
    return Issue(
        id=issue_id,
        provider=_text(raw.get("provider")).lower(),
        title=_text(raw.get("title")),
        description=_text(raw.get("description")),
        severity=Severity.coerce(raw.get("severity")),
        raw_severity=_text(raw.get("raw_severity")),
        priority=clamp_priority(raw.get("priority")),
        count=_non_negative_int(raw.get("count"), default=1),
        location=_text(raw.get("location")),
        permalink=_text(raw.get("permalink")),
        metadata=raw.get("metadata") if isinstance(raw.get("metadata"), Mapping) else {},
        tags=tuple(_text(tag) for tag in tags),
        status=_coerce_status(raw.get("status")),
        target_repo=target_repo if isinstance(target_repo, Mapping) else None,
    )


def is_canonical(raw: Mapping[str, Any]) -> bool:
    """True when a record already has the canonical issue keys."""
    return all(key in raw for key in CANONICAL_KEYS)


def normalize_issue(
    raw: Mapping[str, Any],
    provider: str | None = None,
    rules: PriorityRules | None = None,
) -> Issue:
    """Convert one provider payload into an Issue.

    Args:
        raw: Canonical record or raw provider API object.
        provider: Provider name for raw payloads; sniffed from the shape when
            omitted.
        rules: Priority weights; defaults to ``PriorityRules()``.

    Returns:
        The canonical Issue.

    Raises:
        ValidationError: If the record is not a mapping, has no id, or its
            provider cannot be determined.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Issue record must be an object, got {type(raw).__name__}")
    if is_canonical(raw):
        return _coerce_canonical(raw)

    name = (provider or detect_provider(raw) or "").lower()
    converter = RAW_CONVERTERS.get(name)
    if converter is None:
        raise ValidationError(f"Cannot determine provider for record: {sorted(raw)[:6]}")
    return converter(raw, rules or PriorityRules())


def normalize_issues(
    raw_list: Iterable[Any],
    provider: str | None = None,
    rules: PriorityRules | None = None,
) -> list[Issue]:
    """Convert a batch, logging and skipping malformed records.

    Duplicate ids keep the first occurrence.
    """
    rules = rules or PriorityRules()
    issues: list[Issue] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_list):
        try:
            issue = normalize_issue(raw, provider=provider, rules=rules)
        except ValidationError as e:
            log.warning(LogEventNames.ISSUE_NORMALIZE_SKIPPED, index=index, error=str(e))
            continue
        if issue.id in seen:
            log.warning(LogEventNames.ISSUE_NORMALIZE_SKIPPED, index=index, error="duplicate id")
            continue
        seen.add(issue.id)
        issues.append(issue)
    return issues
