"""Compound filters over issues and the controller that edits them.

Dimensions are ANDed together. Within the set-valued dimensions (providers,
severities, status, tags) membership is ORed. Empty sets and open ranges
constrain nothing, so narrowing any dimension can only shrink the result.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Iterable, Sequence
from typing import Any

import structlog

from triage_engine.models.issue import Issue, IssueStatus, Severity
from triage_engine.models.view import (
    DEFAULT_PRIORITY_RANGE,
    CountRange,
    DateRange,
    FilterState,
)
from triage_engine.utils.async_helpers import ValidationError
from triage_engine.utils.logging import LogEventNames

log = structlog.get_logger()

StatusResolver = Callable[[Issue], IssueStatus]
TagResolver = Callable[[Issue], Iterable[str]]


def _in_priority_range(issue: Issue, bounds: tuple[int, int]) -> bool:
    low, high = bounds
    return low <= issue.priority <= high


def _in_count_range(issue: Issue, bounds: CountRange) -> bool:
    if bounds.min is not None and issue.count < bounds.min:
        return False
    if bounds.max is not None and issue.count > bounds.max:
        return False
    return True


def _in_date_range(issue: Issue, bounds: DateRange) -> bool:
    if bounds.is_unbounded:
        return True
    date = issue.date
    if date is None:
        return True
    # ISO-8601 strings order lexicographically; compare on the date prefix
    # so a bare "2024-01-31" end bound includes that whole day.
    if bounds.start is not None and date[: len(bounds.start)] < bounds.start:
        return False
    if bounds.end is not None and date[: len(bounds.end)] > bounds.end:
        return False
    return True


def matches_filters(
    issue: Issue,
    state: FilterState,
    status_of: StatusResolver | None = None,
    tags_of: TagResolver | None = None,
) -> bool:
    """Whether one issue passes every dimension of ``state``."""
    if state.providers and issue.provider not in state.providers:
        return False
    if state.severities and issue.severity not in state.severities:
        return False
    if not _in_priority_range(issue, state.priority_range):
        return False
    if state.status:
        status = status_of(issue) if status_of else issue.status
        if status not in state.status:
            return False
    if state.tags and not state.tags.intersection(tags_of(issue) if tags_of else issue.tags):
        return False
    if not _in_count_range(issue, state.count_range):
        return False
    return _in_date_range(issue, state.date_range)


def filter_issues(
    issues: Sequence[Issue],
    state: FilterState,
    status_of: StatusResolver | None = None,
    tags_of: TagResolver | None = None,
) -> list[Issue]:
    """Return the issues passing ``state``, in input order.

    Args:
        issues: Issues to filter.
        state: Filter to apply.
        status_of: Optional resolver returning the live status of an issue
            (for example from the session store) in place of ``issue.status``.
        tags_of: Optional resolver returning every tag of an issue (for
            example provider labels plus user tags) in place of ``issue.tags``.
    """
    return [issue for issue in issues if matches_filters(issue, state, status_of, tags_of)]


def active_dimensions(state: FilterState) -> list[str]:
    """Names of the dimensions that differ from the default."""
    active = []
    if state.providers:
        active.append("providers")
    if state.severities:
        active.append("severities")
    if tuple(state.priority_range) != DEFAULT_PRIORITY_RANGE:
        active.append("priority_range")
    if state.status:
        active.append("status")
    if state.tags:
        active.append("tags")
    if not state.count_range.is_unbounded:
        active.append("count_range")
    if not state.date_range.is_unbounded:
        active.append("date_range")
    return active


def has_active_filters(state: FilterState) -> bool:
    return bool(active_dimensions(state))


def active_filter_count(state: FilterState) -> int:
    return len(active_dimensions(state))


def _toggle(members: frozenset[Any], value: Any) -> frozenset[Any]:
    return members - {value} if value in members else members | {value}


def _to_number(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be numeric, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be numeric, got {value!r}") from e


def validate_priority_range(low: Any, high: Any) -> tuple[int, int]:
    """Clamp to 0-100 and order the bounds.

    Raises:
        ValidationError: If either bound is not numeric.
    """
    low_num = _to_number(low, "priority min")
    high_num = _to_number(high, "priority max")
    if low_num > high_num:
        low_num, high_num = high_num, low_num
    return (max(0, min(100, int(low_num))), max(0, min(100, int(high_num))))


def validate_count_range(low: Any, high: Any) -> CountRange:
    """Order the bounds, floor them at zero; None stays open.

    Raises:
        ValidationError: If a bound is neither None nor numeric.
    """
    low_num = None if low is None or low == "" else max(0, int(_to_number(low, "count min")))
    high_num = None if high is None or high == "" else max(0, int(_to_number(high, "count max")))
    if low_num is not None and high_num is not None and low_num > high_num:
        low_num, high_num = high_num, low_num
    return CountRange(low_num, high_num)


def validate_date_range(start: Any, end: Any) -> DateRange:
    """Order ISO date bounds; blank stays open.

    Raises:
        ValidationError: If a bound is not a string.
    """
    bounds = []
    for name, value in (("start", start), ("end", end)):
        if value is None or value == "":
            bounds.append(None)
        elif isinstance(value, str):
            bounds.append(value.strip())
        else:
            raise ValidationError(f"date {name} must be an ISO string, got {value!r}")
    low, high = bounds
    if low is not None and high is not None and low > high:
        low, high = high, low
    return DateRange(low, high)


class FilterController:
    """Mutable holder for the current FilterState.

    Every edit produces a new frozen FilterState. Out-of-range input is
    repaired (clamped, swapped); input that cannot be repaired is logged and
    leaves the state unchanged.

    Example:
        controller = FilterController()
        controller.toggle_provider("zeropath")
        controller.set_priority_range(70, 100)
        visible = filter_issues(issues, controller.state)
    """

    def __init__(self, state: FilterState | None = None) -> None:
        self._state = state or FilterState()

    @property
    def state(self) -> FilterState:
        return self._state

    @property
    def has_active_filters(self) -> bool:
        return has_active_filters(self._state)

    @property
    def active_filter_count(self) -> int:
        return active_filter_count(self._state)

    def _replace(self, **changes: Any) -> FilterState:
        self._state = dataclasses.replace(self._state, **changes)
        return self._state

    def toggle_provider(self, provider: str) -> FilterState:
        return self._replace(providers=_toggle(self._state.providers, provider.lower()))

    def toggle_severity(self, severity: Severity | str) -> FilterState:
        return self._replace(severities=_toggle(self._state.severities, Severity.coerce(severity)))

    def toggle_status(self, status: IssueStatus | str) -> FilterState:
        try:
            value = IssueStatus(status)
        except ValueError:
            log.warning(LogEventNames.FILTER_INPUT_RECOVERED, field="status", value=str(status))
            return self._state
        return self._replace(status=_toggle(self._state.status, value))

    def toggle_tag(self, tag: str) -> FilterState:
        return self._replace(tags=_toggle(self._state.tags, tag))

    def set_providers(self, providers: Iterable[str]) -> FilterState:
        return self._replace(providers=frozenset(p.lower() for p in providers))

    def set_severities(self, severities: Iterable[Severity | str]) -> FilterState:
        return self._replace(severities=frozenset(Severity.coerce(s) for s in severities))

    def set_priority_range(self, low: Any, high: Any) -> FilterState:
        try:
            bounds = validate_priority_range(low, high)
        except ValidationError as e:
            log.warning(LogEventNames.FILTER_INPUT_RECOVERED, field="priority_range", error=str(e))
            return self._state
        return self._replace(priority_range=bounds)

    def set_count_range(self, low: Any, high: Any) -> FilterState:
        try:
            bounds = validate_count_range(low, high)
        except ValidationError as e:
            log.warning(LogEventNames.FILTER_INPUT_RECOVERED, field="count_range", error=str(e))
            return self._state
        return self._replace(count_range=bounds)

    def set_date_range(self, start: Any, end: Any) -> FilterState:
        try:
            bounds = validate_date_range(start, end)
        except ValidationError as e:
            log.warning(LogEventNames.FILTER_INPUT_RECOVERED, field="date_range", error=str(e))
            return self._state
        return self._replace(date_range=bounds)

    def update(self, **changes: Any) -> FilterState:
        """Apply several edits at once.

        Accepts ``providers``, ``severities``, ``status``, ``tags``,
        ``priority_range``, ``count_range`` and ``date_range``; ranges go
        through the same repair as the dedicated setters.
        """
        for key, value in changes.items():
            if key == "providers":
                self.set_providers(value)
            elif key == "severities":
                self.set_severities(value)
            elif key == "status":
                valid = []
                for item in value:
                    try:
                        valid.append(IssueStatus(item))
                    except ValueError:
                        log.warning(
                            LogEventNames.FILTER_INPUT_RECOVERED, field="status", value=str(item)
                        )
                self._replace(status=frozenset(valid))
            elif key == "tags":
                self._replace(tags=frozenset(value))
            elif key == "priority_range":
                self.set_priority_range(*value)
            elif key == "count_range":
                bounds = (value.min, value.max) if isinstance(value, CountRange) else value
                self.set_count_range(*bounds)
            elif key == "date_range":
                bounds = (value.start, value.end) if isinstance(value, DateRange) else value
                self.set_date_range(*bounds)
            else:
                log.warning(LogEventNames.FILTER_INPUT_RECOVERED, field=key, error="unknown filter")
        return self._state

    def clear(self) -> FilterState:
        self._state = FilterState()
        return self._state

    def apply(
        self,
        issues: Sequence[Issue],
        status_of: StatusResolver | None = None,
        tags_of: TagResolver | None = None,
    ) -> list[Issue]:
        return filter_issues(issues, self._state, status_of, tags_of)
