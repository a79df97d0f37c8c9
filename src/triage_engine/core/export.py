"""CSV and JSON export of issue lists."""

from __future__ import annotations

import csv
import dataclasses
import io
import json
from collections.abc import Mapping, Sequence
from datetime import date
from enum import Enum, StrEnum
from typing import Any

from triage_engine.models.issue import Issue
from triage_engine.utils.async_helpers import ValidationError


class ExportFormat(StrEnum):
    CSV = "csv"
    JSON = "json"


DEFAULT_FIELDS: tuple[str, ...] = (
    "id",
    "provider",
    "title",
    "severity",
    "priority",
    "count",
    "location",
    "permalink",
)

EXPORTABLE_FIELDS: dict[str, str] = {
    "id": "ID",
    "provider": "Provider",
    "title": "Title",
    "description": "Description",
    "severity": "Severity",
    "priority": "Priority",
    "count": "Count",
    "location": "Location",
    "permalink": "Permalink",
    "raw_severity": "Raw Severity",
    "status": "Status",
    "tags": "Tags",
}

_ISSUE_FIELDS = frozenset(f.name for f in dataclasses.fields(Issue))


def export_filename(export_format: ExportFormat | str, today: date | None = None) -> str:
    """Default file name for an export, e.g. ``triage-issues-2026-01-31.csv``."""
    day = (today or date.today()).isoformat()
    return f"triage-issues-{day}.{ExportFormat(export_format).value}"


def _value(issue: Issue, field: str) -> Any:
    value = getattr(issue, field)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, tuple):
        return list(value)
    return value


def _csv_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return ";".join(str(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _to_csv(issues: Sequence[Issue], fields: Sequence[str]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(fields)
    for issue in issues:
        writer.writerow([_csv_cell(_value(issue, field)) for field in fields])
    return buffer.getvalue().rstrip("\n")


def _to_json(issues: Sequence[Issue], fields: Sequence[str]) -> str:
    return json.dumps(
        [{field: _value(issue, field) for field in fields} for issue in issues],
        indent=2,
    )


def export_issues(
    issues: Sequence[Issue],
    export_format: ExportFormat | str,
    fields: Sequence[str] | None = None,
) -> str:
    """Render issues as CSV or JSON, keeping only ``fields`` in that order.

    CSV cells holding a comma, quote or newline are quoted and embedded
    quotes doubled. List values are joined with ``;``.

    Raises:
        ValidationError: If the format or a field name is unknown.
    """
    try:
        fmt = ExportFormat(str(export_format).lower())
    except ValueError as e:
        raise ValidationError(f"Unknown export format: {export_format!r}") from e
    columns = list(fields or DEFAULT_FIELDS)
    unknown = [field for field in columns if field not in _ISSUE_FIELDS]
    if unknown:
        raise ValidationError(f"Unknown export fields: {', '.join(unknown)}")
    if fmt is ExportFormat.CSV:
        return _to_csv(issues, columns)
    return _to_json(issues, columns)
