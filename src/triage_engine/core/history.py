"""Record of finished fix runs, most recent first."""

from __future__ import annotations

import json
import threading
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from enum import StrEnum
from typing import Any

import structlog

from triage_engine.models.issue import Issue, Severity
from triage_engine.models.session import ProcessingSession, utc_now
from triage_engine.utils.async_helpers import ValidationError
from triage_engine.utils.logging import LogEventNames

log = structlog.get_logger()

DEFAULT_MAX_ENTRIES = 500


class HistoryStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"


def _history_id() -> str:
    return f"history-{uuid.uuid4().hex[:12]}"


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass(frozen=True)
class HistoryEntry:
    """One finished run."""

    id: str
    issue_id: str
    issue_title: str
    provider: str
    severity: Severity
    status: HistoryStatus
    started_at: datetime
    completed_at: datetime
    duration_ms: int = 0
    pr_url: str | None = None
    error: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.issue_id, self.completed_at.isoformat())

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "issueId": self.issue_id,
            "issueTitle": self.issue_title,
            "provider": self.provider,
            "severity": self.severity.value,
            "status": self.status.value,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat(),
            "duration": self.duration_ms,
        }
        if self.pr_url:
            data["prUrl"] = self.pr_url
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> HistoryEntry:
        """Rebuild an exported entry under a fresh id.

        Raises:
            ValidationError: If a required field is missing or has the wrong type.
        """
        for name in ("issueId", "issueTitle", "provider", "status"):
            if not isinstance(data.get(name), str):
                raise ValidationError(f"history entry field {name!r} must be a string")
        try:
            status = HistoryStatus(data["status"])
            completed_at = _parse_datetime(data.get("completedAt") or utc_now())
            started_at = _parse_datetime(data.get("startedAt") or completed_at)
            duration = int(data.get("duration") or 0)
        except ValueError as e:
            raise ValidationError(f"invalid history entry: {e}") from e
        return cls(
            id=_history_id(),
            issue_id=data["issueId"],
            issue_title=data["issueTitle"],
            provider=data["provider"],
            severity=Severity.coerce(data.get("severity")),
            status=status,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=duration,
            pr_url=data.get("prUrl"),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class HistoryFilter:
    """Criteria for ``ProcessingHistory.entries``; unset fields match everything."""

    status: HistoryStatus | None = None
    provider: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    search: str = ""

    def matches(self, entry: HistoryEntry) -> bool:
        if self.status is not None and entry.status is not self.status:
            return False
        if self.provider and entry.provider != self.provider:
            return False
        day = entry.completed_at.date()
        if self.date_from is not None and day < self.date_from:
            return False
        if self.date_to is not None and day > self.date_to:
            return False
        if self.search:
            needle = self.search.lower()
            haystack = (entry.issue_title, entry.issue_id, entry.provider, entry.error or "")
            if not any(needle in value.lower() for value in haystack):
                return False
        return True


@dataclass(frozen=True)
class HistoryStats:
    total: int
    completed: int
    failed: int
    success_rate: int


class ProcessingHistory:
    """Bounded list of finished runs, newest first.

    Example:
        history = ProcessingHistory(max_entries=100)
        history.record_completion(issue, pr_url="https://github.com/acme/api/pull/7")
        failed = history.entries(HistoryFilter(status=HistoryStatus.FAILED))
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self.max_entries = max_entries
        self._entries: list[HistoryEntry] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _add(self, entries: Iterable[HistoryEntry]) -> None:
        with self._lock:
            self._entries = [*entries, *self._entries][: self.max_entries]

    def _record(
        self,
        issue: Issue,
        status: HistoryStatus,
        session: ProcessingSession | None,
        pr_url: str | None = None,
        error: str | None = None,
    ) -> HistoryEntry:
        completed_at = (session.completed_at if session else None) or utc_now()
        started_at = session.started_at if session else completed_at
        entry = HistoryEntry(
            id=_history_id(),
            issue_id=issue.id,
            issue_title=issue.title,
            provider=issue.provider,
            severity=issue.severity,
            status=status,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=max(0, int((completed_at - started_at).total_seconds() * 1000)),
            pr_url=pr_url,
            error=error,
        )
        self._add([entry])
        log.info(LogEventNames.HISTORY_RECORDED, issue_id=issue.id, status=status.value)
        return entry

    def record_completion(
        self,
        issue: Issue,
        pr_url: str | None = None,
        session: ProcessingSession | None = None,
    ) -> HistoryEntry:
        """Add a completed run; timing comes from ``session`` when given."""
        return self._record(issue, HistoryStatus.COMPLETED, session, pr_url=pr_url)

    def record_failure(
        self,
        issue: Issue,
        error: str | None = None,
        session: ProcessingSession | None = None,
    ) -> HistoryEntry:
        return self._record(
            issue, HistoryStatus.FAILED, session, error=error or "Processing failed"
        )

    def entries(self, criteria: HistoryFilter | None = None) -> list[HistoryEntry]:
        with self._lock:
            entries = list(self._entries)
        if criteria is None:
            return entries
        return [entry for entry in entries if criteria.matches(entry)]

    def get(self, entry_id: str) -> HistoryEntry | None:
        with self._lock:
            return next((entry for entry in self._entries if entry.id == entry_id), None)

    def entries_for_issue(self, issue_id: str) -> list[HistoryEntry]:
        with self._lock:
            return [entry for entry in self._entries if entry.issue_id == issue_id]

    def remove(self, entry_id: str) -> bool:
        with self._lock:
            before = len(self._entries)
            self._entries = [entry for entry in self._entries if entry.id != entry_id]
            return len(self._entries) != before

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def clear_failed(self) -> int:
        """Drop failed entries; returns how many were dropped."""
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.status is not HistoryStatus.FAILED]
            return before - len(self._entries)

    def stats(self) -> HistoryStats:
        entries = self.entries()
        completed = sum(1 for entry in entries if entry.status is HistoryStatus.COMPLETED)
        failed = len(entries) - completed
        rate = round(completed / len(entries) * 100) if entries else 0
        return HistoryStats(len(entries), completed, failed, rate)

    def export_json(self) -> str:
        return json.dumps([entry.to_dict() for entry in self.entries()], indent=2)

    def import_json(self, text: str) -> int:
        """Merge exported entries into the history.

        Invalid entries are skipped. Entries matching an existing
        ``(issue_id, completed_at)`` pair are not added twice.

        Returns:
            Number of entries added.

        Raises:
            ValidationError: If ``text`` is not a JSON array.
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Failed to parse history JSON: {e.msg}") from e
        if not isinstance(data, list):
            raise ValidationError("Invalid history format: expected an array")

        with self._lock:
            seen = {entry.key for entry in self._entries}
        imported: list[HistoryEntry] = []
        for item in data:
            if not isinstance(item, Mapping):
                continue
            try:
                entry = HistoryEntry.from_dict(item)
            except ValidationError as e:
                log.debug(LogEventNames.HISTORY_ENTRY_SKIPPED, error=str(e))
                continue
            if entry.key in seen:
                continue
            seen.add(entry.key)
            imported.append(entry)

        self._add(imported)
        return len(imported)
