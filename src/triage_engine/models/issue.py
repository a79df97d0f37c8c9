"""Canonical issue records shared by every provider."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any

_SEVERITY_RANK = {"CRITICAL": 4, "HIGH": 3, "MEDIUM": 2, "LOW": 1, "INFO": 0}

# Words providers use for their own levels
_SEVERITY_ALIASES = {
    "FATAL": "CRITICAL",
    "BLOCKER": "CRITICAL",
    "URGENT": "CRITICAL",
    "ERROR": "HIGH",
    "MAJOR": "HIGH",
    "WARNING": "MEDIUM",
    "WARN": "MEDIUM",
    "MODERATE": "MEDIUM",
    "MINOR": "LOW",
    "DEBUG": "INFO",
    "INFORMATIONAL": "INFO",
    "NONE": "INFO",
}


class Severity(StrEnum):
    """Normalized issue severity."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"

    @property
    def rank(self) -> int:
        """Ordinal used for sorting, CRITICAL highest."""
        return _SEVERITY_RANK[self.value]

    @classmethod
    def coerce(cls, value: Any) -> Severity:
        """Map a provider level or loose string onto a Severity.

        Unknown or empty values become LOW.
        """
        if isinstance(value, Severity):
            return value
        text = str(value or "").strip().upper()
        text = _SEVERITY_ALIASES.get(text, text)
        if text in _SEVERITY_RANK:
            return cls(text)
        return cls.LOW


class IssueStatus(StrEnum):
    """Where an issue stands in the fix workflow."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    IGNORED = "ignored"


def _freeze(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class Issue:
    """A triage item from any provider.

    ``id`` is stable across fetches of the same provider record; selection
    and sessions are keyed on it.
    """

    id: str
    provider: str
    title: str
    severity: Severity
    priority: int
    description: str = ""
    raw_severity: str = ""
    count: int = 1
    location: str = ""
    permalink: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)
    tags: tuple[str, ...] = ()
    status: IssueStatus = IssueStatus.PENDING
    target_repo: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", _freeze(self.metadata))
        if self.target_repo is not None:
            object.__setattr__(self, "target_repo", _freeze(self.target_repo))

    def evolve(self, **changes: Any) -> Issue:
        """Return a copy with the given fields replaced."""
        return dataclasses.replace(self, **changes)

    @property
    def first_seen(self) -> str | None:
        """ISO timestamp the provider first saw the issue, if known."""
        value = self.metadata.get("firstSeen") or self.metadata.get("first_seen")
        return str(value) if value else None

    @property
    def last_seen(self) -> str | None:
        """ISO timestamp the provider last saw the issue, if known."""
        value = self.metadata.get("lastSeen") or self.metadata.get("last_seen")
        return str(value) if value else None

    @property
    def date(self) -> str | None:
        """The date used for sorting and date filters."""
        return self.first_seen or self.last_seen

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase shape the dashboard consumes."""
        data: dict[str, Any] = {
            "id": self.id,
            "provider": self.provider,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "raw_severity": self.raw_severity,
            "priority": self.priority,
            "count": self.count,
            "location": self.location,
            "permalink": self.permalink,
            "metadata": dict(self.metadata),
            "tags": list(self.tags),
            "status": self.status.value,
        }
        if self.target_repo is not None:
            data["target_repo"] = dict(self.target_repo)
        return data
