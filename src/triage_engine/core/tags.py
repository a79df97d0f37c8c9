"""User-defined tags and their assignment to issues.

Provider labels arrive on ``Issue.tags``; the registry adds tags the user
creates and assigns. ``tags_of`` merges both so the tag filter matches
either kind by name.

Example:
    registry = TagRegistry()
    urgent = registry.get_or_create("urgent")
    registry.bulk_add(["zeropath-z1", "sentry-s1"], [urgent.id])
    pipeline = ViewPipeline(tags_of=registry.tags_of)
"""

from __future__ import annotations

import json
import re
import threading
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from typing import Any

import structlog

from triage_engine.models.issue import Issue
from triage_engine.utils.async_helpers import ValidationError
from triage_engine.utils.logging import LogEventNames

log = structlog.get_logger()

TAG_COLORS = (
    "#ef4444",
    "#f97316",
    "#eab308",
    "#22c55e",
    "#14b8a6",
    "#3b82f6",
    "#8b5cf6",
    "#ec4899",
    "#6b7280",
)

_COLOR_PATTERN = re.compile(r"^#[0-9a-fA-F]{6}$")


def _tag_id() -> str:
    return f"tag_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class Tag:
    id: str
    name: str
    color: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "color": self.color}


def _clean_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Tag name must be a non-empty string")
    return name.strip()


def _clean_color(color: Any) -> str:
    if not isinstance(color, str) or not _COLOR_PATTERN.match(color):
        raise ValidationError(f"Tag color must look like #rrggbb, got {color!r}")
    return color.lower()


class TagRegistry:
    """Tags by id plus the ordered tag ids assigned to each issue.

    Names are unique without regard to case. Deleting a tag unassigns it
    everywhere; an issue left with no tags drops out of the assignment map.
    """

    def __init__(self) -> None:
        self._tags: dict[str, Tag] = {}
        self._assigned: dict[str, list[str]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._tags)

    @property
    def tags(self) -> list[Tag]:
        """Every tag, in creation order."""
        with self._lock:
            return list(self._tags.values())

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    def _find_by_name(self, name: str) -> Tag | None:
        key = name.strip().lower()
        return next((tag for tag in self._tags.values() if tag.name.lower() == key), None)

    def _create(self, name: str, color: str | None) -> Tag:
        if self._find_by_name(name) is not None:
            raise ValidationError(f"Tag {name!r} already exists")
        chosen = _clean_color(color) if color else TAG_COLORS[len(self._tags) % len(TAG_COLORS)]
        tag = Tag(_tag_id(), name, chosen)
        self._tags[tag.id] = tag
        log.info(LogEventNames.TAG_CREATED, tag_id=tag.id, name=name)
        return tag

    def create(self, name: str, color: str | None = None) -> Tag:
        """Create a tag; colors cycle through ``TAG_COLORS`` when not given.

        Raises:
            ValidationError: If the name is blank or taken, or the color is
                not ``#rrggbb``.
        """
        clean = _clean_name(name)
        with self._lock:
            return self._create(clean, color)

    def get(self, tag_id: str) -> Tag | None:
        with self._lock:
            return self._tags.get(tag_id)

    def get_by_name(self, name: str) -> Tag | None:
        with self._lock:
            return self._find_by_name(name) if isinstance(name, str) else None

    def get_or_create(self, name: str, color: str | None = None) -> Tag:
        clean = _clean_name(name)
        with self._lock:
            return self._find_by_name(clean) or self._create(clean, color)

    def update(self, tag_id: str, name: str | None = None, color: str | None = None) -> Tag:
        """Rename or recolor a tag.

        Raises:
            ValidationError: If the tag is unknown, the new name belongs to
                another tag, or the color is malformed.
        """
        with self._lock:
            tag = self._tags.get(tag_id)
            if tag is None:
                raise ValidationError(f"Unknown tag: {tag_id!r}")
            changes: dict[str, str] = {}
            if name is not None:
                clean = _clean_name(name)
                other = self._find_by_name(clean)
                if other is not None and other.id != tag_id:
                    raise ValidationError(f"Tag {clean!r} already exists")
                changes["name"] = clean
            if color is not None:
                changes["color"] = _clean_color(color)
            updated = replace(tag, **changes)
            self._tags[tag_id] = updated
            return updated

    def delete(self, tag_id: str) -> bool:
        """Remove a tag and every assignment of it; False if unknown."""
        with self._lock:
            if self._tags.pop(tag_id, None) is None:
                return False
            for issue_id in list(self._assigned):
                self._unassign(issue_id, {tag_id})
        log.info(LogEventNames.TAG_DELETED, tag_id=tag_id)
        return True

    def search(self, query: str) -> list[Tag]:
        """Tags whose name contains ``query``, case-insensitively; all for a blank query."""
        needle = query.strip().lower() if isinstance(query, str) else ""
        return [tag for tag in self.tags if needle in tag.name.lower()]

    # -------------------------------------------------------------------------
    # Assignments
    # -------------------------------------------------------------------------

    def _assign(self, issue_id: str, tag_ids: Iterable[str]) -> None:
        wanted = list(tag_ids)
        for tag_id in wanted:
            if tag_id not in self._tags:
                raise ValidationError(f"Unknown tag: {tag_id!r}")
        if not wanted:
            return
        current = self._assigned.setdefault(issue_id, [])
        for tag_id in wanted:
            if tag_id not in current:
                current.append(tag_id)

    def _unassign(self, issue_id: str, tag_ids: set[str]) -> None:
        remaining = [t for t in self._assigned.get(issue_id, []) if t not in tag_ids]
        if remaining:
            self._assigned[issue_id] = remaining
        else:
            self._assigned.pop(issue_id, None)

    def add(self, issue_id: str, tag_id: str) -> None:
        """Assign a tag to an issue; assigning twice is a no-op.

        Raises:
            ValidationError: If the tag is unknown.
        """
        with self._lock:
            self._assign(issue_id, [tag_id])

    def remove(self, issue_id: str, tag_id: str) -> None:
        with self._lock:
            self._unassign(issue_id, {tag_id})

    def toggle(self, issue_id: str, tag_id: str) -> bool:
        """Flip one assignment; returns True if the issue now has the tag."""
        with self._lock:
            if tag_id in self._assigned.get(issue_id, []):
                self._unassign(issue_id, {tag_id})
                return False
            self._assign(issue_id, [tag_id])
            return True

    def bulk_add(self, issue_ids: Iterable[str], tag_ids: Iterable[str]) -> None:
        """Assign every tag to every issue, all or nothing.

        Raises:
            ValidationError: If any tag is unknown; nothing is assigned.
        """
        wanted = list(dict.fromkeys(tag_ids))
        with self._lock:
            unknown = [tag_id for tag_id in wanted if tag_id not in self._tags]
            if unknown:
                raise ValidationError(f"Unknown tags: {', '.join(unknown)}")
            for issue_id in dict.fromkeys(issue_ids):
                self._assign(issue_id, wanted)

    def bulk_remove(self, issue_ids: Iterable[str], tag_ids: Iterable[str]) -> None:
        unwanted = set(tag_ids)
        with self._lock:
            for issue_id in set(issue_ids):
                self._unassign(issue_id, unwanted)

    def has_tag(self, issue_id: str, tag_id: str) -> bool:
        with self._lock:
            return tag_id in self._assigned.get(issue_id, [])

    def issue_tags(self, issue_id: str) -> list[Tag]:
        """Tags assigned to an issue, in assignment order."""
        with self._lock:
            return [self._tags[tag_id] for tag_id in self._assigned.get(issue_id, [])]

    def issues_with(self, tag_id: str) -> list[str]:
        with self._lock:
            return [issue_id for issue_id, ids in self._assigned.items() if tag_id in ids]

    def usage_counts(self) -> dict[str, int]:
        """Issue count per tag id, zero for unused tags."""
        with self._lock:
            counts = dict.fromkeys(self._tags, 0)
            for ids in self._assigned.values():
                for tag_id in ids:
                    counts[tag_id] += 1
            return counts

    def tags_of(self, issue: Issue) -> frozenset[str]:
        """Provider labels plus assigned tag names; the tag filter's view of an issue."""
        return frozenset(issue.tags) | {tag.name for tag in self.issue_tags(issue.id)}

    # -------------------------------------------------------------------------
    # Import and export
    # -------------------------------------------------------------------------

    def export_json(self) -> str:
        with self._lock:
            data = {
                "tags": [tag.to_dict() for tag in self._tags.values()],
                "issueTags": {issue_id: list(ids) for issue_id, ids in self._assigned.items()},
            }
        return json.dumps(data, indent=2)

    def import_json(self, text: str) -> int:
        """Merge exported tags and assignments.

        Imported tags get fresh ids. A tag whose name already exists is
        merged into the existing one. Assignments naming tags absent from
        the import are skipped.

        Returns:
            Number of tags created.

        Raises:
            ValidationError: If the text is not an export, or a tag in it is
                malformed. Nothing is imported in that case.
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Failed to parse tags JSON: {e.msg}") from e
        if not isinstance(data, Mapping) or not isinstance(data.get("tags"), list):
            raise ValidationError("Tags export must be an object with a 'tags' list")

        incoming = []
        for raw in data["tags"]:
            if not isinstance(raw, Mapping):
                raise ValidationError("Each exported tag must be an object")
            color = raw.get("color")
            incoming.append(
                (str(raw.get("id", "")), _clean_name(raw.get("name")), color or None)
            )
        for _, _, color in incoming:
            if color is not None:
                _clean_color(color)

        raw_assignments = data.get("issueTags")
        assignments = raw_assignments if isinstance(raw_assignments, Mapping) else {}

        created = 0
        with self._lock:
            id_map: dict[str, str] = {}
            for old_id, name, color in incoming:
                existing = self._find_by_name(name)
                if existing is None:
                    existing = self._create(name, color)
                    created += 1
                id_map[old_id] = existing.id
            for issue_id, tag_ids in assignments.items():
                if isinstance(tag_ids, list):
                    mapped = [id_map[str(t)] for t in tag_ids if str(t) in id_map]
                    if mapped:
                        self._assign(str(issue_id), mapped)
        log.info(LogEventNames.TAGS_IMPORTED, created=created, total=len(incoming))
        return created

    def clear(self) -> None:
        with self._lock:
            self._tags.clear()
            self._assigned.clear()
