"""Processing sessions, activities and the events that drive them."""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_MAX_ACTIVITIES = 500


def utc_now() -> datetime:
    return datetime.now(UTC)


class SessionStatus(StrEnum):
    """Lifecycle of one fix run."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (SessionStatus.PENDING, SessionStatus.PROCESSING)

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


class ActivityType(StrEnum):
    MESSAGE = "message"
    TOOL = "tool"
    RESULT = "result"
    ERROR = "error"


class ActivityStatus(StrEnum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class Activity:
    """One entry in a session timeline.

    Re-ingesting an activity with the same ``id`` replaces the earlier one.
    """

    id: str
    type: ActivityType
    details: str
    status: ActivityStatus = ActivityStatus.SUCCESS
    tool: str | None = None
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type.value,
            "details": self.details,
            "status": self.status.value,
        }
        if self.tool:
            data["tool"] = self.tool
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Activity:
        """Build from the wire shape.

        Raises:
            KeyError: If ``id`` is missing.
            ValueError: If ``type`` or ``status`` is not a known value.
        """
        return cls(
            id=str(data["id"]),
            type=ActivityType(data.get("type", ActivityType.MESSAGE)),
            details=str(data.get("details", "")),
            status=ActivityStatus(data.get("status", ActivityStatus.SUCCESS)),
            tool=data.get("tool"),
            timestamp=str(data.get("timestamp") or utc_now().isoformat()),
        )


@dataclass(frozen=True)
class ExecutionMetrics:
    """Cost and iteration snapshot; each one replaces the previous."""

    iteration: int = 1
    max_iterations: int = 10
    cost_usd: float = 0.0
    duration_ms: int = 0
    total_cost_usd: float = 0.0
    total_duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "maxIterations": self.max_iterations,
            "costUsd": self.cost_usd,
            "durationMs": self.duration_ms,
            "totalCostUsd": self.total_cost_usd,
            "totalDurationMs": self.total_duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExecutionMetrics:
        """Build from either the camelCase wire shape or snake_case keys."""

        def pick(camel: str, snake: str, default: Any) -> Any:
            if camel in data:
                return data[camel]
            return data.get(snake, default)

        return cls(
            iteration=int(pick("iteration", "iteration", 1)),
            max_iterations=int(pick("maxIterations", "max_iterations", 10)),
            cost_usd=float(pick("costUsd", "cost_usd", 0.0)),
            duration_ms=int(pick("durationMs", "duration_ms", 0)),
            total_cost_usd=float(pick("totalCostUsd", "total_cost_usd", 0.0)),
            total_duration_ms=int(pick("totalDurationMs", "total_duration_ms", 0)),
        )


class StreamEventType(StrEnum):
    ACTIVITY = "activity"
    METRICS = "metrics"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"
    HEARTBEAT = "heartbeat"

    @property
    def is_terminal(self) -> bool:
        return self in (
            StreamEventType.COMPLETE,
            StreamEventType.ERROR,
            StreamEventType.CANCELLED,
        )


@dataclass(frozen=True)
class StreamEvent:
    """A routed event for one issue.

    ``payload`` is an ``Activity`` for activity events, an
    ``ExecutionMetrics`` for metrics events and a plain mapping otherwise
    (``{"message": ...}``, ``{"error": ...}``, ``{"reason": ...}``).
    """

    type: StreamEventType
    issue_id: str
    payload: Any = None

    @classmethod
    def activity(cls, issue_id: str, activity: Activity) -> StreamEvent:
        return cls(StreamEventType.ACTIVITY, issue_id, activity)

    @classmethod
    def metrics(cls, issue_id: str, metrics: ExecutionMetrics) -> StreamEvent:
        return cls(StreamEventType.METRICS, issue_id, metrics)

    @classmethod
    def complete(cls, issue_id: str, message: str = "Processing complete") -> StreamEvent:
        return cls(StreamEventType.COMPLETE, issue_id, {"message": message})

    @classmethod
    def error(cls, issue_id: str, error: str) -> StreamEvent:
        return cls(StreamEventType.ERROR, issue_id, {"error": error})

    @classmethod
    def cancelled(cls, issue_id: str, reason: str = "Cancelled") -> StreamEvent:
        return cls(StreamEventType.CANCELLED, issue_id, {"reason": reason})

    @classmethod
    def heartbeat(cls, issue_id: str = "") -> StreamEvent:
        return cls(StreamEventType.HEARTBEAT, issue_id, {"timestamp": utc_now().isoformat()})

    @property
    def message(self) -> str:
        """Human-readable text carried by a terminal event."""
        if isinstance(self.payload, Mapping):
            for key in ("error", "message", "reason"):
                if self.payload.get(key):
                    return str(self.payload[key])
        return ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the ``{"type", "issueId", "payload"}`` wire shape."""
        payload = self.payload
        if isinstance(payload, (Activity, ExecutionMetrics)):
            payload = payload.to_dict()
        elif isinstance(payload, Mapping):
            payload = dict(payload)
        return {"type": self.type.value, "issueId": self.issue_id, "payload": payload}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StreamEvent:
        """Decode the wire shape.

        Raises:
            KeyError: If ``type`` is missing, or an activity payload has no id.
            ValueError: If ``type`` is not a known event type.
        """
        event_type = StreamEventType(data["type"])
        issue_id = str(data.get("issueId") or data.get("issue_id") or "")
        raw_payload = data.get("payload")
        payload: Any = raw_payload
        if event_type is StreamEventType.ACTIVITY and isinstance(raw_payload, Mapping):
            payload = Activity.from_dict(raw_payload)
        elif event_type is StreamEventType.METRICS and isinstance(raw_payload, Mapping):
            payload = ExecutionMetrics.from_dict(raw_payload)
        elif isinstance(raw_payload, str):
            key = "error" if event_type is StreamEventType.ERROR else "message"
            payload = {key: raw_payload}
        return cls(event_type, issue_id, payload)


class ProcessingOptions(BaseModel):
    """Knobs passed to the fix agent for one dispatch."""

    model_config = ConfigDict(frozen=True)

    mode: Literal["plan", "build"] = "build"
    model: Literal["sonnet", "opus"] = "sonnet"
    max_iterations: int = Field(10, ge=1, le=50)
    auto_push: bool = True
    ci_awareness: bool = False
    auto_fix_ci: bool = False


class ActivityFeed:
    """Insertion-ordered activities keyed by id, capped at ``max_activities``.

    Upserting a known id replaces the entry where it stands. Appending past
    the cap evicts the oldest entries.
    """

    def __init__(self, max_activities: int = DEFAULT_MAX_ACTIVITIES) -> None:
        if max_activities < 1:
            raise ValueError("max_activities must be at least 1")
        self.max_activities = max_activities
        self._entries: OrderedDict[str, Activity] = OrderedDict()

    def upsert(self, activity: Activity) -> int:
        """Insert or replace an activity.

        Returns:
            Number of old entries evicted to stay within the cap.
        """
        self._entries[activity.id] = activity
        evicted = 0
        while len(self._entries) > self.max_activities:
            self._entries.popitem(last=False)
            evicted += 1
        return evicted

    def get(self, activity_id: str) -> Activity | None:
        return self._entries.get(activity_id)

    def __contains__(self, activity_id: object) -> bool:
        return activity_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Activity]:
        return iter(list(self._entries.values()))

    def to_list(self) -> list[Activity]:
        return list(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()


@dataclass
class ProcessingSession:
    """Lifecycle record of one fix run against one issue.

    Only the session store mutates these.
    """

    issue_id: str
    status: SessionStatus = SessionStatus.PENDING
    options: ProcessingOptions = field(default_factory=ProcessingOptions)
    started_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None
    error: str | None = None
    metrics: ExecutionMetrics | None = None
    feed: ActivityFeed = field(default_factory=ActivityFeed)

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def activities(self) -> list[Activity]:
        return self.feed.to_list()

    @property
    def duration_ms(self) -> int | None:
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "issueId": self.issue_id,
            "status": self.status.value,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "activities": [activity.to_dict() for activity in self.feed],
            "options": self.options.model_dump(),
        }
