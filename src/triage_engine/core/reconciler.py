"""Decoding of the fix agent's line-oriented output.

The agent prints one JSON object per line (its ``stream-json`` output),
interleaved with plain log text. Each line is decoded into one of a closed
set of event shapes; anything that does not decode becomes a ``RawLine`` so
no output is ever dropped.

Supported shapes::

    {"type": "assistant", "message": {"content": [{"type": "text", "text": "..."}]}}
    {"type": "content_block_start", "content_block": {"type": "tool_use", "id": "t1", ...}}
    {"type": "content_block_delta", "index": 0,
     "delta": {"type": "input_json_delta", "partial_json": "{\\"file_path\\": ..."}}
    {"type": "user", "message": {"content": [{"type": "tool_result", "tool_use_id": "t1"}]}}
    {"type": "result", "result": {"cost_usd": 0.01, "num_turns": 3, ...}}
    {"type": "result", "total_cost_usd": 0.01, "num_turns": 3, "is_error": false}
    {"type": "error", "error": {"message": "..."}}
"""

from __future__ import annotations

import json
import math
import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from triage_engine.models.session import (
    Activity,
    ActivityFeed,
    ActivityStatus,
    ActivityType,
    ExecutionMetrics,
)
from triage_engine.utils.async_helpers import StreamParseError
from triage_engine.utils.logging import LogEventNames
from triage_engine.utils.metrics import get_metrics
from triage_engine.utils.security import strip_terminal_codes

log = structlog.get_logger()

DEFAULT_TRUNCATE_LENGTH = 200

__all__ = [
    "ActivityFeed",
    "AgentError",
    "AssistantText",
    "ParsedEvent",
    "RawLine",
    "ResultSummary",
    "StreamReconciler",
    "ToolInputDelta",
    "ToolResult",
    "ToolUseStart",
    "decode_line",
    "format_tool_details",
    "parse_event",
    "truncate",
]


# =============================================================================
# Decoded shapes
# =============================================================================


@dataclass(frozen=True)
class AssistantText:
    text: str


@dataclass(frozen=True)
class ToolUseStart:
    tool_use_id: str | None
    name: str
    index: int = 0


@dataclass(frozen=True)
class ToolInputDelta:
    """A fragment of a tool call's JSON input, keyed by content block index."""

    index: int
    partial_json: str


@dataclass(frozen=True)
class ToolResult:
    tool_use_id: str
    is_error: bool
    content: str


@dataclass(frozen=True)
class ResultSummary:
    """End of one agent iteration.

    ``num_turns`` and the totals are None when the line does not carry them;
    the reconciler then fills them from its own running counters.
    """

    cost_usd: float
    duration_ms: int
    num_turns: int | None
    total_cost_usd: float | None
    total_duration_ms: int | None
    is_error: bool


@dataclass(frozen=True)
class AgentError:
    message: str


@dataclass(frozen=True)
class RawLine:
    text: str


AgentEvent = (
    AssistantText
    | ToolUseStart
    | ToolInputDelta
    | ToolResult
    | ResultSummary
    | AgentError
    | RawLine
)


@dataclass(frozen=True)
class ParsedEvent:
    """Activity produced by one line, plus a metrics snapshot for results."""

    activity: Activity
    metrics: ExecutionMetrics | None = None


def truncate(text: str, limit: int = DEFAULT_TRUNCATE_LENGTH) -> str:
    """Cut text longer than ``limit`` to ``limit`` characters plus ``...``."""
    return text if len(text) <= limit else text[:limit] + "..."


def _new_id() -> str:
    return f"activity-{uuid.uuid4().hex[:12]}"


def _tool_activity_id(tool_use_id: str | None) -> str:
    return f"tool-{tool_use_id}" if tool_use_id else _new_id()


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            str(block.get("text", ""))
            for block in content
            if isinstance(block, Mapping) and block.get("type", "text") == "text"
        ]
        return "".join(parts)
    return ""


def _number(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _optional_number(source: Mapping[str, Any], key: str) -> float | None:
    if source.get(key) is None:
        return None
    number = _number(source.get(key), math.nan)
    return None if math.isnan(number) else number


def _block_index(data: Mapping[str, Any]) -> int:
    index = data.get("index", 0)
    return index if isinstance(index, int) and not isinstance(index, bool) else 0


# =============================================================================
# Tool input descriptions
# =============================================================================

_PATH_ACTIONS = {"read": "Reading", "write": "Writing", "edit": "Editing"}

_PARTIAL_FIELDS = {
    key: re.compile(rf'"{key}"\s*:\s*"([^"]+)')
    for key in ("file_path", "command", "pattern", "query")
}


def _clip(value: Any, limit: int) -> str:
    if not value:
        return ""
    text = str(value)
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _short_path(path: Any) -> str:
    if not path:
        return "file"
    text = str(path)
    segments = [segment for segment in text.split("/") if segment]
    if len(segments) <= 2:
        return text
    return ".../" + "/".join(segments[-2:])


def _command(value: Any) -> str:
    if not value:
        return "command"
    return _clip(str(value).replace("\n", " ").strip(), 60)


def _describe(name: str, params: Mapping[str, Any]) -> str:
    tool = name.lower()
    if tool in _PATH_ACTIONS:
        return f"{_PATH_ACTIONS[tool]} {_short_path(params.get('file_path'))}"
    if tool == "bash":
        return f"Running: {_command(params.get('command'))}"
    if tool == "glob":
        return f"Searching: {params.get('pattern') or ''}"
    if tool == "grep":
        return f"Searching for: {params.get('pattern') or ''}"
    if tool == "task":
        return f"Task: {_clip(params.get('description'), 50)}"
    if tool == "todowrite":
        return "Updating todo list"
    if tool == "webfetch":
        return f"Fetching: {_clip(params.get('url'), 50)}"
    if tool == "websearch":
        return f"Searching: {_clip(params.get('query'), 50)}"
    return f"{name}: {json.dumps(params)[:50]}"


def _describe_partial(name: str, partial: str) -> str | None:
    for key, pattern in _PARTIAL_FIELDS.items():
        match = pattern.search(partial)
        if match is None:
            continue
        value = match.group(1)
        if key == "file_path":
            return f"{_PATH_ACTIONS.get(name.lower(), 'Editing')} {_short_path(value)}"
        if key == "command":
            return f"Running: {_command(value)}"
        return f"Searching: {value}"
    return None


def format_tool_details(name: str, tool_input: str) -> str | None:
    """Describe a tool call from its JSON input, which may still be incomplete.

    Complete input is described per tool (``Reading .../auth/login.py``,
    ``Running: pytest -x``, ``Searching for: TODO``). Incomplete input falls
    back to the first recognizable field in the text so far.

    Returns:
        The description, or None while nothing recognizable has arrived.
    """
    if not tool_input:
        return None
    try:
        params = json.loads(tool_input)
    except json.JSONDecodeError:
        return _describe_partial(name, tool_input)
    if not isinstance(params, Mapping):
        return None
    return _describe(name, params)


# =============================================================================
# Line decoding
# =============================================================================


def _decode_assistant(data: Mapping[str, Any]) -> AgentEvent:
    message = data.get("message")
    text = ""
    if isinstance(message, Mapping):
        text = _content_text(message.get("content"))
    if not text:
        text = _content_text(data.get("content"))
    if not text.strip():
        raise StreamParseError("assistant event carries no text")
    return AssistantText(text)


def _decode_tool_start(data: Mapping[str, Any]) -> AgentEvent:
    block = data.get("content_block")
    if not isinstance(block, Mapping) or block.get("type") != "tool_use" or not block.get("name"):
        raise StreamParseError("content_block_start is not a named tool_use block")
    tool_use_id = block.get("id")
    return ToolUseStart(
        str(tool_use_id) if tool_use_id else None,
        str(block["name"]),
        _block_index(data),
    )


def _decode_tool_delta(data: Mapping[str, Any]) -> AgentEvent:
    delta = data.get("delta")
    if not isinstance(delta, Mapping) or delta.get("type") != "input_json_delta":
        raise StreamParseError("content_block_delta carries no tool input")
    partial = delta.get("partial_json")
    if not isinstance(partial, str):
        raise StreamParseError("input_json_delta has no partial_json text")
    return ToolInputDelta(_block_index(data), partial)


def _decode_user(data: Mapping[str, Any]) -> AgentEvent:
    message = data.get("message")
    content = message.get("content") if isinstance(message, Mapping) else None
    if isinstance(content, list):
        for block in content:
            if isinstance(block, Mapping) and block.get("type") == "tool_result":
                tool_use_id = block.get("tool_use_id")
                if tool_use_id:
                    return ToolResult(
                        str(tool_use_id),
                        bool(block.get("is_error")),
                        _content_text(block.get("content")),
                    )
    raise StreamParseError("user event carries no tool_result")


def _decode_result(data: Mapping[str, Any]) -> AgentEvent:
    nested = data.get("result")
    source: Mapping[str, Any] = nested if isinstance(nested, Mapping) else data
    total_cost = _optional_number(source, "total_cost_usd")
    total_duration = _optional_number(source, "total_duration_ms")
    turns = _optional_number(source, "num_turns")
    return ResultSummary(
        cost_usd=_number(source.get("cost_usd", total_cost)),
        duration_ms=int(_number(source.get("duration_ms"))),
        num_turns=int(turns) if turns is not None and turns >= 1 else None,
        total_cost_usd=total_cost,
        total_duration_ms=None if total_duration is None else int(total_duration),
        is_error=bool(source.get("is_error")),
    )


def _decode_error(data: Mapping[str, Any]) -> AgentEvent:
    error = data.get("error")
    if isinstance(error, Mapping):
        message = error.get("message")
    else:
        message = error or data.get("message")
    return AgentError(str(message) if message else "Unknown error")


_DECODERS = {
    "assistant": _decode_assistant,
    "content_block_start": _decode_tool_start,
    "content_block_delta": _decode_tool_delta,
    "user": _decode_user,
    "result": _decode_result,
    "error": _decode_error,
}


def _decode_json(line: str) -> AgentEvent:
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise StreamParseError(f"not JSON: {e.msg}") from e
    if not isinstance(data, Mapping):
        raise StreamParseError("JSON line is not an object")
    decoder = _DECODERS.get(str(data.get("type")))
    if decoder is None:
        raise StreamParseError(f"unknown event type: {data.get('type')!r}")
    return decoder(data)


def decode_line(raw_line: str) -> AgentEvent | None:
    """Decode one line of agent output.

    Returns:
        The decoded event, a ``RawLine`` when the line is not a known event,
        or None for blank lines.
    """
    line = strip_terminal_codes(raw_line).strip()
    if not line:
        return None
    try:
        return _decode_json(line)
    except StreamParseError as e:
        get_metrics().stream_parse_fallbacks.inc()
        log.debug(LogEventNames.STREAM_LINE_FALLBACK, reason=str(e))
        return RawLine(line)


# =============================================================================
# Reconciliation
# =============================================================================


@dataclass
class _ToolCall:
    activity_id: str
    name: str
    tool_input: str = ""
    details: str | None = None


class StreamReconciler:
    """Turns decoded agent events into activities and metrics.

    Keeps the state that spans lines:

    - each open tool call, by content block index and by ``tool_use`` id, so
      input fragments and the later result resolve the same activity in place
    - running cost and duration totals plus an iteration counter, used when a
      result line carries no totals of its own
    - the configured iteration budget

    Example:
        reconciler = StreamReconciler(max_iterations=10)
        parsed = reconciler.parse_line(line)
        if parsed:
            store.record_event(issue_id, StreamEvent.activity(issue_id, parsed.activity))
    """

    def __init__(
        self,
        max_iterations: int = 10,
        truncate_length: int = DEFAULT_TRUNCATE_LENGTH,
    ) -> None:
        self.max_iterations = max_iterations
        self.truncate_length = truncate_length
        self._blocks: dict[int, _ToolCall] = {}
        self._calls: dict[str, _ToolCall] = {}
        self._iterations = 0
        self._total_cost_usd = 0.0
        self._total_duration_ms = 0

    def parse_line(self, raw_line: str) -> ParsedEvent | None:
        event = decode_line(raw_line)
        if event is None:
            return None
        return self.to_parsed(event)

    def to_parsed(self, event: AgentEvent) -> ParsedEvent | None:
        """Map a decoded event to its activity (and metrics for results).

        Returns None for a tool input fragment that changes nothing visible.
        """
        if isinstance(event, AssistantText):
            return self._message(event.text)
        if isinstance(event, ToolUseStart):
            return self._tool_started(event)
        if isinstance(event, ToolInputDelta):
            return self._tool_input(event)
        if isinstance(event, ToolResult):
            return self._tool_finished(event)
        if isinstance(event, ResultSummary):
            return self._result(event)
        if isinstance(event, AgentError):
            return ParsedEvent(
                Activity(
                    id=_new_id(),
                    type=ActivityType.ERROR,
                    details=truncate(event.message, self.truncate_length),
                    status=ActivityStatus.ERROR,
                )
            )
        return self._message(event.text)

    def _message(self, text: str) -> ParsedEvent:
        return ParsedEvent(
            Activity(
                id=_new_id(),
                type=ActivityType.MESSAGE,
                details=truncate(text, self.truncate_length),
                status=ActivityStatus.SUCCESS,
            )
        )

    def _tool_activity(self, call: _ToolCall, details: str, status: ActivityStatus) -> ParsedEvent:
        return ParsedEvent(
            Activity(
                id=call.activity_id,
                type=ActivityType.TOOL,
                tool=call.name,
                details=truncate(details, self.truncate_length),
                status=status,
            )
        )

    def _tool_started(self, event: ToolUseStart) -> ParsedEvent:
        call = _ToolCall(_tool_activity_id(event.tool_use_id), event.name)
        self._blocks[event.index] = call
        if event.tool_use_id:
            self._calls[event.tool_use_id] = call
        return self._tool_activity(call, f"Starting {event.name}...", ActivityStatus.PENDING)

    def _tool_input(self, event: ToolInputDelta) -> ParsedEvent | None:
        call = self._blocks.get(event.index)
        if call is None:
            log.debug(LogEventNames.STREAM_LINE_FALLBACK, reason="input for unknown block")
            return None
        call.tool_input += event.partial_json
        details = format_tool_details(call.name, call.tool_input)
        if details is None or details == call.details:
            return None
        call.details = details
        return self._tool_activity(call, details, ActivityStatus.PENDING)

    def _tool_finished(self, event: ToolResult) -> ParsedEvent:
        call = self._calls.pop(event.tool_use_id, None)
        if call is None:
            call = _ToolCall(_tool_activity_id(event.tool_use_id), "Tool")
        else:
            self._blocks = {i: c for i, c in self._blocks.items() if c is not call}
        if event.is_error:
            details = f"{call.name} failed"
            if event.content:
                details = f"{details}: {event.content}"
            return self._tool_activity(call, details, ActivityStatus.ERROR)
        return self._tool_activity(
            call, call.details or f"{call.name} complete", ActivityStatus.SUCCESS
        )

    def _result(self, event: ResultSummary) -> ParsedEvent:
        self._iterations += 1
        if event.total_cost_usd is None:
            self._total_cost_usd += event.cost_usd
        else:
            self._total_cost_usd = event.total_cost_usd
        if event.total_duration_ms is None:
            self._total_duration_ms += event.duration_ms
        else:
            self._total_duration_ms = event.total_duration_ms

        metrics = ExecutionMetrics(
            iteration=event.num_turns or self._iterations,
            max_iterations=self.max_iterations,
            cost_usd=event.cost_usd,
            duration_ms=event.duration_ms,
            total_cost_usd=self._total_cost_usd,
            total_duration_ms=self._total_duration_ms,
        )
        return ParsedEvent(
            Activity(
                id=_new_id(),
                type=ActivityType.RESULT,
                details=f"Complete - ${event.cost_usd:.4f} / {event.duration_ms / 1000:.1f}s",
                status=ActivityStatus.ERROR if event.is_error else ActivityStatus.SUCCESS,
            ),
            metrics,
        )

    def reset(self) -> None:
        """Forget open tool calls and zero the running totals."""
        self._blocks.clear()
        self._calls.clear()
        self._iterations = 0
        self._total_cost_usd = 0.0
        self._total_duration_ms = 0


def parse_event(raw_line: str, max_iterations: int = 10) -> ParsedEvent | None:
    """Stateless single-line parse; None for blank lines and lone tool input."""
    return StreamReconciler(max_iterations=max_iterations).parse_line(raw_line)
