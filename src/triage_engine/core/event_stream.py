"""Server-side fan-out of session events as Server-Sent Events.

A ``SessionEventStream`` subscribes to the session store for a set of
issues and yields their events as an async iterator. When nothing happens
for ``heartbeat_interval`` seconds it yields a heartbeat so that clients
(and proxies) can tell an idle run from a dead connection. Iteration ends
once every watched session has reached a terminal state.
"""

from __future__ import annotations

import asyncio
import builtins
import json
import threading
from collections.abc import AsyncIterator, Iterable
from types import TracebackType
from typing import TYPE_CHECKING

import structlog

from triage_engine.core.sessions import SessionStore, Unsubscribe
from triage_engine.models.session import StreamEvent
from triage_engine.utils.logging import LogEventNames

if TYPE_CHECKING:
    from triage_engine.core.dispatcher import ProcessingHandle

log = structlog.get_logger()

DEFAULT_HEARTBEAT_INTERVAL = 15.0
SSE_DATA_PREFIX = "data:"


def format_sse(event: StreamEvent) -> str:
    """Encode one event as an SSE ``data:`` frame."""
    return f"data: {json.dumps(event.to_dict())}\n\n"


def parse_sse(line: str) -> StreamEvent | None:
    """Decode one SSE ``data:`` line.

    Returns:
        The event, or None for comments, other fields and undecodable data.
    """
    text = line.strip()
    if not text.startswith(SSE_DATA_PREFIX):
        return None
    try:
        data = json.loads(text[len(SSE_DATA_PREFIX) :].strip())
        if not isinstance(data, dict):
            return None
        return StreamEvent.from_dict(data)
    except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
        log.debug(LogEventNames.STREAM_FRAME_UNDECODABLE, error=str(e))
        return None


class SessionEventStream:
    """Async iterator over the events of a set of issues.

    Must be created inside a running event loop. Store callbacks arriving
    from other threads are handed to the loop thread-safely.

    Example:
        async with SessionEventStream(store, handle.issue_ids, handle=handle) as stream:
            async for event in stream:
                yield format_sse(event)
    """

    def __init__(
        self,
        store: SessionStore,
        issue_ids: Iterable[str],
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        handle: ProcessingHandle | None = None,
    ) -> None:
        self._store = store
        self.issue_ids: tuple[str, ...] = tuple(dict.fromkeys(issue_ids))
        self._heartbeat_interval = heartbeat_interval
        self._handle = handle
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._closed = False
        self._unsubscribers: list[Unsubscribe] = [
            store.subscribe(issue_id, self._on_event) for issue_id in self.issue_ids
        ]

    @property
    def closed(self) -> bool:
        return self._closed

    def _on_event(self, event: StreamEvent) -> None:
        if threading.get_ident() == self._loop_thread:
            self._queue.put_nowait(event)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def _all_terminal(self) -> bool:
        for issue_id in self.issue_ids:
            session = self._store.get_session(issue_id)
            if session is None or session.is_active:
                return False
        return True

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._closed:
            raise StopAsyncIteration
        if self._queue.empty() and self._all_terminal():
            self.close()
            raise StopAsyncIteration
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=self._heartbeat_interval)
        except builtins.TimeoutError:
            log.debug(LogEventNames.STREAM_HEARTBEAT, issue_count=len(self.issue_ids))
            return StreamEvent.heartbeat()

    def close(self) -> None:
        """Stop delivery and cancel the owned run, if it is still going.

        Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self._handle is not None and not self._handle.done and not self._handle.cancelled:
            if any(self._store.is_processing(issue_id) for issue_id in self.issue_ids):
                self._handle.cancel("Stream closed")
        log.debug(LogEventNames.STREAM_CLOSED, issue_count=len(self.issue_ids))

    async def __aenter__(self) -> SessionEventStream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


async def sse_frames(stream: SessionEventStream) -> AsyncIterator[str]:
    """Encode a stream as SSE frames, closing it when the consumer stops."""
    try:
        async for event in stream:
            yield format_sse(event)
    finally:
        stream.close()
