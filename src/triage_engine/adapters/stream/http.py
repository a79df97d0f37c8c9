"""Client for a remote processing stream served as Server-Sent Events.

The server sends one ``data:`` frame per StreamEvent and a heartbeat when a
run is idle. Silence longer than ``idle_timeout`` is treated as a dead
connection. The client reconnects with exponential backoff and, once the
attempts are exhausted, fails every session that is still running.
"""

from __future__ import annotations

import asyncio
import builtins
from collections.abc import AsyncIterator, Iterable

import httpx
import structlog

from ...config.schema import StreamConfig
from ...core.event_stream import parse_sse
from ...core.sessions import SessionStore
from ...models.session import StreamEvent, StreamEventType
from ...utils.async_helpers import IdleTimeoutError, TransportError, create_retry
from ...utils.logging import LogEventNames
from ...utils.metrics import get_metrics

log = structlog.get_logger()

MAX_RECONNECT_WAIT = 30.0


class SSEStreamClient:
    """Mirrors a remote run into a local SessionStore.

    Example:
        client = SSEStreamClient("http://localhost:3000/api/process/stream", store)
        await client.follow(["sentry-42", "zeropath-7"])
    """

    def __init__(
        self,
        url: str,
        store: SessionStore,
        config: StreamConfig | None = None,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._store = store
        self._config = config or StreamConfig()
        self._token = token
        self._client = client
        self._attempt = 0

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _all_terminal(self, issue_ids: tuple[str, ...]) -> bool:
        for issue_id in issue_ids:
            session = self._store.get_session(issue_id)
            if session is None or session.is_active:
                return False
        return True

    async def follow(self, issue_ids: Iterable[str]) -> None:
        """Record the remote events for ``issue_ids`` until every run ends.

        Raises:
            TransportError: When the connection could not be kept alive
                after ``max_reconnect_attempts`` reconnects. Every
                non-terminal session has been failed by then.
        """
        ids = tuple(dict.fromkeys(issue_ids))
        self._attempt = 0
        retry = create_retry(
            max_attempts=self._config.max_reconnect_attempts + 1,
            min_wait=self._config.reconnect_delay,
            # A zero delay reconnects immediately
            max_wait=max(self._config.reconnect_delay, MAX_RECONNECT_WAIT)
            if self._config.reconnect_delay
            else 0,
            retry_on=(TransportError,),
        )
        try:
            await retry(self._connect)(ids)
        except TransportError as e:
            log.error(LogEventNames.STREAM_CLOSED, error=str(e), attempts=self._attempt)
            self._fail_remaining(ids, str(e))
            raise

    def _fail_remaining(self, issue_ids: tuple[str, ...], message: str) -> None:
        for issue_id in issue_ids:
            if not self._store.is_processing(issue_id):
                continue
            self._store.record_event(issue_id, StreamEvent.error(issue_id, message))

    async def _connect(self, issue_ids: tuple[str, ...]) -> None:
        self._attempt += 1
        if self._attempt > 1:
            log.info(LogEventNames.STREAM_RECONNECTING, attempt=self._attempt)
        try:
            if self._client is not None:
                await self._consume(self._client, issue_ids)
            else:
                async with httpx.AsyncClient(timeout=None) as client:
                    await self._consume(client, issue_ids)
        except TransportError:
            get_metrics().transport_errors.inc(labels={"kind": "sse"})
            raise
        except httpx.HTTPStatusError as e:
            get_metrics().transport_errors.inc(labels={"kind": "sse"})
            raise TransportError(f"Stream endpoint returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            get_metrics().transport_errors.inc(labels={"kind": "sse"})
            raise TransportError(f"Stream connection failed: {e}") from e

    async def _consume(self, client: httpx.AsyncClient, issue_ids: tuple[str, ...]) -> None:
        params = {"ids": ",".join(issue_ids)}
        async with client.stream(
            "GET", self._url, params=params, headers=self._headers()
        ) as response:
            response.raise_for_status()
            async for event in self._events(response.aiter_lines()):
                if event.type is StreamEventType.HEARTBEAT:
                    log.debug(LogEventNames.STREAM_HEARTBEAT)
                    continue
                if event.issue_id not in issue_ids:
                    continue
                self._store.record_event(event.issue_id, event)
                if self._all_terminal(issue_ids):
                    return
        if not self._all_terminal(issue_ids):
            raise TransportError("Stream ended before processing finished")

    async def _events(self, lines: AsyncIterator[str]) -> AsyncIterator[StreamEvent]:
        timeout = self._config.idle_timeout
        while True:
            try:
                line = await asyncio.wait_for(anext(lines), timeout=timeout)
            except StopAsyncIteration:
                return
            except builtins.TimeoutError as e:
                log.warning(LogEventNames.STREAM_IDLE_TIMEOUT, idle_timeout=timeout)
                raise IdleTimeoutError(f"No stream events received for {timeout}s") from e
            event = parse_sse(line)
            if event is not None:
                yield event
