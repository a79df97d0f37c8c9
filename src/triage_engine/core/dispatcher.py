"""Dispatch of issue batches to the external fix agent.

One dispatch starts a session per issue, launches the agent once for the
whole batch and reads its output until it exits:

- ``RALPH_EVENT:{json}`` lines on stdout are already-routed StreamEvents;
  their ``issueId`` also becomes the "current" issue.
- Any other stdout line goes through the StreamReconciler and lands on the
  current issue.
- stderr lines become error activities on the current issue.

When the agent exits, sessions it did not finish itself are completed (exit
code 0) or failed (anything else).
"""

from __future__ import annotations

import asyncio
import builtins
import dataclasses
import json
import uuid
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import dataclass

import structlog

from triage_engine.config.schema import TriageConfig
from triage_engine.core.reconciler import StreamReconciler, truncate
from triage_engine.core.sessions import SessionStore, Subscriber, Unsubscribe
from triage_engine.interfaces.agent import AgentProcess, FixAgent
from triage_engine.models.session import (
    Activity,
    ActivityStatus,
    ActivityType,
    ProcessingOptions,
    StreamEvent,
    StreamEventType,
)
from triage_engine.utils.async_helpers import CancellationToken, TransportError, ValidationError
from triage_engine.utils.logging import LogEventNames, bind_context
from triage_engine.utils.metrics import get_metrics
from triage_engine.utils.security import SecretRedactor, strip_terminal_codes

log = structlog.get_logger()

RALPH_EVENT_PREFIX = "RALPH_EVENT:"
SYSTEM_ISSUE_ID = "system"
DEFAULT_CANCEL_REASON = "Processing cancelled"


def parse_ralph_event(line: str) -> StreamEvent | None:
    """Decode a ``RALPH_EVENT:`` line; None if the line is not one or is malformed."""
    if not line.startswith(RALPH_EVENT_PREFIX):
        return None
    try:
        data = json.loads(line[len(RALPH_EVENT_PREFIX) :])
        if not isinstance(data, dict):
            return None
        return StreamEvent.from_dict(data)
    except (json.JSONDecodeError, KeyError, ValueError, TypeError):
        return None


class ProcessingHandle:
    """Handle on one dispatched batch.

    Example:
        handle = await dispatcher.submit_processing(["sentry-42"])
        handle.subscribe(lambda event: print(event.type, event.issue_id))
        ...
        handle.cancel("user stopped the run")
        await handle.wait()
    """

    def __init__(
        self,
        run_id: str,
        issue_ids: Sequence[str],
        store: SessionStore,
    ) -> None:
        self.run_id = run_id
        self.issue_ids: tuple[str, ...] = tuple(issue_ids)
        self._store = store
        self._token = CancellationToken()
        self._unsubscribers: list[Unsubscribe] = []
        self._task: asyncio.Task[None] | None = None
        self.return_code: int | None = None

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def cancelled(self) -> bool:
        return self._token.is_cancelled

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def subscribe(self, callback: Subscriber) -> Unsubscribe:
        """Receive every event for every issue in the batch.

        Returns:
            Idempotent function stopping delivery to this callback.
        """
        removers = [self._store.subscribe(issue_id, callback) for issue_id in self.issue_ids]

        def unsubscribe() -> None:
            for remove in removers:
                remove()

        self._unsubscribers.append(unsubscribe)
        return unsubscribe

    def cancel(self, reason: str = DEFAULT_CANCEL_REASON) -> bool:
        """Stop the run.

        Handle subscribers are detached before anything else happens, then
        every still-active session is marked cancelled and the agent process
        is told to terminate.

        Returns:
            False if the handle was already cancelled.
        """
        if not self._token.cancel(reason):
            return False
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for issue_id in self.issue_ids:
            if self._store.is_processing(issue_id):
                self._store.record_event(issue_id, StreamEvent.cancelled(issue_id, reason))
        return True

    async def wait(self) -> int | None:
        """Wait until the agent has exited; returns its exit code."""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.return_code

    def _attach(self, task: asyncio.Task[None]) -> None:
        self._task = task


@dataclass
class _RunState:
    current_issue: str


class Dispatcher:
    """Launches fix runs and feeds their output into the session store."""

    def __init__(
        self,
        store: SessionStore,
        agent: FixAgent,
        config: TriageConfig | None = None,
    ) -> None:
        self._store = store
        self._agent = agent
        self._config = config or TriageConfig()
        self._redactor = SecretRedactor()
        self._handles: set[ProcessingHandle] = set()

    @property
    def active_handles(self) -> list[ProcessingHandle]:
        return [handle for handle in self._handles if not handle.done]

    async def submit_processing(
        self,
        issue_ids: Iterable[str],
        options: ProcessingOptions | None = None,
    ) -> ProcessingHandle:
        """Start sessions for the batch and launch the agent.

        Args:
            issue_ids: Issues to process; duplicates are dropped.
            options: Run options; defaults come from ``processing`` config.

        Returns:
            Handle for subscribing to and cancelling the run.

        Raises:
            ValidationError: If no issue ids are given.
            ConflictError: If any issue already has an active run. Nothing
                is started in that case.
            TransportError: If the agent cannot be launched, whatever the
                agent raised. Every session of the batch is failed first; a
                cancelled launch marks them cancelled instead.
        """
        ids = list(dict.fromkeys(issue_id for issue_id in issue_ids if issue_id))
        if not ids:
            raise ValidationError("No issue IDs provided")
        opts = options or self._config.processing

        self._store.start_sessions(ids, opts)
        handle = ProcessingHandle(f"run-{uuid.uuid4().hex[:8]}", ids, self._store)

        try:
            process = await self._agent.launch(ids, opts)
        except asyncio.CancelledError:
            log.info(LogEventNames.AGENT_LAUNCH_FAILED, reason="cancelled")
            for issue_id in ids:
                self._store.record_event(
                    issue_id, StreamEvent.cancelled(issue_id, DEFAULT_CANCEL_REASON)
                )
            raise
        except TransportError as e:
            self._fail_launch(ids, str(e))
            raise
        except Exception as e:
            log.error(LogEventNames.AGENT_LAUNCH_FAILED, error=str(e), error_type=type(e).__name__)
            self._fail_launch(ids, f"Agent launch failed: {e}")
            raise TransportError(f"Agent launch failed: {e}") from e

        task = asyncio.create_task(self._run(handle, process, opts))
        handle._attach(task)
        self._handles.add(handle)
        task.add_done_callback(lambda _: self._handles.discard(handle))
        return handle

    def cancel_all(self, reason: str = DEFAULT_CANCEL_REASON) -> int:
        """Cancel every running batch; returns how many were cancelled."""
        return sum(1 for handle in list(self._handles) if handle.cancel(reason))

    # -------------------------------------------------------------------------
    # Run loop
    # -------------------------------------------------------------------------

    async def _run(
        self,
        handle: ProcessingHandle,
        process: AgentProcess,
        options: ProcessingOptions,
    ) -> None:
        bind_context(run_id=handle.run_id)
        state = _RunState(current_issue=handle.issue_ids[0])
        reconciler = StreamReconciler(
            max_iterations=options.max_iterations,
            truncate_length=self._config.stream.truncate_length,
        )

        readers = [
            asyncio.create_task(self._pump_stdout(process, handle, state, reconciler)),
            asyncio.create_task(self._pump_stderr(process, handle, state)),
        ]
        cancel_wait = asyncio.create_task(handle.token.wait())
        reading = asyncio.gather(*readers)

        await asyncio.wait({reading, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)

        if handle.cancelled:
            await self._terminate(process)
            for reader in readers:
                reader.cancel()
            await asyncio.gather(reading, return_exceptions=True)
            handle.return_code = process.returncode
            log.info(
                LogEventNames.AGENT_EXITED,
                code=handle.return_code,
                cancelled=True,
                reason=handle.token.reason,
            )
            return

        cancel_wait.cancel()
        await asyncio.gather(cancel_wait, return_exceptions=True)
        try:
            await reading
        except Exception as e:
            get_metrics().transport_errors.inc(labels={"kind": "stream"})
            log.error(LogEventNames.AGENT_STREAM_FAILED, error=str(e))
            self._fail_active(handle.issue_ids, f"Agent output stream failed: {e}")
            await self._terminate(process)
            raise
        code = await process.wait()
        handle.return_code = code
        log.info(LogEventNames.AGENT_EXITED, code=code, cancelled=False)
        self._finish(handle.issue_ids, code)

    def _fail_launch(self, issue_ids: Sequence[str], message: str) -> None:
        get_metrics().transport_errors.inc(labels={"kind": "launch"})
        for issue_id in issue_ids:
            self._store.record_event(issue_id, StreamEvent.error(issue_id, message))

    def _fail_active(self, issue_ids: Sequence[str], message: str) -> None:
        for issue_id in issue_ids:
            if self._store.is_processing(issue_id):
                self._store.record_event(issue_id, StreamEvent.error(issue_id, message))

    def _finish(self, issue_ids: Sequence[str], code: int) -> None:
        for issue_id in issue_ids:
            if not self._store.is_processing(issue_id):
                continue
            if code == 0:
                event = StreamEvent.complete(issue_id, "Processing completed")
            else:
                event = StreamEvent.error(issue_id, f"Processing failed with code {code}")
            self._store.record_event(issue_id, event)

    async def _terminate(self, process: AgentProcess) -> None:
        if process.returncode is not None:
            return
        grace = self._config.agent.terminate_grace
        log.info(LogEventNames.AGENT_TERMINATING, grace=grace)
        try:
            process.terminate()
        except ProcessLookupError:
            await process.wait()
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=grace)
        except builtins.TimeoutError:
            process.kill()
            await process.wait()

    async def _read_lines(
        self,
        reader: asyncio.StreamReader,
        handle: ProcessingHandle,
    ) -> AsyncIterator[str]:
        while not handle.cancelled:
            try:
                raw = await reader.readline()
            except ValueError:
                # Line longer than the stream limit; the reader has discarded it
                yield "[output line exceeded stream limit]"
                continue
            if not raw:
                return
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")

    def _sanitize(self, activity: Activity) -> Activity:
        redacted = self._redactor.redact(activity.details)
        if redacted == activity.details:
            return activity
        return dataclasses.replace(activity, details=redacted)

    def _record_activity(self, issue_id: str, activity: Activity) -> None:
        self._store.record_event(issue_id, StreamEvent.activity(issue_id, self._sanitize(activity)))

    async def _pump_stdout(
        self,
        process: AgentProcess,
        handle: ProcessingHandle,
        state: _RunState,
        reconciler: StreamReconciler,
    ) -> None:
        async for line in self._read_lines(process.stdout, handle):
            if handle.cancelled:
                return
            event = parse_ralph_event(strip_terminal_codes(line).strip())
            if event is not None:
                self._route(event, state)
                continue
            parsed = reconciler.parse_line(line)
            if parsed is None:
                continue
            self._record_activity(state.current_issue, parsed.activity)
            if parsed.metrics is not None:
                self._store.record_event(
                    state.current_issue,
                    StreamEvent.metrics(state.current_issue, parsed.metrics),
                )

    def _route(self, event: StreamEvent, state: _RunState) -> None:
        issue_id = event.issue_id
        if issue_id and issue_id != SYSTEM_ISSUE_ID:
            state.current_issue = issue_id
            if event.type is StreamEventType.ACTIVITY and isinstance(event.payload, Activity):
                self._record_activity(issue_id, event.payload)
            else:
                self._store.record_event(issue_id, event)
            return
        # Batch-level events: attach activities to the current issue
        if event.type is StreamEventType.ACTIVITY and isinstance(event.payload, Activity):
            self._record_activity(state.current_issue, event.payload)
        else:
            log.debug(LogEventNames.AGENT_SYSTEM_EVENT, event_type=event.type.value)

    async def _pump_stderr(
        self,
        process: AgentProcess,
        handle: ProcessingHandle,
        state: _RunState,
    ) -> None:
        async for line in self._read_lines(process.stderr, handle):
            text = strip_terminal_codes(line).strip()
            if not text or handle.cancelled:
                continue
            activity = Activity(
                id=f"stderr-{uuid.uuid4().hex[:12]}",
                type=ActivityType.ERROR,
                details=truncate(text, self._config.stream.truncate_length),
                status=ActivityStatus.ERROR,
            )
            self._record_activity(state.current_issue, activity)

