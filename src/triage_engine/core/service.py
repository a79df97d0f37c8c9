"""Triage service orchestrating issue loading, the view and fix runs.

This module implements the TriageService class that ties the engine
together: it fetches and normalizes issues, holds the view and selection
state, dispatches fix runs and keeps the processing history in step with
the session store.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

import structlog

from triage_engine.config.schema import TriageConfig
from triage_engine.core.dispatcher import Dispatcher, ProcessingHandle
from triage_engine.core.event_stream import SessionEventStream
from triage_engine.core.export import ExportFormat, export_issues
from triage_engine.core.grouping import GroupingState
from triage_engine.core.history import ProcessingHistory
from triage_engine.core.options import ProcessingPreview, preview_processing, validation_warnings
from triage_engine.core.pipeline import ViewPipeline
from triage_engine.core.selection import SelectionTracker
from triage_engine.core.sessions import SessionStore, get_session_store
from triage_engine.core.sorting import SortController
from triage_engine.core.stats import DashboardStats, calculate_stats
from triage_engine.core.tags import TagRegistry
from triage_engine.models.issue import Issue
from triage_engine.models.session import (
    ProcessingOptions,
    SessionStatus,
    StreamEvent,
    StreamEventType,
)
from triage_engine.models.view import SortState, ViewResult
from triage_engine.utils.async_helpers import ValidationError
from triage_engine.utils.logging import LogEventNames

if TYPE_CHECKING:
    from triage_engine.interfaces.agent import FixAgent
    from triage_engine.interfaces.source import IssueSource

log = structlog.get_logger()


class TriageService:
    """Main orchestrator for one triage workspace.

    Responsibilities:
    - Load issues from the configured source
    - Compose the visible view and track the selection
    - Dispatch fix runs and cancel them
    - Record finished runs in the processing history

    Example:
        service = await create_service(config)
        await service.refresh()
        service.pipeline.set_query("sql")
        service.selection.select_all(service.view().visible)
        handle = await service.process()
        await handle.wait()
    """

    def __init__(
        self,
        config: TriageConfig,
        source: IssueSource,
        agent: FixAgent,
        store: SessionStore | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            config: Engine configuration
            source: Where issues are fetched from
            agent: Launcher for the external fix agent
            store: Session store; the process-wide one when omitted
        """
        self._config = config
        self._source = source
        self._store = store or get_session_store()
        self._dispatcher = Dispatcher(self._store, agent, config)
        self._issues: list[Issue] = []
        self.tags = TagRegistry()

        view = config.view
        self.pipeline = ViewPipeline(
            scope=view.search_scope,
            sort=SortController(SortState(view.sort_field, view.sort_direction)),
            grouping=GroupingState(view.group_by),
            status_of=self._store.status_of,
            tags_of=self.tags.tags_of,
        )
        self.selection = SelectionTracker()
        self.history = ProcessingHistory(config.history.max_entries)
        self._unsubscribe = self._store.subscribe_all(self._on_event)

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def issues(self) -> list[Issue]:
        """The last fetched issues, in source order."""
        return list(self._issues)

    def get_issue(self, issue_id: str) -> Issue | None:
        return next((issue for issue in self._issues if issue.id == issue_id), None)

    async def refresh(self) -> list[Issue]:
        """Fetch issues from the source, dropping selections that no longer exist.

        Raises:
            IssueFetchError: If the source fails. The previous issues are kept.
        """
        issues = await self._source.fetch_issues()
        self._issues = list(issues)
        self.selection.prune(self._issues)
        return self.issues

    def load(self, issues: Iterable[Issue]) -> None:
        """Replace the issue list without going to the source."""
        self._issues = list(issues)
        self.selection.prune(self._issues)

    def view(self) -> ViewResult:
        return self.pipeline.compose(self._issues)

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def process(
        self,
        issue_ids: Sequence[str] | None = None,
        options: ProcessingOptions | None = None,
    ) -> ProcessingHandle:
        """Dispatch a fix run.

        Args:
            issue_ids: Issues to fix; the current selection when omitted
            options: Run options; ``processing`` config when omitted

        Returns:
            Handle on the run

        Raises:
            ValidationError: If there is nothing to process.
            ConflictError: If any issue already has an active run.
            TransportError: If the agent could not be launched.
        """
        if issue_ids is None:
            issue_ids = [issue.id for issue in self.selection.selected_issues(self._issues)]
        opts = options or self._config.processing
        for warning in validation_warnings(opts, self._known(issue_ids)):
            log.warning(LogEventNames.PROCESSING_WARNING, warning=warning)
        handle = await self._dispatcher.submit_processing(issue_ids, opts)
        log.info(
            LogEventNames.PROCESSING_DISPATCHED,
            run_id=handle.run_id,
            issue_count=len(handle.issue_ids),
        )
        return handle

    def preview(
        self,
        issue_ids: Sequence[str] | None = None,
        options: ProcessingOptions | None = None,
    ) -> ProcessingPreview:
        """Cost, duration and warnings for a dispatch, without starting it.

        Durations come from the processing history once it has timed runs.
        """
        if issue_ids is None:
            issues = self.selection.selected_issues(self._issues)
        else:
            issues = self._known(issue_ids)
        return preview_processing(
            options or self._config.processing, issues, self.history.entries()
        )

    def _known(self, issue_ids: Iterable[str]) -> list[Issue]:
        by_id = {issue.id: issue for issue in self._issues}
        return [by_id[issue_id] for issue_id in dict.fromkeys(issue_ids) if issue_id in by_id]

    def cancel_all(self, reason: str = "Processing cancelled") -> int:
        count = self._dispatcher.cancel_all(reason)
        if count:
            log.info(LogEventNames.PROCESSING_CANCELLED, runs=count, reason=reason)
        return count

    def failed_ids(self) -> list[str]:
        """Issues whose last run failed, in start order."""
        return [
            session.issue_id
            for session in self._store.get_active_sessions()
            if session.status is SessionStatus.FAILED
        ]

    async def retry_failed(self, options: ProcessingOptions | None = None) -> ProcessingHandle:
        """Dispatch one run for every failed issue.

        Raises:
            ValidationError: If no run has failed.
        """
        failed = self.failed_ids()
        if not failed:
            raise ValidationError("No failed issues to retry")
        return await self.process(failed, options)

    def stream(
        self,
        issue_ids: Iterable[str],
        handle: ProcessingHandle | None = None,
    ) -> SessionEventStream:
        """Open a live event stream; must be called inside the event loop."""
        return SessionEventStream(
            self._store,
            issue_ids,
            heartbeat_interval=self._config.stream.heartbeat_interval,
            handle=handle,
        )

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def stats(self) -> DashboardStats:
        history = self.history.stats()
        return calculate_stats(
            self._issues,
            completed=history.completed,
            failed=history.failed,
            status_of=self._store.status_of,
        )

    def export(
        self,
        export_format: ExportFormat | str,
        fields: Sequence[str] | None = None,
        visible_only: bool = True,
    ) -> str:
        """Export the visible issues (or all of them) as CSV or JSON."""
        issues = self.pipeline.visible(self._issues) if visible_only else self._issues
        return export_issues(issues, export_format, fields)

    def close(self) -> None:
        """Stop following the store and cancel running batches."""
        self._unsubscribe()
        self._dispatcher.cancel_all("Service closed")

    def _on_event(self, event: StreamEvent) -> None:
        if event.type not in (StreamEventType.COMPLETE, StreamEventType.ERROR):
            return
        issue = self.get_issue(event.issue_id)
        if issue is None:
            return
        session = self._store.get_session(event.issue_id)
        if event.type is StreamEventType.COMPLETE:
            self.history.record_completion(issue, session=session)
        else:
            self.history.record_failure(issue, event.message, session=session)


async def create_service(
    config: TriageConfig,
    store: SessionStore | None = None,
) -> TriageService:
    """Factory function to create a TriageService with its adapters.

    Args:
        config: Engine configuration
        store: Session store; the process-wide one when omitted

    Returns:
        Configured TriageService instance

    Raises:
        ValueError: If the source configuration is incomplete
    """
    source = _create_source(config)
    agent = _create_agent(config)
    return TriageService(config, source, agent, store)


def _create_source(config: TriageConfig) -> IssueSource:
    kind = config.source.kind

    if kind == "command":
        from triage_engine.adapters.source.command import CommandIssueSource

        return CommandIssueSource(config.source, config.priority, config.agent.target_repo)

    if kind == "http":
        if not config.source.url:
            raise ValueError("source.url is required when source.kind is 'http'")
        from triage_engine.adapters.source.http import HTTPIssueSource

        return HTTPIssueSource(config.source, config.priority, config.retry)

    if kind == "file":
        if not config.source.path:
            raise ValueError("source.path is required when source.kind is 'file'")
        from triage_engine.adapters.source.file import FileIssueSource

        return FileIssueSource(config.source.path, config.priority)

    raise ValueError(f"Unsupported issue source: {kind}")


def _create_agent(config: TriageConfig) -> FixAgent:
    from triage_engine.adapters.agent.command import CommandFixAgent

    return CommandFixAgent(config.agent)
