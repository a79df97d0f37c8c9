"""Process-wide registry of fix runs, keyed by issue.

Each issue has at most one active run. A run moves
``pending -> processing -> completed | failed | cancelled``; starting a new
run on an issue whose last run finished replaces the old session with a new
object. Events for an issue are applied in arrival order under a single
store-wide lock and then fanned out synchronously to subscribers.

Example:
    store = get_session_store()
    unsubscribe = store.subscribe("sentry-42", lambda event: print(event.type))
    store.start_session("sentry-42")
    store.record_event("sentry-42", StreamEvent.complete("sentry-42"))
    unsubscribe()
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

import structlog

from triage_engine.models.issue import Issue, IssueStatus
from triage_engine.models.session import (
    DEFAULT_MAX_ACTIVITIES,
    Activity,
    ActivityFeed,
    ActivityStatus,
    ActivityType,
    ExecutionMetrics,
    ProcessingOptions,
    ProcessingSession,
    SessionStatus,
    StreamEvent,
    StreamEventType,
    utc_now,
)
from triage_engine.utils.async_helpers import ConflictError
from triage_engine.utils.logging import LogEventNames
from triage_engine.utils.metrics import get_metrics

log = structlog.get_logger()

Subscriber = Callable[[StreamEvent], None]
Unsubscribe = Callable[[], None]

_TERMINAL_STATUS = {
    StreamEventType.COMPLETE: SessionStatus.COMPLETED,
    StreamEventType.ERROR: SessionStatus.FAILED,
    StreamEventType.CANCELLED: SessionStatus.CANCELLED,
}


def _activity_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _decode_payload(issue_id: str, event: StreamEvent) -> StreamEvent:
    """Rebuild the event for ``issue_id`` with wire mappings turned into models."""
    payload = event.payload
    if event.type is StreamEventType.ACTIVITY and isinstance(payload, Mapping):
        return StreamEvent.activity(issue_id, Activity.from_dict(payload))
    if event.type is StreamEventType.METRICS and isinstance(payload, Mapping):
        return StreamEvent.metrics(issue_id, ExecutionMetrics.from_dict(payload))
    if event.issue_id != issue_id:
        return StreamEvent(event.type, issue_id, payload)
    return event


@dataclass
class _Subscription:
    callback: Subscriber
    issue_id: str | None
    active: bool = True


class SessionStore:
    """Owner of every ProcessingSession.

    Attributes:
        max_activities: Retention cap applied to each new session's feed.
    """

    _instance: SessionStore | None = None
    _instance_lock = threading.Lock()

    def __init__(self, max_activities: int = DEFAULT_MAX_ACTIVITIES) -> None:
        self.max_activities = max_activities
        self._lock = threading.RLock()
        self._sessions: dict[str, ProcessingSession] = {}
        self._subscribers: dict[str, list[_Subscription]] = {}
        self._global_subscribers: list[_Subscription] = []

    @classmethod
    def get_instance(cls) -> SessionStore:
        """Get the process-wide store."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Discard the process-wide store; the next get_instance() builds a new one."""
        with cls._instance_lock:
            cls._instance = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start_session(
        self,
        issue_id: str,
        options: ProcessingOptions | None = None,
    ) -> ProcessingSession:
        """Begin a run for one issue.

        Raises:
            ConflictError: If the issue already has a pending or processing run.
        """
        return self.start_sessions([issue_id], options)[0]

    def start_sessions(
        self,
        issue_ids: Iterable[str],
        options: ProcessingOptions | None = None,
    ) -> list[ProcessingSession]:
        """Begin runs for several issues, all or none.

        Raises:
            ConflictError: Listing every issue that already has an active run;
                no session is started in that case.
        """
        ids = list(dict.fromkeys(issue_ids))
        opts = options or ProcessingOptions()
        with self._lock:
            conflicts = [i for i in ids if i in self._sessions and self._sessions[i].is_active]
            if conflicts:
                get_metrics().conflicts_rejected.inc(len(conflicts))
                log.warning(LogEventNames.SESSION_CONFLICT, issue_ids=conflicts)
                raise ConflictError(conflicts)

            started = []
            for issue_id in ids:
                session = ProcessingSession(
                    issue_id=issue_id,
                    options=opts,
                    feed=ActivityFeed(self.max_activities),
                )
                # Re-insert so iteration order follows start order
                self._sessions.pop(issue_id, None)
                self._sessions[issue_id] = session
                started.append(session)

                activity = Activity(
                    id=_activity_id("start"),
                    type=ActivityType.MESSAGE,
                    details=(
                        f"Starting processing ({opts.mode} mode, {opts.model}, "
                        f"max {opts.max_iterations} iterations)"
                    ),
                    status=ActivityStatus.PENDING,
                )
                self._ingest_activity(session, activity)
                session.status = SessionStatus.PROCESSING
                get_metrics().sessions_started.inc(labels={"mode": opts.mode})
                log.info(LogEventNames.SESSION_STARTED, issue_id=issue_id, mode=opts.mode)
                self._notify(StreamEvent.activity(issue_id, activity))

            self._update_active_gauge()
            return started

    def record_event(self, issue_id: str, event: StreamEvent) -> ProcessingSession | None:
        """Apply one streamed event to an issue's session.

        An event for an issue with no session creates an implicit
        ``processing`` session. Activities and metrics are accepted after a
        run has finished; a second terminal event is ignored. Heartbeats
        touch nothing.

        An activity or metrics payload that arrives as a malformed mapping is
        logged and dropped; the session is left as it was.

        Returns:
            The session the event was applied to, or None for heartbeats.
        """
        if event.type is StreamEventType.HEARTBEAT:
            return None
        try:
            event = _decode_payload(issue_id, event)
        except (KeyError, ValueError, TypeError, OverflowError) as e:
            log.warning(
                LogEventNames.SESSION_PAYLOAD_DROPPED,
                issue_id=issue_id,
                event_type=event.type.value,
                error=f"{type(e).__name__}: {e}",
            )
            with self._lock:
                return self._sessions.get(issue_id)

        with self._lock:
            session = self._sessions.get(issue_id)
            if session is None:
                session = ProcessingSession(
                    issue_id=issue_id,
                    status=SessionStatus.PROCESSING,
                    feed=ActivityFeed(self.max_activities),
                )
                self._sessions[issue_id] = session
                log.info(LogEventNames.SESSION_IMPLICIT_CREATED, issue_id=issue_id)

            if event.type is StreamEventType.ACTIVITY:
                self._ingest_activity(session, event.payload)
            elif event.type is StreamEventType.METRICS:
                session.metrics = event.payload
            else:
                if session.is_terminal:
                    log.debug(
                        LogEventNames.SESSION_TERMINAL_EVENT_IGNORED,
                        issue_id=issue_id,
                        status=session.status.value,
                        event_type=event.type.value,
                    )
                    return session
                self._finish(session, event)

            self._update_active_gauge()
            self._notify(event)
            return session

    def _finish(self, session: ProcessingSession, event: StreamEvent) -> None:
        status = _TERMINAL_STATUS[event.type]
        message = event.message
        session.status = status
        session.completed_at = utc_now()

        metrics = get_metrics()
        if status is SessionStatus.COMPLETED:
            activity = Activity(
                id=_activity_id("complete"),
                type=ActivityType.RESULT,
                details=message or "Processing complete",
                status=ActivityStatus.SUCCESS,
            )
            metrics.sessions_completed.inc()
            log.info(LogEventNames.SESSION_COMPLETED, issue_id=session.issue_id)
        elif status is SessionStatus.FAILED:
            session.error = message or "Unknown error"
            activity = Activity(
                id=_activity_id("error"),
                type=ActivityType.ERROR,
                details=session.error,
                status=ActivityStatus.ERROR,
            )
            metrics.sessions_failed.inc()
            log.warning(
                LogEventNames.SESSION_FAILED, issue_id=session.issue_id, error=session.error
            )
        else:
            activity = Activity(
                id=_activity_id("cancelled"),
                type=ActivityType.MESSAGE,
                details=message or "Cancelled",
                status=ActivityStatus.ERROR,
            )
            metrics.sessions_cancelled.inc()
            log.info(LogEventNames.SESSION_CANCELLED, issue_id=session.issue_id, reason=message)
        self._ingest_activity(session, activity)

    def _ingest_activity(self, session: ProcessingSession, activity: Activity) -> None:
        evicted = session.feed.upsert(activity)
        metrics = get_metrics()
        metrics.activities_ingested.inc()
        if evicted:
            metrics.activities_evicted.inc(evicted)

    def _update_active_gauge(self) -> None:
        active = sum(1 for session in self._sessions.values() if session.is_active)
        get_metrics().active_sessions.set(active)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, issue_id: str, callback: Subscriber) -> Unsubscribe:
        """Deliver every applied event for one issue to ``callback``.

        Returns:
            A function that stops delivery immediately; calling it again does
            nothing.
        """
        subscription = _Subscription(callback, issue_id)
        with self._lock:
            self._subscribers.setdefault(issue_id, []).append(subscription)
        return lambda: self._remove(subscription)

    def subscribe_all(self, callback: Subscriber) -> Unsubscribe:
        """Deliver every applied event for every issue to ``callback``."""
        subscription = _Subscription(callback, None)
        with self._lock:
            self._global_subscribers.append(subscription)
        return lambda: self._remove(subscription)

    def _remove(self, subscription: _Subscription) -> None:
        with self._lock:
            if not subscription.active:
                return
            subscription.active = False
            if subscription.issue_id is None:
                self._global_subscribers.remove(subscription)
                return
            remaining = self._subscribers.get(subscription.issue_id, [])
            remaining.remove(subscription)
            if not remaining:
                self._subscribers.pop(subscription.issue_id, None)

    def subscriber_count(self, issue_id: str | None = None) -> int:
        """Number of live subscriptions for one issue, or global ones when None."""
        with self._lock:
            if issue_id is None:
                return len(self._global_subscribers)
            return len(self._subscribers.get(issue_id, []))

    def _notify(self, event: StreamEvent) -> None:
        targets = [*self._subscribers.get(event.issue_id, []), *self._global_subscribers]
        for subscription in targets:
            if not subscription.active:
                continue
            try:
                subscription.callback(event)
            except Exception:
                log.exception(
                    LogEventNames.SUBSCRIBER_ERROR,
                    issue_id=event.issue_id,
                    event_type=event.type.value,
                )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_session(self, issue_id: str) -> ProcessingSession | None:
        with self._lock:
            return self._sessions.get(issue_id)

    def get_active_sessions(self) -> list[ProcessingSession]:
        """Every tracked session, in start order."""
        with self._lock:
            return list(self._sessions.values())

    def processing_ids(self) -> set[str]:
        """IDs of issues with a pending or processing run."""
        with self._lock:
            return {i for i, session in self._sessions.items() if session.is_active}

    def is_processing(self, issue_id: str) -> bool:
        with self._lock:
            session = self._sessions.get(issue_id)
            return session is not None and session.is_active

    def status_of(self, issue: Issue) -> IssueStatus:
        """Issue status as the live session sees it, falling back to the stored one."""
        session = self.get_session(issue.id)
        if session is None or session.status is SessionStatus.CANCELLED:
            return issue.status
        if session.is_active:
            return IssueStatus.PROCESSING
        if session.status is SessionStatus.COMPLETED:
            return IssueStatus.COMPLETED
        return IssueStatus.FAILED

    # -------------------------------------------------------------------------
    # Clearing
    # -------------------------------------------------------------------------

    def clear_session(self, issue_id: str) -> bool:
        """Forget one issue's session; returns False if there was none."""
        with self._lock:
            removed = self._sessions.pop(issue_id, None) is not None
            self._update_active_gauge()
            return removed

    def reset(self) -> None:
        """Drop every session and subscription."""
        with self._lock:
            self._sessions.clear()
            for subscription in self._global_subscribers:
                subscription.active = False
            for subscriptions in self._subscribers.values():
                for subscription in subscriptions:
                    subscription.active = False
            self._global_subscribers.clear()
            self._subscribers.clear()
            self._update_active_gauge()


def get_session_store() -> SessionStore:
    """Get the process-wide session store."""
    return SessionStore.get_instance()


def reset_session_store() -> None:
    """Reset and discard the process-wide session store."""
    if SessionStore._instance is not None:
        SessionStore._instance.reset()
    SessionStore.reset_instance()
