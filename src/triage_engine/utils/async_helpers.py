"""Error taxonomy and async utilities.

This module provides:
- The exception hierarchy shared by the engine
- Retry decorators with exponential backoff for issue-source HTTP calls
- Timeout wrappers for async operations
- A cancellation token used by processing handles
"""

from __future__ import annotations

import asyncio
import builtins
from collections.abc import Awaitable, Callable, Iterable
from typing import ParamSpec, TypeVar

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

log = structlog.get_logger()

P = ParamSpec("P")
T = TypeVar("T")


# =============================================================================
# Custom Exceptions
# =============================================================================


class TriageError(Exception):
    """Base exception for all engine errors."""


class ValidationError(TriageError):
    """Malformed filter, search or provider input."""


class ConflictError(TriageError):
    """Processing requested for issues that already have an active run.

    Attributes:
        conflicting_ids: Issue IDs whose sessions are pending or processing.
    """

    def __init__(self, conflicting_ids: Iterable[str], message: str | None = None) -> None:
        self.conflicting_ids: tuple[str, ...] = tuple(conflicting_ids)
        super().__init__(
            message or f"Issues already being processed: {', '.join(self.conflicting_ids)}"
        )


class StreamParseError(TriageError):
    """A line from the agent stream matched no known event shape."""


class TransportError(TriageError):
    """Network or process failure while feeding the event stream."""


class IdleTimeoutError(TransportError):
    """No event (heartbeats included) arrived within the idle window."""


class IssueFetchError(TriageError):
    """The issue source failed to return issues."""


class TimeoutError(TriageError):
    """Operation timed out."""


# =============================================================================
# Retry Decorator
# =============================================================================


def _log_retry(retry_state: RetryCallState) -> None:
    """Log retry attempts for debugging."""
    if retry_state.outcome is None:
        return

    exception = retry_state.outcome.exception()
    if exception:
        log.warning(
            "retrying_operation",
            attempt=retry_state.attempt_number,
            exception_type=type(exception).__name__,
            exception_message=str(exception),
            wait_time=retry_state.next_action.sleep if retry_state.next_action else 0,
        )


TRANSIENT_HTTP_ERRORS: tuple[type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
)


def create_retry(
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 30.0,
    retry_on: tuple[type[Exception], ...] = TRANSIENT_HTTP_ERRORS,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Create a customized retry decorator.

    Args:
        max_attempts: Maximum number of attempts.
        min_wait: Minimum wait time between retries (seconds).
        max_wait: Maximum wait time between retries (seconds).
        retry_on: Exception types that trigger a retry.

    Returns:
        A retry decorator configured with the given parameters.
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_retry,
        reraise=True,
    )


# =============================================================================
# Timeout Utilities
# =============================================================================


async def with_timeout(
    coro: Awaitable[T],
    timeout: float,
    error_message: str | None = None,
) -> T:
    """Execute an awaitable with a timeout.

    Args:
        coro: The coroutine to execute.
        timeout: Timeout in seconds.
        error_message: Custom error message for timeout.

    Returns:
        The result of the coroutine.

    Raises:
        TimeoutError: If the operation times out.
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except builtins.TimeoutError as e:
        msg = error_message or f"Operation timed out after {timeout}s"
        log.warning("operation_timeout", timeout=timeout)
        raise TimeoutError(msg) from e


# =============================================================================
# Cancellation Utilities
# =============================================================================


class CancellationToken:
    """Token for cooperative cancellation of async operations.

    Example:
        token = CancellationToken()

        async def pump(token: CancellationToken):
            while not token.is_cancelled:
                await read_next_line()

        token.cancel("user closed the feed")
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        """Check if cancellation has been requested."""
        return self._cancelled

    @property
    def reason(self) -> str | None:
        """Reason passed to the first cancel() call."""
        return self._reason

    def cancel(self, reason: str | None = None) -> bool:
        """Request cancellation.

        Returns:
            True if this call cancelled the token, False if it already was.
        """
        if self._cancelled:
            return False
        self._cancelled = True
        self._reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        """Wait until cancellation is requested."""
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        """Raise asyncio.CancelledError if cancelled."""
        if self._cancelled:
            raise asyncio.CancelledError(self._reason or "Operation was cancelled")
