"""Abstract interface for the external fix agent."""

import asyncio
from collections.abc import Sequence
from typing import Protocol

from ..models.session import ProcessingOptions


class AgentProcess(Protocol):
    """A running fix-agent invocation.

    ``stdout`` carries the agent's line-oriented event stream; ``stderr``
    carries diagnostics.
    """

    stdout: asyncio.StreamReader
    stderr: asyncio.StreamReader

    @property
    def returncode(self) -> int | None:
        """Exit code, or None while the process is running."""
        ...

    async def wait(self) -> int:
        """Wait for exit and return the exit code."""
        ...

    def terminate(self) -> None:
        """Ask the process to stop (SIGTERM)."""
        ...

    def kill(self) -> None:
        """Stop the process immediately."""
        ...


class FixAgent(Protocol):
    """Launches fix runs for a batch of issues."""

    async def launch(
        self,
        issue_ids: Sequence[str],
        options: ProcessingOptions,
    ) -> AgentProcess:
        """
        Start the agent on the given issues.

        Args:
            issue_ids: Issues to process, in order
            options: Mode, model and iteration settings for the run

        Returns:
            Handle on the running process

        Raises:
            TransportError: If the process cannot be started
        """
        ...
