"""Fix agent launched as a child process.

The agent script receives the issue batch as ``--only-ids`` plus the run
options as flags and ``RALPH_*`` environment variables, and prints its event
stream on stdout. The process is started with an argument list, never a
shell, and with a large stream limit because single JSON events can be long.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Sequence

import structlog

from ...config.schema import AgentRunnerConfig
from ...interfaces.agent import AgentProcess
from ...models.session import ProcessingOptions
from ...utils.async_helpers import TransportError
from ...utils.logging import LogEventNames

log = structlog.get_logger()

STREAM_LIMIT = 4 * 1024 * 1024


def _flag(value: bool) -> str:
    return "true" if value else "false"


def build_arguments(
    config: AgentRunnerConfig,
    issue_ids: Sequence[str],
    options: ProcessingOptions,
) -> list[str]:
    """Full argv for one run."""
    return [
        *config.command,
        "--only-ids",
        ",".join(issue_ids),
        "--providers",
        ",".join(config.providers),
        "--mode",
        options.mode,
        "--model",
        options.model,
        "--auto-push",
        _flag(options.auto_push),
        "--max-iterations",
        str(options.max_iterations),
    ]


def build_environment(
    config: AgentRunnerConfig,
    options: ProcessingOptions,
    base: dict[str, str] | None = None,
) -> dict[str, str]:
    """Environment for one run: the caller's plus the ``RALPH_*`` settings."""
    env = dict(os.environ if base is None else base)
    env.update(
        {
            "RALPH_STREAM_MODE": "true",
            "RALPH_MODE": options.mode,
            "RALPH_MODEL": options.model,
            "RALPH_MAX_ITERATIONS": str(options.max_iterations),
            "RALPH_AUTO_PUSH": _flag(options.auto_push),
            "RALPH_CI_AWARENESS": _flag(options.ci_awareness),
            "RALPH_AUTO_FIX_CI": _flag(options.auto_fix_ci),
        }
    )
    if config.target_repo is not None:
        env["REPO_ROOT"] = str(config.target_repo)
    return env


class CommandFixAgent:
    """Runs the configured agent command once per dispatch.

    Example:
        agent = CommandFixAgent(config.agent)
        process = await agent.launch(["sentry-42"], ProcessingOptions(mode="plan"))
    """

    def __init__(self, config: AgentRunnerConfig) -> None:
        self._config = config

    async def launch(
        self,
        issue_ids: Sequence[str],
        options: ProcessingOptions,
    ) -> AgentProcess:
        """Start the agent.

        Raises:
            TransportError: If the executable cannot be started.
        """
        argv = build_arguments(self._config, issue_ids, options)
        log.info(
            LogEventNames.AGENT_LAUNCHING,
            executable=argv[0],
            issue_count=len(issue_ids),
            mode=options.mode,
            model=options.model,
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=self._config.working_dir,
                env=build_environment(self._config, options),
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            log.error(LogEventNames.AGENT_LAUNCH_FAILED, executable=argv[0], error=str(e))
            raise TransportError(f"Failed to start fix agent: {e}") from e
        return process  # type: ignore[return-value]
