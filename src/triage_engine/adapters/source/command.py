"""Issue source backed by the provider CLI.

Runs the provider script with ``--dry-run --json`` (never through a shell),
strips terminal colors from its output and reads the first JSON array of
issue objects it printed.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import structlog

from ...config.schema import PriorityRules, SourceConfig
from ...core.normalizer import normalize_issues
from ...models.issue import Issue
from ...utils.async_helpers import IssueFetchError, TimeoutError, with_timeout
from ...utils.logging import LogEventNames
from ...utils.metrics import Timer, get_metrics
from ...utils.security import SecretRedactor, strip_terminal_codes

log = structlog.get_logger()

JSON_ARRAY_PATTERN = re.compile(r"\[\s*\{[\s\S]*\}\s*\]")
EMPTY_ARRAY_PATTERN = re.compile(r"^\s*\[\s*\]\s*$", re.MULTILINE)


def extract_json_array(output: str) -> list[Any]:
    """Pull the issue array out of CLI output that may contain banner text.

    Returns:
        The decoded list; empty when the output holds no array of objects.

    Raises:
        IssueFetchError: If an array is present but is not valid JSON.
    """
    clean = strip_terminal_codes(output)
    match = JSON_ARRAY_PATTERN.search(clean)
    if match is None:
        return []
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise IssueFetchError(f"Failed to parse issues JSON: {e}") from e
    if not isinstance(data, list):
        raise IssueFetchError("Issues output is not a JSON array")
    return data


class CommandIssueSource:
    """Fetches issues by running the provider CLI.

    Example:
        source = CommandIssueSource(config.source, config.priority)
        issues = await source.fetch_issues()
    """

    def __init__(
        self,
        config: SourceConfig,
        rules: PriorityRules | None = None,
        target_repo: Path | None = None,
    ) -> None:
        if not config.command:
            raise ValueError("source.command must not be empty")
        self._command: Sequence[str] = list(config.command)
        self._timeout = config.timeout
        self._cwd = config.working_dir
        self._rules = rules or PriorityRules()
        self._target_repo = target_repo
        self._redactor = SecretRedactor()

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self._target_repo is not None:
            env["REPO_ROOT"] = str(self._target_repo)
        return env

    async def _run(self) -> tuple[int, str, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=self._env(),
            )
        except OSError as e:
            raise IssueFetchError(f"Failed to start issue source: {e}") from e

        try:
            stdout, stderr = await with_timeout(
                proc.communicate(),
                self._timeout,
                f"Issue source timed out after {self._timeout}s",
            )
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise IssueFetchError(str(e)) from e

        return (
            proc.returncode if proc.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def fetch_issues(self) -> list[Issue]:
        """Run the CLI and normalize what it prints.

        Raises:
            IssueFetchError: If the CLI cannot start, times out, exits
                non-zero or prints malformed JSON.
        """
        log.info(LogEventNames.ISSUES_FETCH_START, source="command", command=self._command[0])
        with Timer(get_metrics().fetch_duration, labels={"source": "command"}):
            code, stdout, stderr = await self._run()

        if code != 0:
            detail = self._redactor.redact(strip_terminal_codes(stderr).strip())
            log.error(LogEventNames.ISSUES_FETCH_ERROR, source="command", code=code, stderr=detail)
            raise IssueFetchError(f"Issue source exited with code {code}: {detail}")

        issues = normalize_issues(extract_json_array(stdout), rules=self._rules)
        get_metrics().issues_fetched.inc(len(issues), labels={"source": "command"})
        log.info(LogEventNames.ISSUES_FETCHED, source="command", count=len(issues))
        return issues
