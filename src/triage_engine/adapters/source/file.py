"""Issue source backed by a JSON file (exports, fixtures, offline runs)."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import structlog

from ...config.schema import PriorityRules
from ...core.normalizer import normalize_issues
from ...models.issue import Issue
from ...utils.async_helpers import IssueFetchError
from ...utils.logging import LogEventNames
from ...utils.metrics import get_metrics
from .http import extract_issue_list

log = structlog.get_logger()


class FileIssueSource:
    """Reads issues from a JSON file holding a list or ``{"issues": [...]}``."""

    def __init__(self, path: Path, rules: PriorityRules | None = None) -> None:
        self._path = Path(path)
        self._rules = rules or PriorityRules()

    async def fetch_issues(self) -> list[Issue]:
        """
        Raises:
            IssueFetchError: If the file is missing or not valid JSON.
        """
        log.info(LogEventNames.ISSUES_FETCH_START, source="file", path=str(self._path))
        try:
            text = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
        except OSError as e:
            raise IssueFetchError(f"Cannot read issues file {self._path}: {e}") from e
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise IssueFetchError(f"Issues file {self._path} is not valid JSON: {e}") from e

        issues = normalize_issues(extract_issue_list(payload), rules=self._rules)
        get_metrics().issues_fetched.inc(len(issues), labels={"source": "file"})
        log.info(LogEventNames.ISSUES_FETCHED, source="file", count=len(issues))
        return issues
