"""Issue source backed by an HTTP endpoint.

Accepts either ``{"issues": [...]}`` or a bare JSON list. Transient network
failures are retried with exponential backoff.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from ...config.schema import PriorityRules, RetryConfig, SourceConfig
from ...core.normalizer import normalize_issues
from ...models.issue import Issue
from ...utils.async_helpers import TRANSIENT_HTTP_ERRORS, IssueFetchError, create_retry
from ...utils.logging import LogEventNames
from ...utils.metrics import Timer, get_metrics

log = structlog.get_logger()


def extract_issue_list(payload: Any) -> list[Any]:
    """Return the issue records from a response body.

    Raises:
        IssueFetchError: If the body is neither a list nor an object with an
            ``issues`` list.
    """
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("issues"), list):
        return list(payload["issues"])
    raise IssueFetchError("Response must be a list or an object with an 'issues' list")


class HTTPIssueSource:
    """Fetches issues with an HTTP GET.

    Example:
        source = HTTPIssueSource(config.source, config.priority, config.retry)
        issues = await source.fetch_issues()
    """

    def __init__(
        self,
        config: SourceConfig,
        rules: PriorityRules | None = None,
        retry: RetryConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not config.url:
            raise ValueError("source.url is required for the HTTP issue source")
        self._url = config.url
        self._timeout = config.timeout
        self._token = config.token
        self._rules = rules or PriorityRules()
        self._client = client
        retry = retry or RetryConfig()
        self._retry = create_retry(
            max_attempts=retry.max_attempts,
            min_wait=retry.initial_delay,
            max_wait=retry.max_delay,
            retry_on=TRANSIENT_HTTP_ERRORS,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _get(self) -> Any:
        async def request(client: httpx.AsyncClient) -> Any:
            response = await client.get(self._url, headers=self._headers())
            response.raise_for_status()
            return response.json()

        if self._client is not None:
            return await self._retry(request)(self._client)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await self._retry(request)(client)

    async def fetch_issues(self) -> list[Issue]:
        """GET the endpoint and normalize the records.

        Raises:
            IssueFetchError: On HTTP errors, exhausted retries or a
                malformed body.
        """
        log.info(LogEventNames.ISSUES_FETCH_START, source="http", url=self._url)
        try:
            with Timer(get_metrics().fetch_duration, labels={"source": "http"}):
                payload = await self._get()
        except httpx.HTTPStatusError as e:
            log.error(
                LogEventNames.ISSUES_FETCH_ERROR,
                source="http",
                status=e.response.status_code,
            )
            raise IssueFetchError(
                f"Issue endpoint returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            log.error(LogEventNames.ISSUES_FETCH_ERROR, source="http", error=str(e))
            raise IssueFetchError(f"Issue endpoint request failed: {e}") from e
        except ValueError as e:
            raise IssueFetchError(f"Issue endpoint returned invalid JSON: {e}") from e

        issues = normalize_issues(extract_issue_list(payload), rules=self._rules)
        get_metrics().issues_fetched.inc(len(issues), labels={"source": "http"})
        log.info(LogEventNames.ISSUES_FETCHED, source="http", count=len(issues))
        return issues
