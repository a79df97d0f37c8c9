"""Tests for the issue source adapters."""

import json
import sys

import httpx
import pytest

from triage_engine.adapters.source.command import CommandIssueSource, extract_json_array
from triage_engine.adapters.source.file import FileIssueSource
from triage_engine.adapters.source.http import HTTPIssueSource, extract_issue_list
from triage_engine.config.schema import PriorityRules, RetryConfig, SourceConfig
from triage_engine.utils.async_helpers import IssueFetchError
from triage_engine.utils.metrics import get_metrics


def _script_source(code, timeout=30.0):
    return CommandIssueSource(SourceConfig(command=[sys.executable, "-c", code], timeout=timeout))


class TestExtractJsonArray:
    """Test pulling the issue array out of CLI output."""

    def test_with_banner(self):
        """Test banner text and colors around the array."""
        output = '\x1b[1mFetching issues...\x1b[0m\n[{"id": "a"}, {"id": "b"}]\nDone.\n'
        assert extract_json_array(output) == [{"id": "a"}, {"id": "b"}]

    def test_multiline_array(self):
        """Test pretty-printed output."""
        output = json.dumps([{"id": "a", "title": "x"}], indent=2)
        assert extract_json_array(output)[0]["title"] == "x"

    @pytest.mark.parametrize("output", ["", "No issues found", "[]", "[1, 2]"])
    def test_no_issues(self, output):
        """Test output without an array of objects."""
        assert extract_json_array(output) == []

    def test_malformed(self):
        """Test a broken array is an error."""
        with pytest.raises(IssueFetchError, match="Failed to parse"):
            extract_json_array('[{"id": "a",}]')


class TestExtractIssueList:
    """Test response body shapes."""

    def test_list(self):
        """Test a bare list."""
        assert extract_issue_list([{"id": "a"}]) == [{"id": "a"}]

    def test_wrapped(self):
        """Test an object with an issues key."""
        assert extract_issue_list({"issues": [{"id": "a"}], "total": 1}) == [{"id": "a"}]

    @pytest.mark.parametrize("payload", [{"items": []}, {"issues": "nope"}, "text", None])
    def test_rejected(self, payload):
        """Test other shapes are rejected."""
        with pytest.raises(IssueFetchError):
            extract_issue_list(payload)


class TestCommandIssueSource:
    """Test the CLI-backed source with real child processes."""

    async def test_fetch(self, canonical_records):
        """Test issues printed by the command are normalized."""
        code = f"print('Scanning providers'); print({json.dumps(json.dumps(canonical_records))})"
        issues = await _script_source(code).fetch_issues()
        assert [issue.id for issue in issues] == ["z1", "z2", "s1", "s2"]
        assert get_metrics().issues_fetched.get(labels={"source": "command"}) == 4

    async def test_empty_output(self):
        """Test a command that finds nothing."""
        assert await _script_source("print('No issues')").fetch_issues() == []

    async def test_nonzero_exit_redacts_stderr(self):
        """Test a failing command reports its redacted stderr."""
        token = "ghp_" + "b" * 36
        code = f"import sys; sys.stderr.write('bad token {token}'); sys.exit(3)"
        with pytest.raises(IssueFetchError) as exc_info:
            await _script_source(code).fetch_issues()
        message = str(exc_info.value)
        assert "exited with code 3" in message
        assert token not in message
        assert "[REDACTED]" in message

    async def test_timeout(self):
        """Test a hung command is killed."""
        source = _script_source("import time; time.sleep(30)", timeout=0.2)
        with pytest.raises(IssueFetchError, match="timed out"):
            await source.fetch_issues()

    async def test_missing_executable(self):
        """Test an executable that does not exist."""
        source = CommandIssueSource(SourceConfig(command=["/nonexistent/triage-cli"]))
        with pytest.raises(IssueFetchError, match="Failed to start"):
            await source.fetch_issues()

    def test_empty_command(self):
        """Test an empty command is rejected at construction."""
        config = SourceConfig().model_copy(update={"command": []})
        with pytest.raises(ValueError):
            CommandIssueSource(config)


class TestHTTPIssueSource:
    """Test the HTTP-backed source."""

    def _source(self, handler, **config):
        settings = SourceConfig(kind="http", url="http://issues.test/api/issues", **config)
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        retry = RetryConfig(max_attempts=2, initial_delay=0.1, max_delay=1.0)
        return HTTPIssueSource(settings, PriorityRules(), retry, client=client)

    async def test_fetch_wrapped(self, canonical_records):
        """Test an issues-wrapped body with a bearer token."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"issues": canonical_records})

        issues = await self._source(handler, token="tok").fetch_issues()
        assert len(issues) == 4
        assert seen[0].headers["Authorization"] == "Bearer tok"
        assert get_metrics().issues_fetched.get(labels={"source": "http"}) == 4

    async def test_raw_payloads(self, raw_payloads):
        """Test provider payloads are normalized on the way in."""

        def handler(request):
            return httpx.Response(200, json=list(raw_payloads.values()))

        issues = await self._source(handler).fetch_issues()
        assert {issue.provider for issue in issues} == set(raw_payloads)

    async def test_http_error(self):
        """Test a non-2xx status."""

        def handler(request):
            return httpx.Response(500, text="oops")

        with pytest.raises(IssueFetchError, match="HTTP 500"):
            await self._source(handler).fetch_issues()

    async def test_invalid_json(self):
        """Test a body that is not JSON."""

        def handler(request):
            return httpx.Response(200, text="<html>")

        with pytest.raises(IssueFetchError, match="invalid JSON"):
            await self._source(handler).fetch_issues()

    async def test_retries_network_errors(self, canonical_records):
        """Test a transient failure is retried."""
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("reset", request=request)
            return httpx.Response(200, json=canonical_records)

        issues = await self._source(handler).fetch_issues()
        assert len(calls) == 2
        assert len(issues) == 4

    async def test_gives_up(self):
        """Test exhausted retries surface as a fetch error."""

        def handler(request):
            raise httpx.ConnectError("down", request=request)

        with pytest.raises(IssueFetchError, match="request failed"):
            await self._source(handler).fetch_issues()

    def test_url_required(self):
        """Test the URL is mandatory."""
        with pytest.raises(ValueError):
            HTTPIssueSource(SourceConfig(kind="http"))


class TestFileIssueSource:
    """Test the file-backed source."""

    async def test_list_file(self, tmp_path, canonical_records):
        """Test a file holding a bare list."""
        path = tmp_path / "issues.json"
        path.write_text(json.dumps(canonical_records))
        issues = await FileIssueSource(path).fetch_issues()
        assert [issue.id for issue in issues] == ["z1", "z2", "s1", "s2"]

    async def test_wrapped_file(self, tmp_path, canonical_records):
        """Test a file in the export shape."""
        path = tmp_path / "export.json"
        path.write_text(json.dumps({"exportedAt": "2026-01-12", "issues": canonical_records}))
        assert len(await FileIssueSource(path).fetch_issues()) == 4

    async def test_missing(self, tmp_path):
        """Test a missing file."""
        with pytest.raises(IssueFetchError, match="Cannot read"):
            await FileIssueSource(tmp_path / "nope.json").fetch_issues()

    async def test_invalid(self, tmp_path):
        """Test a file that is not JSON."""
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(IssueFetchError, match="not valid JSON"):
            await FileIssueSource(path).fetch_issues()
