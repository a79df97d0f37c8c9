"""Shared test fixtures for the triage engine."""

import asyncio
import json
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

import pytest

from triage_engine.core.normalizer import normalize_issues
from triage_engine.core.sessions import SessionStore, reset_session_store
from triage_engine.models.issue import Issue
from triage_engine.models.session import ProcessingOptions
from triage_engine.utils.metrics import MetricsRegistry

# Get the fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"
PROVIDERS_DIR = FIXTURES_DIR / "providers"
STREAMS_DIR = FIXTURES_DIR / "streams"


@pytest.fixture(autouse=True)
def fresh_singletons() -> Iterator[None]:
    """Give every test its own metrics registry and session store."""
    MetricsRegistry.reset_instance()
    reset_session_store()
    yield
    reset_session_store()
    MetricsRegistry.reset_instance()


@pytest.fixture
def fixtures_dir() -> Path:
    """Return the path to the fixtures directory."""
    return FIXTURES_DIR


@pytest.fixture
def canonical_records() -> list[dict[str, Any]]:
    """Load the four canonical issue records (z1, z2, s1, s2)."""
    return json.loads((PROVIDERS_DIR / "canonical_issues.json").read_text())


@pytest.fixture
def issues(canonical_records: list[dict[str, Any]]) -> list[Issue]:
    """The canonical records, normalized."""
    return normalize_issues(canonical_records)


@pytest.fixture
def raw_payloads() -> dict[str, dict[str, Any]]:
    """Load one raw API payload per provider."""
    return json.loads((PROVIDERS_DIR / "raw_payloads.json").read_text())


@pytest.fixture
def agent_output_lines() -> list[str]:
    """Load a recorded agent stream-json session, one line per element."""
    return (STREAMS_DIR / "agent_output.ndjson").read_text().splitlines()


@pytest.fixture
def ralph_event_lines() -> list[str]:
    """Load agent output with embedded RALPH_EVENT routing lines."""
    return (STREAMS_DIR / "ralph_events.txt").read_text().splitlines()


@pytest.fixture
def store() -> SessionStore:
    """A private session store."""
    return SessionStore()


class FakeProcess:
    """Stand-in for an asyncio subprocess with scripted output.

    With ``hang=True`` stdout stays open and the process keeps running until
    it is terminated or killed.
    """

    def __init__(
        self,
        stdout_lines: Sequence[str] = (),
        stderr_lines: Sequence[str] = (),
        exit_code: int = 0,
        hang: bool = False,
        ignore_terminate: bool = False,
    ) -> None:
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: int | None = None
        self.terminated = False
        self.killed = False
        self._ignore_terminate = ignore_terminate
        self._exited = asyncio.Event()

        for line in stdout_lines:
            self.stdout.feed_data(f"{line}\n".encode())
        for line in stderr_lines:
            self.stderr.feed_data(f"{line}\n".encode())
        self.stderr.feed_eof()
        if not hang:
            self.stdout.feed_eof()
            self._exit(exit_code)

    def _exit(self, code: int) -> None:
        self.returncode = code
        self.stdout.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self._ignore_terminate:
            self._exit(-15)

    def kill(self) -> None:
        self.killed = True
        self._exit(-9)


class FakeAgent:
    """FixAgent that hands out FakeProcess instances."""

    def __init__(self, **process_kwargs: Any) -> None:
        self.process_kwargs = process_kwargs
        self.launches: list[tuple[list[str], ProcessingOptions]] = []
        self.processes: list[FakeProcess] = []
        self.launch_error: BaseException | None = None

    async def launch(self, issue_ids: Sequence[str], options: ProcessingOptions) -> FakeProcess:
        self.launches.append((list(issue_ids), options))
        if self.launch_error is not None:
            raise self.launch_error
        process = FakeProcess(**self.process_kwargs)
        self.processes.append(process)
        return process


@pytest.fixture
def fake_agent_factory() -> type[FakeAgent]:
    """Return the FakeAgent class; call it with FakeProcess keyword arguments."""
    return FakeAgent
