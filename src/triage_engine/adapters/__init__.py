"""Concrete implementations of the issue source and fix agent interfaces."""

from .agent.command import CommandFixAgent
from .source.command import CommandIssueSource
from .source.file import FileIssueSource
from .source.http import HTTPIssueSource
from .stream.http import SSEStreamClient

__all__ = [
    "CommandFixAgent",
    "CommandIssueSource",
    "FileIssueSource",
    "HTTPIssueSource",
    "SSEStreamClient",
]
