"""Issue source adapters."""

from .command import CommandIssueSource
from .file import FileIssueSource
from .http import HTTPIssueSource

__all__ = ["CommandIssueSource", "FileIssueSource", "HTTPIssueSource"]
