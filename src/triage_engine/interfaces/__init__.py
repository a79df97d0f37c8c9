"""Protocol definitions for pluggable adapters."""

from .agent import AgentProcess, FixAgent
from .source import IssueSource

__all__ = ["AgentProcess", "FixAgent", "IssueSource"]
