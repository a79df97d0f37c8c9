"""Fix agent adapters."""

from .command import CommandFixAgent

__all__ = ["CommandFixAgent"]
