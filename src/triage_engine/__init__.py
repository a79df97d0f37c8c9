"""Issue triage engine: normalize provider issues, compose views and dispatch fix runs."""

from triage_engine._version import __version__

__all__ = ["__version__"]
