"""Remote event stream adapters."""

from .http import SSEStreamClient

__all__ = ["SSEStreamClient"]
