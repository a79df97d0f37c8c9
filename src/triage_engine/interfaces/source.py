"""Abstract interface for issue sources."""

from typing import Protocol

from ..models.issue import Issue


class IssueSource(Protocol):
    """Where the engine gets its issue list.

    Adapters wrap the provider CLI, an HTTP endpoint or a JSON file; all of
    them return canonical, normalized issues.
    """

    async def fetch_issues(self) -> list[Issue]:
        """
        Fetch the current issues from every configured provider.

        Returns:
            Normalized issues; malformed records are skipped

        Raises:
            IssueFetchError: If the source cannot be read or parsed
        """
        ...
