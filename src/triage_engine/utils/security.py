"""Secret redaction and terminal-output sanitization.

Provider credentials (Zeropath, Sentry, GitHub, Linear, Codecov) and the fix
agent's model keys live in the environment of the processes this engine
spawns. Anything those processes print can end up in logs or in an activity
feed streamed to a browser, so both paths go through ``SecretRedactor``.

Redaction is fail-closed: a pattern that cannot compile or execute raises
instead of letting text through unredacted.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Sequence

log = structlog.get_logger()

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


class SecurityError(Exception):
    """Base exception for security-related errors."""


class RedactionError(SecurityError):
    """Raised when secret redaction fails."""


class SecretRedactor:
    """Detects and redacts secrets from text.

    Usage:
        redactor = SecretRedactor()
        safe_text = redactor.redact(agent_output_line)

    Attributes:
        patterns: Compiled regex patterns used for detection.
        placeholder: Replacement string for detected secrets.
    """

    DEFAULT_PATTERNS: tuple[tuple[str, str], ...] = (
        (
            r"(?i)(api[_-]?key|secret|token|password|credential)\s*[=:]\s*[\"']?[\w-]{16,}",
            "Generic secret",
        ),
        # GitHub
        (r"ghp_[a-zA-Z0-9]{36}", "GitHub PAT"),
        (r"github_pat_[a-zA-Z0-9_]{22,}", "GitHub fine-grained PAT"),
        (r"gh[ousr]_[a-zA-Z0-9]{36}", "GitHub app token"),
        # Sentry
        (r"sntrys_[a-zA-Z0-9_=+/-]{20,}", "Sentry org auth token"),
        (r"sntryu_[a-f0-9]{64}", "Sentry user auth token"),
        # Linear
        (r"lin_api_[a-zA-Z0-9]{32,}", "Linear API key"),
        # Anthropic (fix agent)
        (r"sk-ant-[\w-]{40,}", "Anthropic API key"),
        # Bearer headers echoed by curl -v in provider scripts
        (r"(?i)authorization:\s*bearer\s+[\w.-]{16,}", "Bearer header"),
        # Zeropath / Codecov tokens passed as headers or query params
        (
            r"(?i)(x-api-token|token_secret|codecov_token)[\"']?\s*[=:]\s*[\"']?[\w-]{12,}",
            "Provider token",
        ),
        (
            r"(?i)(postgres(?:ql)?|mysql|mongodb(?:\+srv)?|redis)://[^:\s]+:[^@\s]+@[^\s]+",
            "Database connection string",
        ),
        (r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----", "Private key header"),
        (r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*", "JWT token"),
    )

    def __init__(
        self,
        placeholder: str = "[REDACTED]",
        custom_patterns: Sequence[tuple[str, str]] | None = None,
    ) -> None:
        """Initialize the SecretRedactor.

        Args:
            placeholder: String to replace detected secrets with.
            custom_patterns: Additional (pattern, name) tuples to detect.

        Raises:
            RedactionError: If any pattern fails to compile.
        """
        self.placeholder = placeholder
        self._pattern_names: dict[re.Pattern[str], str] = {}

        all_patterns = list(self.DEFAULT_PATTERNS)
        if custom_patterns:
            all_patterns.extend(custom_patterns)

        try:
            for pattern_str, name in all_patterns:
                self._pattern_names[re.compile(pattern_str)] = name
        except re.error as e:
            log.error("pattern_compilation_failed", pattern=pattern_str, error=str(e))
            raise RedactionError(f"Failed to compile secret pattern '{pattern_str}': {e}") from e

    @property
    def patterns(self) -> list[re.Pattern[str]]:
        """Return the list of compiled patterns."""
        return list(self._pattern_names.keys())

    def redact(self, text: str) -> str:
        """Redact all secrets from the given text.

        Args:
            text: The text to scan and redact secrets from.

        Returns:
            The text with all detected secrets replaced with placeholder.

        Raises:
            RedactionError: If redaction fails for any reason.
        """
        if not text:
            return text

        try:
            result = text
            for pattern in self._pattern_names:
                result = pattern.sub(self.placeholder, result)
            return result
        except Exception as e:
            log.error("redaction_failed", error=str(e))
            raise RedactionError(f"Redaction failed: {e}") from e

    def has_secrets(self, text: str) -> bool:
        """Check if text contains any secrets."""
        if not text:
            return False
        return any(pattern.search(text) for pattern in self._pattern_names)


def strip_terminal_codes(text: str) -> str:
    """Remove ANSI escape sequences and stray control characters.

    Provider scripts colorize their output; the colors have to go before the
    text is parsed as JSON or shown in an activity feed.

    Args:
        text: Raw terminal output.

    Returns:
        The text without ANSI codes or control characters (newline, tab and
        carriage return are kept).
    """
    if not text:
        return text
    return CONTROL_CHAR_PATTERN.sub("", ANSI_ESCAPE_PATTERN.sub("", text))
