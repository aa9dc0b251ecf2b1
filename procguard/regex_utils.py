"""
Safe compilation of user-supplied regular expressions.

Regex matchers in the mock registry come straight from test code. Patterns
are validated for nested quantifiers that cause catastrophic backtracking
and compiled under a SIGALRM timeout where the platform and thread allow it.

Example Usage:
    from procguard.regex_utils import safe_compile

    try:
        pattern = safe_compile(r"^git (push|pull)\\b")
    except RegexComplexityError:
        ...
"""

import re
import signal
import threading
from contextlib import contextmanager
from re import Pattern
from typing import Any


class RegexTimeoutError(TimeoutError):
    """Raised when regex compilation exceeds timeout limit."""

    pass


class RegexComplexityError(ValueError):
    """Raised when regex pattern is too complex."""

    pass


MAX_PATTERN_LENGTH = 1000

# Nested quantifiers are the primary cause of catastrophic backtracking
DANGEROUS_PATTERNS = [
    r"\([^)]*[*+]\)[*+{]",  # (.+)+ or (.*)*
    r"\([^)]*\{[^}]+\}\)[*+{]",  # (a{1,5})+
]


def _validate_pattern_complexity(pattern: str) -> None:
    if len(pattern) > MAX_PATTERN_LENGTH:
        raise RegexComplexityError(
            f"Pattern too long ({len(pattern)} chars, max {MAX_PATTERN_LENGTH})"
        )

    for dangerous in DANGEROUS_PATTERNS:
        if re.search(dangerous, pattern):
            raise RegexComplexityError(
                "Pattern contains nested quantifiers that may cause catastrophic "
                "backtracking, e.g. (.+)+ or (.*)*"
            )


def _can_use_alarm() -> bool:
    # signal.signal() is only legal from the main thread
    return (
        hasattr(signal, "SIGALRM")
        and threading.current_thread() is threading.main_thread()
    )


@contextmanager
def _timeout_context(timeout_seconds: float) -> Any:
    def timeout_handler(signum: int, frame: Any) -> None:
        raise RegexTimeoutError(f"Regex operation exceeded {timeout_seconds}s timeout")

    old_handler = signal.signal(signal.SIGALRM, timeout_handler)
    try:
        signal.alarm(int(timeout_seconds) if timeout_seconds >= 1 else 1)
        yield
    finally:
        signal.alarm(0)
        signal.signal(signal.SIGALRM, old_handler)


def safe_compile(pattern: str, flags: int = 0, timeout: float | None = 1.0) -> Pattern:
    """
    Compile a regex pattern after complexity validation.

    Args:
        pattern: Regex pattern string to compile
        flags: Regex flags (re.IGNORECASE, etc.)
        timeout: Maximum compilation time in seconds (None to disable)

    Returns:
        Compiled regex pattern

    Raises:
        RegexComplexityError: If pattern is too long or has nested quantifiers
        RegexTimeoutError: If compilation exceeds timeout
        re.error: If pattern is invalid
    """
    _validate_pattern_complexity(pattern)

    if timeout is not None and _can_use_alarm():
        with _timeout_context(timeout):
            return re.compile(pattern, flags)
    return re.compile(pattern, flags)
