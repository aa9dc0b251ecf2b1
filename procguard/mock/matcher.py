"""
Matchers that associate a registered behavior with an invocation.

Three kinds exist, checked in precedence order by the registry:

- ``exact``: executable and argv are equal (argument order matters)
- ``prefix``: same executable and the invocation argv starts with the
  matcher's argv; an empty prefix matches every invocation of the executable
- ``regex``: the pattern is searched in the reconstructed command line
"""

import enum
import re
import shlex
from collections.abc import Sequence
from dataclasses import dataclass
from re import Pattern

from ..exceptions import MalformedMatcherError
from ..regex_utils import RegexComplexityError, RegexTimeoutError, safe_compile


class MatchKind(enum.IntEnum):
    """Matcher kinds; the value is the precedence tier (lower wins)."""

    EXACT = 1
    PREFIX = 2
    REGEX = 3


@dataclass(frozen=True)
class MatchKey:
    """Normalized form of one invocation."""

    executable: str
    argv: tuple[str, ...] = ()

    @classmethod
    def of(cls, executable: str, argv: Sequence[str] | None = None) -> "MatchKey":
        return cls(str(executable), tuple(str(a) for a in (argv or ())))

    @property
    def command_line(self) -> str:
        return command_line(self.executable, self.argv)


def command_line(executable: str, argv: Sequence[str] = ()) -> str:
    """Reconstruct the command line used for regex matching and error messages."""
    return " ".join([executable, *argv])


@dataclass(frozen=True)
class Matcher:
    kind: MatchKind
    key: MatchKey | None = None
    pattern: Pattern | None = None

    def matches(self, key: MatchKey) -> bool:
        if self.kind is MatchKind.REGEX:
            assert self.pattern is not None
            return self.pattern.search(key.command_line) is not None

        assert self.key is not None
        if key.executable != self.key.executable:
            return False
        if self.kind is MatchKind.EXACT:
            return key.argv == self.key.argv
        n = len(self.key.argv)
        return key.argv[:n] == self.key.argv

    def describe(self) -> str:
        if self.kind is MatchKind.REGEX:
            assert self.pattern is not None
            return f"/{self.pattern.pattern}/"
        assert self.key is not None
        suffix = " ..." if self.kind is MatchKind.PREFIX else ""
        return self.key.command_line + suffix

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Matcher):
            return NotImplemented
        if self.kind is not other.kind:
            return False
        if self.kind is MatchKind.REGEX:
            assert self.pattern is not None and other.pattern is not None
            return (self.pattern.pattern, self.pattern.flags) == (
                other.pattern.pattern,
                other.pattern.flags,
            )
        return self.key == other.key

    def __hash__(self) -> int:
        if self.kind is MatchKind.REGEX:
            assert self.pattern is not None
            return hash((self.kind, self.pattern.pattern, self.pattern.flags))
        return hash((self.kind, self.key))


def exact(executable: str, argv: Sequence[str] = ()) -> Matcher:
    _require_executable(executable)
    return Matcher(MatchKind.EXACT, key=MatchKey.of(executable, argv))


def prefix(executable: str, argv: Sequence[str] = ()) -> Matcher:
    _require_executable(executable)
    return Matcher(MatchKind.PREFIX, key=MatchKey.of(executable, argv))


def regex(pattern: str | Pattern, flags: int = 0) -> Matcher:
    """
    Build a regex matcher, failing immediately on a malformed pattern.

    Raises:
        MalformedMatcherError: If the pattern is invalid or too complex
    """
    if isinstance(pattern, re.Pattern):
        return Matcher(MatchKind.REGEX, pattern=pattern)
    try:
        compiled = safe_compile(pattern, flags)
    except re.error as e:
        raise MalformedMatcherError(
            f"Invalid regular expression: {e}", pattern=pattern
        ) from e
    except (RegexComplexityError, RegexTimeoutError) as e:
        raise MalformedMatcherError(str(e), pattern=pattern) from e
    return Matcher(MatchKind.REGEX, pattern=compiled)


def tokenized(command: str) -> Matcher:
    """
    Build a prefix matcher from a shell-style command string.

    ``"git status"`` matches ``git status`` and ``git status --short``.
    """
    try:
        tokens = shlex.split(command)
    except ValueError as e:
        raise MalformedMatcherError(f"Cannot tokenize command: {e}", command=command) from e
    if not tokens:
        raise MalformedMatcherError("Empty command", command=command)
    return prefix(tokens[0], tokens[1:])


def _require_executable(executable: str) -> None:
    if not isinstance(executable, str) or not executable.strip():
        raise MalformedMatcherError("Executable must be a non-empty string")
