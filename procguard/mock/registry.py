"""
Process-wide registry of mocked command behaviors.

One registration serves every invocation style (streaming, collect and
synchronous), so a single ``register`` call covers every way code under
test might run the same logical command.

Lookup precedence: the first tier with any match wins, in the order exact
executable+argv, then executable+argv prefix, then regex over the
reconstructed command line. Within a tier the most recent registration wins.
"""

import itertools
import threading
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from re import Pattern
from typing import Any

from .. import log
from ..exceptions import MalformedMatcherError
from . import matcher as m
from .behavior import Behavior, behavior_from

_lg = log.derive_lg(None, "registry")


class _Unregistered:
    """Sentinel returned by ``find`` when nothing matches."""

    _instance: "_Unregistered | None" = None

    def __new__(cls) -> "_Unregistered":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNREGISTERED"


UNREGISTERED = _Unregistered()


@dataclass(frozen=True)
class Registration:
    id: str
    matcher: m.Matcher
    behavior: Behavior
    seq: int


@dataclass
class Invocation:
    """One intercepted call, recorded for assertions."""

    style: str
    executable: str
    argv: tuple[str, ...]
    options: dict[str, Any] = field(default_factory=dict)
    matched: bool = True
    pid: int | None = None

    @property
    def command_line(self) -> str:
        return m.command_line(self.executable, self.argv)


class MockRegistry:
    """
    Registry of command matchers and their behaviors.

    Mutations and call recording are serialized by a lock. Reads during a
    concurrent ``register`` see either the old or the new state.

    Example:
        registry = MockRegistry()
        registry.register("status", ["--short"], stdout="clean")
        registry.find("status", ["--short"]).stdout   # "clean"
        registry.find("ghost", [])                    # UNREGISTERED
    """

    def __init__(self, lg: Any | None = None) -> None:
        self._lg = lg if lg is not None else _lg
        self._lock = threading.RLock()
        self._entries: list[Registration] = []
        self._seq = itertools.count(1)
        self.calls: list[Invocation] = []
        self.spawned: list[Any] = []

    def register(
        self,
        command: str | Pattern | None = None,
        args: Sequence[str] | None = None,
        behavior: Behavior | Mapping[str, Any] | None = None,
        *,
        prefix: bool = False,
        pattern: str | Pattern | None = None,
        **behavior_fields: Any,
    ) -> str:
        """
        Register a behavior and return its id.

        Args:
            command: Executable name, shell-style command string, or compiled regex
            args: Exact argv; omit to match by the tokenized command as a prefix
            behavior: Behavior instance or mapping of its fields
            prefix: Treat ``args`` as a prefix instead of an exact argv
            pattern: Regular expression over the reconstructed command line
            **behavior_fields: Behavior fields (stdout, stderr, exit_code, ...)

        Raises:
            MalformedMatcherError: For invalid patterns or empty commands
        """
        matcher = self._build_matcher(command, args, prefix, pattern)
        resolved = behavior_from(
            dict(behavior) if isinstance(behavior, Mapping) else behavior,
            **behavior_fields,
        )

        with self._lock:
            seq = next(self._seq)
            reg = Registration(f"mock-{seq}", matcher, resolved, seq)
            replaced = [e for e in self._entries if e.matcher == matcher]
            self._entries = [e for e in self._entries if e.matcher != matcher]
            self._entries.append(reg)

        self._lg.debug(
            "registered mock",
            extra={"id": reg.id, "matcher": matcher.describe(), "replaced": len(replaced)},
        )
        return reg.id

    @staticmethod
    def _build_matcher(
        command: str | Pattern | None,
        args: Sequence[str] | None,
        prefix: bool,
        pattern: str | Pattern | None,
    ) -> m.Matcher:
        if pattern is not None:
            return m.regex(pattern)
        if isinstance(command, Pattern):
            return m.regex(command)
        if command is None:
            raise MalformedMatcherError("Either a command or a pattern is required")
        if args is None:
            return m.tokenized(command)
        if isinstance(args, str):
            raise MalformedMatcherError(
                "args must be a sequence of strings, not a string", args=args
            )
        return m.prefix(command, args) if prefix else m.exact(command, args)

    def register_many(self, entries: Iterable[Any]) -> list[str]:
        """
        Register several behaviors at once.

        Each entry is a mapping of ``register`` keyword arguments, or a
        ``(command, behavior)`` / ``(command, args, behavior)`` tuple.
        """
        ids = []
        for entry in entries:
            if isinstance(entry, Mapping):
                ids.append(self.register(**entry))
            elif isinstance(entry, tuple) and len(entry) == 2:
                ids.append(self.register(entry[0], None, entry[1]))
            elif isinstance(entry, tuple) and len(entry) == 3:
                ids.append(self.register(entry[0], entry[1], entry[2]))
            else:
                raise TypeError(f"Unsupported registration entry: {entry!r}")
        return ids

    def unregister(self, reg_id: str) -> bool:
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.id != reg_id]
            removed = len(self._entries) != before
        if removed:
            self._lg.debug("unregistered mock", extra={"id": reg_id})
        return removed

    def clear(self) -> None:
        """Remove every registration and reset the call history."""
        with self._lock:
            self._entries = []
            self.calls = []
            self.spawned = []

    def clear_calls(self) -> None:
        with self._lock:
            self.calls = []
            self.spawned = []

    def find(self, executable: str, argv: Sequence[str] = ()) -> Behavior | _Unregistered:
        reg = self.lookup(executable, argv)
        return reg.behavior if reg is not None else UNREGISTERED

    def lookup(self, executable: str, argv: Sequence[str] = ()) -> Registration | None:
        """Like ``find`` but returns the winning registration itself."""
        key = m.MatchKey.of(executable, argv)
        entries = self._entries
        for kind in m.MatchKind:
            for reg in reversed(entries):
                if reg.matcher.kind is kind and reg.matcher.matches(key):
                    return reg
        return None

    def registrations(self) -> list[Registration]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, invocation: Invocation) -> None:
        with self._lock:
            self.calls.append(invocation)

    def record_spawn(self, proc: Any) -> None:
        with self._lock:
            self.spawned.append(proc)

    def calls_for(self, executable: str) -> list[Invocation]:
        return [c for c in self.calls if c.executable == executable]

    def was_called(self, command: str, args: Sequence[str] | None = None) -> bool:
        """True if ``command`` (with exactly ``args`` when given) was invoked."""
        for call in self.calls:
            if call.executable != command:
                continue
            if args is None or call.argv == tuple(args):
                return True
        return False


REGISTRY = MockRegistry()
