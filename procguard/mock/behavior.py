"""
Behaviors returned by emulated commands, plus a fluent builder.

Example:
    mock_command("git", ["status", "--short"]).stdout("clean").register()
    mock_command("deploy").exit_code(1).stderr("denied").register()
"""

import signal as _signal
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .registry import MockRegistry


def normalize_signal(sig: str | int | None) -> str | None:
    """
    Normalize a signal given as a number, ``"TERM"`` or ``"SIGTERM"`` to ``"SIGTERM"``.

    Raises:
        ValueError: If the signal is unknown on this platform
    """
    if sig is None:
        return None
    if isinstance(sig, int):
        return _signal.Signals(sig).name
    name = sig.strip().upper()
    if not name.startswith("SIG"):
        name = "SIG" + name
    try:
        return _signal.Signals[name].name
    except KeyError:
        raise ValueError(f"Unknown signal: {sig!r}") from None


def signal_number(name: str) -> int:
    return int(_signal.Signals[name])


@dataclass(frozen=True)
class Behavior:
    """
    What an emulated command produces.

    Attributes:
        stdout: Text written to the output stream
        stderr: Text written to the error stream
        exit_code: Exit status (ignored when ``signal`` is set)
        signal: Terminating signal name; the process then reports exit_code None
        delay_ms: Latency before output and completion are emitted
        error: Exception raised or emitted instead of a normal completion
        pid: Pin the emulated pid instead of allocating one
    """

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    signal: str | None = None
    delay_ms: int = 0
    error: BaseException | None = None
    pid: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "signal", normalize_signal(self.signal))
        if self.delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")

    @property
    def failed(self) -> bool:
        return self.signal is not None or self.exit_code != 0

    def with_(self, **changes: Any) -> "Behavior":
        return replace(self, **changes)


DEFAULT_BEHAVIOR = Behavior()


def behavior_from(value: "Behavior | dict[str, Any] | None", **fields: Any) -> Behavior:
    """Build a Behavior from an instance, a mapping, keyword fields, or nothing."""
    if value is None:
        return Behavior(**fields)
    if isinstance(value, Behavior):
        return replace(value, **fields) if fields else value
    if isinstance(value, dict):
        return Behavior(**{**value, **fields})
    raise TypeError(f"Cannot build a Behavior from {type(value).__name__}")


class BehaviorBuilder:
    """
    Fluent builder for a command's behavior.

    ``register`` hands the built behavior to a registry (the process-wide
    one by default) and returns the registration id.
    """

    def __init__(
        self,
        command: str,
        args: Sequence[str] | None = None,
        prefix: bool = False,
    ) -> None:
        self._command = command
        self._args = list(args) if args is not None else None
        self._prefix = prefix
        self._fields: dict[str, Any] = {}

    def stdout(self, text: str) -> "BehaviorBuilder":
        self._fields["stdout"] = text
        return self

    def stderr(self, text: str) -> "BehaviorBuilder":
        self._fields["stderr"] = text
        return self

    def exit_code(self, code: int) -> "BehaviorBuilder":
        self._fields["exit_code"] = code
        return self

    def signal(self, sig: str | int) -> "BehaviorBuilder":
        self._fields["signal"] = sig
        return self

    def delay(self, ms: int) -> "BehaviorBuilder":
        self._fields["delay_ms"] = ms
        return self

    def error(self, exc: BaseException) -> "BehaviorBuilder":
        self._fields["error"] = exc
        return self

    def pid(self, pid: int) -> "BehaviorBuilder":
        self._fields["pid"] = pid
        return self

    def build(self) -> Behavior:
        return Behavior(**self._fields)

    def register(self, registry: "MockRegistry | None" = None) -> str:
        if registry is None:
            from .registry import REGISTRY

            registry = REGISTRY
        return registry.register(
            self._command, self._args, self.build(), prefix=self._prefix
        )


def mock_command(
    command: str, args: Sequence[str] | None = None, prefix: bool = False
) -> BehaviorBuilder:
    return BehaviorBuilder(command, args, prefix=prefix)
