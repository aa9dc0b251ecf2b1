"""
Exception hierarchy for procguard.

Registry and matcher errors are raised at the call site so a broken test
setup fails fast. Termination and reaper errors are collected per pid and
reported in an aggregate summary instead of being raised.
"""

import subprocess
from typing import Any


class ProcGuardError(Exception):
    """
    Base exception for all procguard errors.

    Example:
        try:
            registry.register("git", pattern="(")
        except ProcGuardError as e:
            lg.error("bad mock setup", extra={"exception": e})
    """

    def __init__(self, message: str, **context: Any) -> None:
        """
        Initialize the exception with a message and optional context.

        Args:
            message: Human-readable error message
            **context: Additional context information (stored in self.context)
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """String representation with context if available."""
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


class UnregisteredCommandError(ProcGuardError):
    """
    No registered behavior matched an intercepted invocation.

    Only raised when the unregistered-command policy is ``strict``. Under the
    default policy the miss is logged and the invocation succeeds with empty
    output.
    """

    def __init__(self, executable: str, argv: tuple[str, ...] = ()) -> None:
        super().__init__(
            f"No mock registered for command: {' '.join([executable, *argv])}",
            executable=executable,
            argv=list(argv),
        )
        self.executable = executable
        self.argv = tuple(argv)


class MalformedMatcherError(ProcGuardError, ValueError):
    """
    A matcher could not be built at registration time.

    Raised for invalid or overly complex regular expressions and for empty
    command strings. Fatal to the offending ``register`` call only.
    """

    pass


class ProcessAlreadyExitedError(ProcGuardError):
    """
    The target process was gone when a signal was sent.

    Termination code treats this as success and reports ``already-dead``.
    """

    def __init__(self, pid: int) -> None:
        super().__init__("Process already exited", pid=pid)
        self.pid = pid


class UnsupportedPlatformError(ProcGuardError):
    """
    The OS process table cannot be enumerated on this platform.

    The reaper and teardown sweep refuse to run rather than silently doing
    nothing.
    """

    pass


class TerminationTimeoutError(ProcGuardError):
    """
    A process ignored the graceful termination signal within its timeout.

    Escalation to a forced kill is automatic; this error only surfaces in a
    result detail when the forced kill also fails.
    """

    def __init__(self, pid: int, timeout_ms: int) -> None:
        super().__init__(
            "Process did not exit after graceful signal",
            pid=pid,
            timeout_ms=timeout_ms,
        )
        self.pid = pid
        self.timeout_ms = timeout_ms


class ConfigError(ProcGuardError):
    """
    Configuration-related errors.

    Examples:
        - Config file not readable or invalid YAML
        - Unknown unregistered-command policy
        - Non-positive timeout or worker count
    """

    pass


class CommandFailedError(subprocess.CalledProcessError):
    """
    An emulated command finished with a non-zero exit code or a signal.

    Subclasses ``subprocess.CalledProcessError`` so code catching the stdlib
    error keeps working against emulated commands. Carries the reconstructed
    command line and both output buffers.
    """

    def __init__(
        self,
        returncode: int,
        cmd: str,
        output: Any = None,
        stderr: Any = None,
        signal: str | None = None,
    ) -> None:
        super().__init__(returncode, cmd, output=output, stderr=stderr)
        self.signal = signal

    @property
    def code(self) -> int:
        return self.returncode

    def __str__(self) -> str:
        err = self.stderr
        if isinstance(err, bytes):
            err = err.decode(errors="replace")
        head = f"Command failed: {self.cmd}"
        if self.signal:
            head += f" (signal {self.signal})"
        return f"{head}\n{err}" if err else head
