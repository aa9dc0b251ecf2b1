"""
Graceful and forceful termination of real OS processes.

Shared by the lifecycle tracker, the teardown orchestrator and the
emergency reaper. Outcomes are reported, never raised:

- the process was gone before we signalled it: ``already-dead``
- it exited after SIGTERM within the timeout: ``killed-graceful``
- it ignored SIGTERM and exited after SIGKILL: ``killed-forced``
- we could not signal it, or it survived SIGKILL: ``failed``
"""

import enum
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, TypeVar

import psutil

from . import log
from .exceptions import ProcessAlreadyExitedError, TerminationTimeoutError

_lg = log.derive_lg(None, "termination")

T = TypeVar("T")
R = TypeVar("R")


class CleanupOutcome(str, enum.Enum):
    ALREADY_DEAD = "already-dead"
    KILLED_GRACEFUL = "killed-graceful"
    KILLED_FORCED = "killed-forced"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def succeeded(self) -> bool:
        return self is not CleanupOutcome.FAILED


@dataclass(frozen=True)
class TerminationResult:
    pid: int
    outcome: CleanupOutcome
    detail: str = ""
    command: str = ""
    user: str = ""


@dataclass
class TerminationSummary:
    """Aggregate of per-pid results from one termination sweep."""

    results: list[TerminationResult] = field(default_factory=list)

    def _count(self, *outcomes: CleanupOutcome) -> int:
        return sum(1 for r in self.results if r.outcome in outcomes)

    @property
    def killed(self) -> int:
        return self._count(CleanupOutcome.KILLED_GRACEFUL, CleanupOutcome.KILLED_FORCED)

    @property
    def failed(self) -> int:
        return self._count(CleanupOutcome.FAILED)

    @property
    def already_dead(self) -> int:
        return self._count(CleanupOutcome.ALREADY_DEAD)

    def by_pid(self) -> dict[int, TerminationResult]:
        return {r.pid: r for r in self.results}

    def by_outcome(self) -> dict[CleanupOutcome, list[int]]:
        grouped: dict[CleanupOutcome, list[int]] = {o: [] for o in CleanupOutcome}
        for r in self.results:
            grouped[r.outcome].append(r.pid)
        return grouped

    def __len__(self) -> int:
        return len(self.results)


def _as_process(target: psutil.Process | int) -> psutil.Process:
    if isinstance(target, psutil.Process):
        return target
    try:
        return psutil.Process(target)
    except psutil.NoSuchProcess as e:
        raise ProcessAlreadyExitedError(target) from e


def _describe(proc: psutil.Process) -> str:
    try:
        return " ".join(proc.cmdline()) or proc.name()
    except (psutil.Error, OSError):
        return ""


def _gone(proc: psutil.Process) -> bool:
    """True when the process has exited; zombies count as exited."""
    try:
        return not proc.is_running() or proc.status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True
    except (psutil.AccessDenied, OSError):
        return False


def _wait_gone(proc: psutil.Process, timeout: float) -> bool:
    try:
        proc.wait(timeout=timeout)
        return True
    except psutil.TimeoutExpired:
        return _gone(proc)
    except psutil.NoSuchProcess:
        return True


def graceful_then_forced(
    target: psutil.Process | int,
    timeout_ms: int = 3000,
    command: str = "",
    lg: Any | None = None,
) -> TerminationResult:
    """
    Send SIGTERM, wait up to ``timeout_ms``, then SIGKILL if still alive.

    Args:
        target: psutil handle (keeps pid-reuse protection) or raw pid
        timeout_ms: How long to wait after each signal
        command: Command line for the result, looked up when empty
        lg: Logger for per-pid outcomes

    Returns:
        TerminationResult; this function does not raise for process errors
    """
    lg = lg if lg is not None else _lg
    pid = target.pid if isinstance(target, psutil.Process) else int(target)
    timeout = timeout_ms / 1000

    try:
        proc = _as_process(target)
        command = command or _describe(proc)
        if _gone(proc):
            raise ProcessAlreadyExitedError(pid)
        proc.terminate()
    except (ProcessAlreadyExitedError, psutil.NoSuchProcess):
        lg.debug("process already gone", extra={"pid": pid})
        return TerminationResult(pid, CleanupOutcome.ALREADY_DEAD, "", command)
    except psutil.AccessDenied as e:
        return TerminationResult(pid, CleanupOutcome.FAILED, f"access denied: {e}", command)

    if _wait_gone(proc, timeout):
        lg.debug("process exited after SIGTERM", extra={"pid": pid})
        return TerminationResult(pid, CleanupOutcome.KILLED_GRACEFUL, "", command)

    timed_out = TerminationTimeoutError(pid, timeout_ms)
    lg.debug("escalating to SIGKILL", extra={"pid": pid, "timeout_ms": timeout_ms})
    return _kill(proc, timeout, command, lg, escalated_from=timed_out)


def force_kill(
    target: psutil.Process | int,
    timeout_ms: int = 1000,
    command: str = "",
    lg: Any | None = None,
) -> TerminationResult:
    """Send SIGKILL immediately and confirm the process is gone."""
    lg = lg if lg is not None else _lg
    pid = target.pid if isinstance(target, psutil.Process) else int(target)
    try:
        proc = _as_process(target)
        command = command or _describe(proc)
        if _gone(proc):
            raise ProcessAlreadyExitedError(pid)
    except (ProcessAlreadyExitedError, psutil.NoSuchProcess):
        return TerminationResult(pid, CleanupOutcome.ALREADY_DEAD, "", command)
    return _kill(proc, timeout_ms / 1000, command, lg)


def _kill(
    proc: psutil.Process,
    timeout: float,
    command: str,
    lg: Any,
    escalated_from: TerminationTimeoutError | None = None,
) -> TerminationResult:
    pid = proc.pid
    try:
        proc.kill()
    except psutil.NoSuchProcess:
        # Exited between the liveness check and the kill
        outcome = (
            CleanupOutcome.KILLED_GRACEFUL
            if escalated_from is not None
            else CleanupOutcome.ALREADY_DEAD
        )
        return TerminationResult(pid, outcome, "", command)
    except psutil.AccessDenied as e:
        return TerminationResult(pid, CleanupOutcome.FAILED, f"access denied: {e}", command)

    if _wait_gone(proc, timeout):
        detail = str(escalated_from) if escalated_from is not None else ""
        return TerminationResult(pid, CleanupOutcome.KILLED_FORCED, detail, command)

    lg.warning("process survived SIGKILL", extra={"pid": pid, "cmd": command})
    return TerminationResult(pid, CleanupOutcome.FAILED, "still alive after SIGKILL", command)


def run_bounded(
    func: Callable[[T], R],
    items: Iterable[T],
    max_workers: int = 8,
    on_error: Callable[[T, BaseException], R] | None = None,
) -> list[R]:
    """
    Apply ``func`` to every item with at most ``max_workers`` in flight.

    Results keep input order. An exception from one item is turned into a
    result by ``on_error`` (or re-raised when it is None) after all other
    items have finished.
    """
    items = list(items)
    if not items:
        return []
    workers = max(1, min(max_workers, len(items)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="procguard") as pool:
        futures = [pool.submit(func, item) for item in items]
        results: list[R] = []
        for item, future in zip(items, futures):
            try:
                results.append(future.result())
            except Exception as e:
                if on_error is None:
                    raise
                results.append(on_error(item, e))
        return results
