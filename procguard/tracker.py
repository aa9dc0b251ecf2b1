"""
Lifecycle tracker for real processes spawned during a test session.

Every real spawn (launched through ``LifecycleTracker.spawn``, passed
through by the intercepted module, or reported with ``track``) gets a
``ProcessInfo`` entry. Entries move through::

    spawned -> running -> exited | terminated-graceful | terminated-forced | unknown

and are only removed by ``acknowledge``, so a crash mid-session still
leaves a record of what was running.
"""

import datetime
import enum
import os
import subprocess
import threading
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

import psutil

from . import log
from .config import Config, get_config
from .termination import (
    CleanupOutcome,
    TerminationResult,
    TerminationSummary,
    graceful_then_forced,
    run_bounded,
)

_lg = log.derive_lg(None, "tracker")


class ProcessStatus(str, enum.Enum):
    SPAWNED = "spawned"
    RUNNING = "running"
    EXITED = "exited"
    TERMINATED_GRACEFUL = "terminated-graceful"
    TERMINATED_FORCED = "terminated-forced"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value

    @property
    def terminal(self) -> bool:
        return self not in (ProcessStatus.SPAWNED, ProcessStatus.RUNNING)

    @property
    def killed(self) -> bool:
        return self in (ProcessStatus.TERMINATED_GRACEFUL, ProcessStatus.TERMINATED_FORCED)


_OUTCOME_STATUS = {
    CleanupOutcome.ALREADY_DEAD: ProcessStatus.EXITED,
    CleanupOutcome.KILLED_GRACEFUL: ProcessStatus.TERMINATED_GRACEFUL,
    CleanupOutcome.KILLED_FORCED: ProcessStatus.TERMINATED_FORCED,
    CleanupOutcome.FAILED: ProcessStatus.UNKNOWN,
}


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class ProcessInfo:
    pid: int
    parent_pid: int
    command: str
    started_at: datetime.datetime = field(default_factory=_now)
    status: ProcessStatus = ProcessStatus.SPAWNED
    owner: str | None = None
    ended_at: datetime.datetime | None = None

    @property
    def lifetime(self) -> datetime.timedelta:
        return (self.ended_at or _now()) - self.started_at


@dataclass(frozen=True)
class TrackerStats:
    total_spawned: int
    total_cleaned: int
    zombies: int
    active: int
    by_owner: dict[str, int]
    longest_lived: ProcessInfo | None


class LifecycleTracker:
    """
    Records real spawns and terminates survivors.

    Args:
        config: Settings for default timeout and worker count
        lg: Logger (defaults to ``procguard.tracker``)

    Example:
        tracker = LifecycleTracker()
        proc = tracker.spawn(["sleep", "30"])
        tracker.terminate(proc.pid, timeout_ms=500).outcome   # killed-graceful
    """

    def __init__(self, config: Config | None = None, lg: Any | None = None) -> None:
        self._config = config
        self._lg = lg if lg is not None else _lg
        self._lock = threading.RLock()
        self._entries: dict[int, ProcessInfo] = {}
        self._handles: dict[int, psutil.Process] = {}
        self._popens: dict[int, subprocess.Popen] = {}
        self._owner: str | None = None
        self._total_spawned = 0
        self._total_cleaned = 0
        self._zombies = 0

    @property
    def config(self) -> Config:
        return self._config if self._config is not None else get_config()

    # Ownership (which test a spawn belongs to)

    @property
    def owner(self) -> str | None:
        return self._owner

    def set_owner(self, owner: str | None) -> None:
        self._owner = owner

    # Recording

    def track(
        self,
        pid: int,
        command: str | Sequence[str] = "",
        parent_pid: int | None = None,
        owner: str | None = None,
        popen: subprocess.Popen | None = None,
    ) -> ProcessInfo:
        """
        Start tracking a real process.

        The entry starts as ``spawned`` and is moved to ``running`` once the
        process is confirmed alive, or to ``exited`` when it is already gone.
        """
        if not isinstance(command, str):
            command = " ".join(str(c) for c in command)
        info = ProcessInfo(
            pid=pid,
            parent_pid=parent_pid if parent_pid is not None else os.getpid(),
            command=command,
            owner=owner if owner is not None else self._owner,
        )
        with self._lock:
            self._entries[pid] = info
            if popen is not None:
                self._popens[pid] = popen
            self._total_spawned += 1

        try:
            handle = psutil.Process(pid)
            self._handles[pid] = handle
            alive = handle.is_running() and handle.status() != psutil.STATUS_ZOMBIE
            self._set_status(pid, ProcessStatus.RUNNING if alive else ProcessStatus.EXITED)
        except psutil.NoSuchProcess:
            self._set_status(pid, ProcessStatus.EXITED)
        except (psutil.AccessDenied, OSError):
            self._set_status(pid, ProcessStatus.UNKNOWN)

        self._lg.debug(
            "tracking process",
            extra={"pid": pid, "cmd": command, "status": str(info.status), "owner": info.owner},
        )
        return info

    def spawn(self, args: Any, **popen_kwargs: Any) -> subprocess.Popen:
        """Start a real process with ``subprocess.Popen`` and track it."""
        proc = subprocess.Popen(args, **popen_kwargs)
        command = args if isinstance(args, str) else " ".join(str(a) for a in args)
        self.track(proc.pid, command, popen=proc)
        return proc

    def _set_status(self, pid: int, status: ProcessStatus) -> None:
        with self._lock:
            info = self._entries.get(pid)
            if info is None or info.status is status:
                return
            info.status = status
            if status.terminal and info.ended_at is None:
                info.ended_at = _now()

    def refresh(self, pid: int) -> ProcessStatus | None:
        """Re-check liveness of a tracked process and update its status."""
        info = self._entries.get(pid)
        if info is None:
            return None
        if info.status.terminal:
            return info.status

        popen = self._popens.get(pid)
        if popen is not None and popen.poll() is not None:
            self._set_status(pid, ProcessStatus.EXITED)
            return info.status

        handle = self._handles.get(pid)
        if handle is None:
            return info.status
        try:
            if not handle.is_running() or handle.status() == psutil.STATUS_ZOMBIE:
                self._set_status(pid, ProcessStatus.EXITED)
        except psutil.NoSuchProcess:
            self._set_status(pid, ProcessStatus.EXITED)
        except (psutil.AccessDenied, OSError):
            pass
        return info.status

    # Termination

    def terminate(self, pid: int, timeout_ms: int | None = None) -> TerminationResult:
        """
        Terminate one process: SIGTERM, wait, re-check, SIGKILL if still alive.

        Calling it again on a process that already ended reports
        ``already-dead`` without sending any signal. Untracked pids are
        terminated too.
        """
        timeout_ms = timeout_ms if timeout_ms is not None else self.config.timeout_ms
        info = self._entries.get(pid)
        if info is not None and self.refresh(pid) in (
            ProcessStatus.EXITED,
            ProcessStatus.TERMINATED_GRACEFUL,
            ProcessStatus.TERMINATED_FORCED,
        ):
            return TerminationResult(pid, CleanupOutcome.ALREADY_DEAD, "", info.command)

        target: psutil.Process | int = self._handles.get(pid, pid)
        result = graceful_then_forced(
            target,
            timeout_ms=timeout_ms,
            command=info.command if info is not None else "",
            lg=self._lg,
        )

        popen = self._popens.get(pid)
        if popen is not None:
            # Reap so the Popen object does not later report a stale status
            try:
                popen.wait(timeout=0)
            except subprocess.TimeoutExpired:
                pass

        if info is not None:
            self._set_status(pid, _OUTCOME_STATUS[result.outcome])
            if result.outcome in (CleanupOutcome.KILLED_GRACEFUL, CleanupOutcome.KILLED_FORCED):
                with self._lock:
                    self._total_cleaned += 1
                    if result.outcome is CleanupOutcome.KILLED_FORCED:
                        self._zombies += 1

        self._lg.info(
            "terminated process",
            extra={"pid": pid, "outcome": str(result.outcome), "cmd": result.command},
        )
        return result

    def terminate_all(
        self,
        timeout_ms: int | None = None,
        max_workers: int | None = None,
        pids: Iterable[int] | None = None,
    ) -> TerminationSummary:
        """
        Terminate every active tracked process (or ``pids``) concurrently.

        At most ``max_workers`` terminations run at once. A failure for one
        pid is recorded as a ``failed`` outcome and does not stop the rest.
        """
        targets = list(pids) if pids is not None else [i.pid for i in self.active()]
        workers = max_workers if max_workers is not None else self.config.max_workers

        def _failed(pid: int, exc: BaseException) -> TerminationResult:
            self._lg.warning(
                "termination raised", extra={"pid": pid, "exception": exc}
            )
            return TerminationResult(pid, CleanupOutcome.FAILED, f"{type(exc).__name__}: {exc}")

        results = run_bounded(
            lambda pid: self.terminate(pid, timeout_ms),
            targets,
            max_workers=workers,
            on_error=_failed,
        )
        return TerminationSummary(results)

    def terminate_owned(self, owner: str, timeout_ms: int | None = None) -> TerminationSummary:
        """Terminate active processes spawned while ``owner`` was current."""
        pids = [i.pid for i in self.active() if i.owner == owner]
        if not pids:
            return TerminationSummary()
        self._lg.info(
            "cleaning processes left by test", extra={"owner": owner, "count": len(pids)}
        )
        return self.terminate_all(timeout_ms=timeout_ms, pids=pids)

    # Bookkeeping

    def acknowledge(self, pid: int) -> bool:
        with self._lock:
            self._handles.pop(pid, None)
            self._popens.pop(pid, None)
            return self._entries.pop(pid, None) is not None

    def acknowledge_all(self, only_terminal: bool = True) -> int:
        """Drop entries (by default only those that reached a terminal state)."""
        with self._lock:
            pids = [
                pid
                for pid, info in self._entries.items()
                if info.status.terminal or not only_terminal
            ]
        return sum(1 for pid in pids if self.acknowledge(pid))

    def get(self, pid: int) -> ProcessInfo | None:
        info = self._entries.get(pid)
        return replace(info) if info is not None else None

    def snapshot(self) -> list[ProcessInfo]:
        with self._lock:
            return [replace(i) for i in self._entries.values()]

    def active(self) -> list[ProcessInfo]:
        for pid in list(self._entries):
            self.refresh(pid)
        return [i for i in self.snapshot() if not i.status.terminal]

    def __contains__(self, pid: object) -> bool:
        return pid in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> TrackerStats:
        entries = self.snapshot()
        owners = Counter(i.owner or "<session>" for i in entries)
        longest = max(entries, key=lambda i: i.lifetime, default=None)
        return TrackerStats(
            total_spawned=self._total_spawned,
            total_cleaned=self._total_cleaned,
            zombies=self._zombies,
            active=sum(1 for i in entries if not i.status.terminal),
            by_owner=dict(owners),
            longest_lived=longest,
        )

    def report(self) -> str:
        """Human-readable summary of the tracked processes."""
        stats = self.stats()
        lines = [
            "Process tracker report",
            f"  spawned={stats.total_spawned} cleaned={stats.total_cleaned} "
            f"forced={stats.zombies} active={stats.active}",
        ]
        if stats.longest_lived is not None:
            lived = stats.longest_lived
            lines.append(
                f"  longest lived: PID={lived.pid} {lived.lifetime.total_seconds():.1f}s "
                f"CMD={lived.command}"
            )
        for owner, count in sorted(stats.by_owner.items()):
            lines.append(f"  {owner}: {count}")
        for info in self.snapshot():
            lines.append(f"  PID={info.pid} STATUS={info.status} CMD={info.command}")
        return "\n".join(lines)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()
            self._handles.clear()
            self._popens.clear()
            self._owner = None
            self._total_spawned = self._total_cleaned = self._zombies = 0


TRACKER = LifecycleTracker()
