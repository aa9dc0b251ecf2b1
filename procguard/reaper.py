"""
Emergency reaper: an OS-level sweep for leaked test-runner processes.

The reaper never consults the lifecycle tracker. It reads the process
table directly, keeps only processes that

- have a command line matching the test-runner signature,
- belong to the current user,
- are not pid 1, this process, or one of its ancestors,

logs each match, and then force-kills all of them in parallel.
"""

import os
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import psutil

from . import log
from .audit import CleanupLog, CleanupLogEntry
from .config import Config, get_config
from .exceptions import UnsupportedPlatformError
from .termination import (
    CleanupOutcome,
    TerminationResult,
    TerminationSummary,
    force_kill,
    run_bounded,
)

_lg = log.derive_lg(None, "reaper")


@dataclass(frozen=True)
class ProcessRecord:
    """
    One process-table match.

    ``process`` is the psutil handle from the scan. Signalling through it
    keeps psutil's create-time check, so a pid reused after the scan is
    left alone.
    """

    pid: int
    ppid: int
    user: str
    command: str
    process: psutil.Process | None = field(default=None, compare=False, repr=False)

    @property
    def target(self) -> "psutil.Process | int":
        return self.process if self.process is not None else self.pid


class ProcessSignature:
    """
    Command-line signature of test-runner processes.

    Args:
        patterns: Regular expressions; a command line matching any of them matches
    """

    def __init__(self, patterns: Iterable[str]) -> None:
        self.patterns = list(patterns)
        if not self.patterns:
            raise ValueError("a process signature needs at least one pattern")
        self._compiled = re.compile("|".join(f"(?:{p})" for p in self.patterns))

    @classmethod
    def from_config(cls, config: Config | None = None) -> "ProcessSignature":
        config = config if config is not None else get_config()
        return cls(config.signature)

    def matches(self, command: str) -> bool:
        return bool(command) and self._compiled.search(command) is not None

    def __repr__(self) -> str:
        return f"ProcessSignature({self.patterns!r})"


@dataclass
class ReapReport:
    """Matches found by one sweep and what happened to each."""

    found: list[ProcessRecord] = field(default_factory=list)
    summary: TerminationSummary = field(default_factory=TerminationSummary)
    dry_run: bool = False

    @property
    def killed(self) -> int:
        return self.summary.killed

    @property
    def failed(self) -> int:
        return self.summary.failed

    def one_line(self) -> str:
        if self.dry_run:
            return f"Dry run: found={len(self.found)} (nothing killed)"
        return (
            f"Summary: found={len(self.found)} killed={self.killed} "
            f"failed={self.failed} already-dead={self.summary.already_dead}"
        )


def is_supported() -> bool:
    return os.name == "posix"


def ensure_supported() -> None:
    if not is_supported():
        raise UnsupportedPlatformError(
            "Process-table sweeps are not supported on this platform", platform=os.name
        )


def current_user() -> str:
    """Name of the user this process runs as, from the uid rather than $USER."""
    try:
        return psutil.Process().username()
    except (psutil.Error, KeyError, OSError):
        return str(os.getuid())


def _protected_pids() -> set[int]:
    own = os.getpid()
    protected = {1, own}
    try:
        protected.update(p.pid for p in psutil.Process(own).parents())
    except psutil.Error:
        pass
    return protected


def find_candidates(
    signature: ProcessSignature | None = None,
    user: str | None = None,
    config: Config | None = None,
) -> list[ProcessRecord]:
    """
    List processes matching ``signature`` owned by ``user``.

    Processes that disappear or deny access while being inspected are
    skipped.

    Raises:
        UnsupportedPlatformError: When the process table cannot be read
    """
    ensure_supported()
    signature = signature if signature is not None else ProcessSignature.from_config(config)
    user = user if user is not None else current_user()
    protected = _protected_pids()

    records = []
    for proc in psutil.process_iter(["pid", "ppid", "username", "cmdline"]):
        try:
            info = proc.info
            pid = info["pid"]
            if pid in protected:
                continue
            if info.get("username") != user:
                continue
            command = " ".join(info.get("cmdline") or [])
            if not signature.matches(command):
                continue
            records.append(
                ProcessRecord(pid, info.get("ppid") or 0, user, command, process=proc)
            )
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return sorted(records, key=lambda r: r.pid)


def reap(
    signature: ProcessSignature | None = None,
    dry_run: bool = False,
    max_workers: int | None = None,
    audit: CleanupLog | None = None,
    config: Config | None = None,
    lg: Any | None = None,
) -> ReapReport:
    """
    Find and force-kill leaked test-runner processes.

    Every match is logged before any signal is sent. Per-pid failures are
    collected in the report rather than raised.

    Args:
        signature: Command-line signature (from config when None)
        dry_run: Only list matches
        max_workers: Parallel kill ceiling (``termination.max_workers`` when None)
        audit: Audit log to append to
        config: Settings
        lg: Logger

    Raises:
        UnsupportedPlatformError: When the process table cannot be read
    """
    lg = lg if lg is not None else _lg
    config = config if config is not None else get_config()
    found = find_candidates(signature, config=config)
    report = ReapReport(found=found, dry_run=dry_run)

    if audit is not None:
        audit.begin("emergency dry-run" if dry_run else "emergency")
        audit.found(found)

    for rec in found:
        lg.info(
            "matched leaked process",
            extra={"pid": rec.pid, "user": rec.user, "cmd": rec.command},
        )

    if dry_run or not found:
        if audit is not None:
            audit.summary(0, 0)
        return report

    kill_timeout = int(config.get("reaper.kill_timeout_ms"))

    def _kill(rec: ProcessRecord) -> TerminationResult:
        result = force_kill(rec.target, timeout_ms=kill_timeout, command=rec.command, lg=lg)
        return TerminationResult(result.pid, result.outcome, result.detail, rec.command, rec.user)

    def _failed(rec: ProcessRecord, exc: BaseException) -> TerminationResult:
        return TerminationResult(
            rec.pid, CleanupOutcome.FAILED, f"{type(exc).__name__}: {exc}", rec.command, rec.user
        )

    results = run_bounded(
        _kill,
        found,
        max_workers=max_workers if max_workers is not None else config.max_workers,
        on_error=_failed,
    )
    report.summary = TerminationSummary(results)

    for result in results:
        lg.info(
            "reaped process",
            extra={"pid": result.pid, "outcome": str(result.outcome), "cmd": result.command},
        )
        if audit is not None:
            audit.outcome(CleanupLogEntry.from_result(result))
    if audit is not None:
        audit.summary(report.killed, report.failed)
    return report
