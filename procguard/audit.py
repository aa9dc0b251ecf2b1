"""
Append-only cleanup audit log.

One text file collects every sweep made by the teardown orchestrator and
the emergency reaper::

    === Cleanup run: 2024-05-01T12:00:00+00:00
    Mode: teardown; LOG_FILE=/repo/logs/procguard/zombies.log
    Found 2 matching processes
      PID=4242 USER=dev CMD=python -m pytest -n 4
      PID=4243 USER=dev CMD=python -m pytest -n 4
      killed-graceful PID=4242 USER=dev CMD=python -m pytest -n 4
      killed-forced PID=4243 USER=dev CMD=python -m pytest -n 4 - ignored SIGTERM
    Summary: killed=2 failed=0
    <blank line>

Each line is flushed and fsynced as it is written, so a crash leaves the
trail up to the failing step. When the log directory cannot be created
or written, lines go to standard output instead.
"""

import datetime
import os
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TextIO

from . import log
from .config import Config, get_config
from .termination import CleanupOutcome, TerminationResult

_lg = log.derive_lg(None, "audit")

LOG_FILE_ENV = "PROCGUARD_LOG_FILE"
PROJECT_MARKERS = (".git", "pyproject.toml", "setup.py", "setup.cfg", "tox.ini")


@dataclass(frozen=True)
class CleanupLogEntry:
    pid: int
    user: str
    command: str
    outcome: CleanupOutcome
    detail: str = ""
    timestamp: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )

    @classmethod
    def from_result(cls, result: TerminationResult, user: str = "") -> "CleanupLogEntry":
        return cls(
            pid=result.pid,
            user=result.user or user,
            command=result.command,
            outcome=result.outcome,
            detail=result.detail,
        )

    def format(self) -> str:
        line = f"  {self.outcome} PID={self.pid} USER={self.user} CMD={self.command}"
        return f"{line} - {self.detail}" if self.detail else line


def _git_root(cwd: Path) -> Path | None:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    top = result.stdout.strip() if result.returncode == 0 else ""
    return Path(top) if top else None


def _marker_root(cwd: Path) -> Path | None:
    for directory in (cwd, *cwd.parents):
        if any((directory / marker).exists() for marker in PROJECT_MARKERS):
            return directory
    return None


def resolve_log_path(config: Config | None = None, cwd: Path | None = None) -> Path:
    """
    Pick the audit log file.

    Order: ``PROCGUARD_LOG_FILE`` (or ``audit.log_file``), then the git
    top-level plus ``audit.subpath``, then the nearest directory with a
    project marker plus the subpath, then the working directory plus the
    subpath. Each tier is tried only if the previous one produced nothing.
    """
    config = config if config is not None else get_config()
    cwd = (cwd or Path.cwd()).resolve()
    subpath = Path(config.get("audit.subpath"))

    override = os.environ.get(LOG_FILE_ENV) or config.get("audit.log_file")
    if override:
        return Path(override).expanduser()

    base = _git_root(cwd) or _marker_root(cwd) or cwd
    return base / subpath


class CleanupLog:
    """
    Writer for the audit log.

    Args:
        path: Log file; None writes only to ``fallback``
        fallback: Stream used when the file cannot be written (default stdout)
        lg: Logger notified when falling back
    """

    def __init__(
        self,
        path: Path | None,
        fallback: TextIO | None = None,
        lg: Any | None = None,
    ) -> None:
        self.path = path
        self._fallback = fallback
        self._lg = lg if lg is not None else _lg
        self.degraded = path is None
        if path is not None:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                self._degrade(e)

    def _degrade(self, error: BaseException) -> None:
        if not self.degraded:
            self._lg.warning(
                "cannot write audit log, using stdout",
                extra={"path": str(self.path), "exception": error},
            )
        self.degraded = True

    def _stream(self) -> TextIO:
        return self._fallback if self._fallback is not None else sys.stdout

    def write(self, line: str = "") -> None:
        if not self.degraded and self.path is not None:
            try:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
                    f.flush()
                    os.fsync(f.fileno())
                return
            except OSError as e:
                self._degrade(e)
        stream = self._stream()
        stream.write(line + "\n")
        stream.flush()

    # Structured helpers

    def begin(self, mode: str) -> None:
        now = datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds")
        self.write(f"=== Cleanup run: {now}")
        self.write(f"Mode: {mode}; LOG_FILE={self.path if self.path else '<stdout>'}")

    def found(self, records: list[Any]) -> None:
        self.write(f"Found {len(records)} matching processes")
        for rec in records:
            self.write(f"  PID={rec.pid} USER={rec.user} CMD={rec.command}")
        if not records:
            self.write("Nothing to kill")

    def outcome(self, entry: CleanupLogEntry) -> None:
        self.write(entry.format())

    def summary(self, killed: int, failed: int) -> None:
        self.write(f"Summary: killed={killed} failed={failed}")
        self.write()

    def note(self, text: str) -> None:
        self.write(text)
