"""Commands exposed by the ``procguard`` CLI."""

import argparse
from dataclasses import dataclass
from typing import Any

from ..audit import CleanupLog, resolve_log_path
from ..config import Config
from ..exceptions import UnsupportedPlatformError
from ..reaper import ReapReport, find_candidates, reap
from ..teardown import global_teardown
from .output import ConsoleOutput, OutputWriter, render_table

EXIT_OK = 0
EXIT_UNSUPPORTED = 2


@dataclass(frozen=True)
class ToolConfig:
    name: str
    help_text: str
    description: str = ""


class Tool:
    """
    Base class for a subcommand.

    Subclasses declare a ``ToolConfig``, add their arguments in ``add_args``
    and implement ``run``, which returns the exit code.
    """

    config: ToolConfig

    def __init__(self, settings: Config, out: OutputWriter | None = None) -> None:
        self.settings = settings
        self.out: Any = out if out is not None else ConsoleOutput()

    @classmethod
    def add_args(cls, parser: argparse.ArgumentParser) -> None:
        pass

    def run(self, **kwargs: Any) -> int:
        raise NotImplementedError


def _print_matches(out: Any, report: ReapReport) -> None:
    results = report.summary.by_pid()
    rows = []
    for rec in report.found:
        result = results.get(rec.pid)
        rows.append(
            [rec.pid, rec.ppid, rec.user, str(result.outcome) if result else "-", rec.command]
        )
    render_table(out, "Matching processes", ["PID", "PPID", "USER", "OUTCOME", "COMMAND"], rows)


class ReapTool(Tool):
    """Run the emergency reaper."""

    config = ToolConfig(
        name="reap",
        help_text="Force-kill leaked test-runner processes",
        description="Sweeps the OS process table for test-runner processes owned by "
        "the current user and kills them.",
    )

    @classmethod
    def add_args(cls, parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--dry-run",
            "--check",
            dest="dry_run",
            action="store_true",
            help="List matching processes without killing them",
        )
        parser.add_argument(
            "--report",
            action="store_true",
            help="Print a table of matches and outcomes",
        )
        parser.add_argument(
            "--no-audit",
            dest="audit",
            action="store_false",
            help="Do not append to the audit log",
        )

    def run(
        self, dry_run: bool = False, report: bool = False, audit: bool = True, **kwargs: Any
    ) -> int:
        try:
            log = CleanupLog(resolve_log_path(self.settings)) if audit else None
            result = reap(dry_run=dry_run, audit=log, config=self.settings)
        except UnsupportedPlatformError as e:
            self.out.write(f"Unsupported: {e}")
            return EXIT_UNSUPPORTED

        if report or dry_run:
            _print_matches(self.out, result)
        self.out.write(result.one_line())
        return EXIT_OK


class ListTool(Tool):
    """Show what the reaper would match."""

    config = ToolConfig(
        name="list",
        help_text="List processes matching the test-runner signature",
    )

    def run(self, **kwargs: Any) -> int:
        try:
            found = find_candidates(config=self.settings)
        except UnsupportedPlatformError as e:
            self.out.write(f"Unsupported: {e}")
            return EXIT_UNSUPPORTED
        render_table(
            self.out,
            "Matching processes",
            ["PID", "PPID", "USER", "COMMAND"],
            [[r.pid, r.ppid, r.user, r.command] for r in found],
        )
        self.out.write(f"Found {len(found)} matching processes")
        return EXIT_OK


class TeardownTool(Tool):
    """Run the session teardown sweep by hand."""

    config = ToolConfig(
        name="teardown",
        help_text="Terminate leaked test processes gracefully, then forcefully",
    )

    def run(self, **kwargs: Any) -> int:
        report = global_teardown(config=self.settings)
        if report.sweep_skipped:
            self.out.write(f"Sweep skipped: {report.sweep_skipped}")
        self.out.write(
            f"Summary: killed={report.killed} failed={report.failed} "
            f"log={report.log_path or '<stdout>'}"
        )
        return EXIT_OK


class LogPathTool(Tool):
    """Print where the audit log is written."""

    config = ToolConfig(name="log-path", help_text="Print the audit log path")

    def run(self, **kwargs: Any) -> int:
        self.out.write(str(resolve_log_path(self.settings)))
        return EXIT_OK


TOOLS: list[type[Tool]] = [ReapTool, ListTool, TeardownTool, LogPathTool]
