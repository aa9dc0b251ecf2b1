"""
Global teardown: the last cleanup step of a test session.

``global_teardown`` first terminates processes still active in the
lifecycle tracker, then sweeps the OS process table with the reaper's
signature rule and terminates every remaining match the same graceful
then forced way. Every step is written to the audit log. Nothing here
raises: an unwritable log falls back to stdout, and an unsupported
platform skips the sweep with a note.
"""

from dataclasses import dataclass, field
from typing import Any, TextIO

from . import log
from .audit import CleanupLog, CleanupLogEntry, resolve_log_path
from .config import Config, get_config
from .exceptions import UnsupportedPlatformError
from .reaper import ProcessRecord, ProcessSignature, current_user, find_candidates
from .termination import (
    CleanupOutcome,
    TerminationResult,
    TerminationSummary,
    graceful_then_forced,
    run_bounded,
)
from .tracker import TRACKER, LifecycleTracker

_lg = log.derive_lg(None, "teardown")


@dataclass
class TeardownReport:
    tracked: TerminationSummary = field(default_factory=TerminationSummary)
    swept: TerminationSummary = field(default_factory=TerminationSummary)
    found: list[ProcessRecord] = field(default_factory=list)
    log_path: str | None = None
    sweep_skipped: str | None = None

    @property
    def killed(self) -> int:
        return self.tracked.killed + self.swept.killed

    @property
    def failed(self) -> int:
        return self.tracked.failed + self.swept.failed


def _open_log(config: Config, out: TextIO | None, lg: Any) -> CleanupLog:
    try:
        path = resolve_log_path(config)
    except Exception as e:
        lg.warning("cannot resolve audit log path", extra={"exception": e})
        return CleanupLog(None, fallback=out, lg=lg)
    return CleanupLog(path, fallback=out, lg=lg)


def global_teardown(
    tracker: LifecycleTracker | None = None,
    config: Config | None = None,
    out: TextIO | None = None,
    signature: ProcessSignature | None = None,
    lg: Any | None = None,
) -> TeardownReport:
    """
    Terminate tracked survivors, then sweep the process table.

    Args:
        tracker: Lifecycle tracker to reconcile (process-wide one by default)
        config: Settings (timeouts, workers, signature, audit location)
        out: Fallback stream for the audit log (stdout by default)
        signature: Override the configured command-line signature
        lg: Logger

    Returns:
        TeardownReport with tracked and swept outcomes
    """
    lg = lg if lg is not None else _lg
    tracker = tracker if tracker is not None else TRACKER
    config = config if config is not None else get_config()
    timeout_ms = config.timeout_ms
    workers = config.max_workers

    audit = _open_log(config, out, lg)
    report = TeardownReport(log_path=str(audit.path) if audit.path else None)
    audit.begin("teardown")

    try:
        active = tracker.active()
        if active:
            audit.note(f"Tracked survivors: {len(active)}")
        report.tracked = tracker.terminate_all(timeout_ms=timeout_ms, max_workers=workers)
        user = current_user()
        for result in report.tracked.results:
            audit.outcome(CleanupLogEntry.from_result(result, user=user))
    except Exception as e:
        lg.error("tracker cleanup failed", extra={"exception": e})
        audit.note(f"Tracker cleanup failed: {type(e).__name__}: {e}")

    handled = {r.pid for r in report.tracked.results}
    try:
        sig = signature if signature is not None else ProcessSignature.from_config(config)
        report.found = [r for r in find_candidates(sig, config=config) if r.pid not in handled]
    except UnsupportedPlatformError as e:
        report.sweep_skipped = str(e)
        lg.warning("process-table sweep skipped", extra={"reason": str(e)})
        audit.note(f"Sweep skipped: {e}")
    except Exception as e:
        report.sweep_skipped = f"{type(e).__name__}: {e}"
        lg.error("process-table sweep failed", extra={"exception": e})
        audit.note(f"Sweep failed: {report.sweep_skipped}")

    if report.sweep_skipped is None:
        audit.found(report.found)

        def _terminate(rec: ProcessRecord) -> TerminationResult:
            result = graceful_then_forced(rec.target, timeout_ms, command=rec.command, lg=lg)
            return TerminationResult(
                result.pid, result.outcome, result.detail, rec.command, rec.user
            )

        def _failed(rec: ProcessRecord, exc: BaseException) -> TerminationResult:
            return TerminationResult(
                rec.pid,
                CleanupOutcome.FAILED,
                f"{type(exc).__name__}: {exc}",
                rec.command,
                rec.user,
            )

        results = run_bounded(_terminate, report.found, max_workers=workers, on_error=_failed)
        report.swept = TerminationSummary(results)
        for result in results:
            audit.outcome(CleanupLogEntry.from_result(result))

    audit.summary(report.killed, report.failed)
    tracker.acknowledge_all()
    lg.info(
        "teardown complete",
        extra={
            "killed": report.killed,
            "failed": report.failed,
            "log": report.log_path or "<stdout>",
        },
    )
    return report
