"""
Tests for the session teardown orchestrator.
"""

from io import StringIO
from unittest.mock import MagicMock, patch

import pytest

from procguard.config import Config
from procguard.exceptions import UnsupportedPlatformError
from procguard.reaper import ProcessRecord
from procguard.teardown import global_teardown
from procguard.termination import CleanupOutcome, TerminationResult, TerminationSummary


@pytest.fixture
def teardown_config(clean_env, temp_dir) -> Config:
    return Config(
        {
            "termination": {"timeout_ms": 50, "max_workers": 2},
            "audit": {"log_file": str(temp_dir / "zombies.log")},
        },
        env_overrides=False,
    )


@pytest.fixture
def idle_tracker():
    tracker = MagicMock()
    tracker.active.return_value = []
    tracker.terminate_all.return_value = TerminationSummary()
    return tracker


def _graceful(pid, timeout_ms, command="", lg=None):
    return TerminationResult(pid, CleanupOutcome.KILLED_GRACEFUL, "", command)


@pytest.mark.unit
class TestGlobalTeardown:
    """Test tracked cleanup followed by the process-table sweep."""

    def test_sweeps_remaining_matches(self, teardown_config, idle_tracker, temp_dir):
        found = [ProcessRecord(11, 1, "dev", "pytest -x"), ProcessRecord(12, 1, "dev", "pytest")]
        with (
            patch("procguard.teardown.find_candidates", return_value=found),
            patch("procguard.teardown.graceful_then_forced", side_effect=_graceful) as term,
        ):
            report = global_teardown(tracker=idle_tracker, config=teardown_config)

        assert report.swept.killed == 2
        assert report.killed == 2
        assert report.failed == 0
        assert term.call_count == 2
        assert report.log_path == str(temp_dir / "zombies.log")

        text = (temp_dir / "zombies.log").read_text()
        assert "Mode: teardown" in text
        assert "Found 2 matching processes" in text
        assert "  killed-graceful PID=11 USER=dev CMD=pytest -x" in text
        assert "Summary: killed=2 failed=0" in text
        idle_tracker.acknowledge_all.assert_called_once()

    def test_tracked_survivors_are_terminated_first(self, teardown_config, temp_dir):
        tracker = MagicMock()
        tracker.active.return_value = [MagicMock(pid=21)]
        tracker.terminate_all.return_value = TerminationSummary(
            [TerminationResult(21, CleanupOutcome.KILLED_FORCED, "", "python server.py")]
        )
        swept = [ProcessRecord(21, 1, "dev", "pytest"), ProcessRecord(22, 1, "dev", "pytest")]

        with (
            patch("procguard.teardown.find_candidates", return_value=swept),
            patch("procguard.teardown.graceful_then_forced", side_effect=_graceful) as term,
        ):
            report = global_teardown(tracker=tracker, config=teardown_config)

        tracker.terminate_all.assert_called_once_with(timeout_ms=50, max_workers=2)
        assert [r.pid for r in report.found] == [22]
        assert term.call_count == 1
        assert report.tracked.killed == 1
        assert report.killed == 2
        assert "Tracked survivors: 1" in (temp_dir / "zombies.log").read_text()

    def test_unsupported_platform_skips_sweep(self, teardown_config, idle_tracker, temp_dir):
        error = UnsupportedPlatformError("not here")
        with patch("procguard.teardown.find_candidates", side_effect=error):
            report = global_teardown(tracker=idle_tracker, config=teardown_config)

        assert report.sweep_skipped == "not here"
        text = (temp_dir / "zombies.log").read_text()
        assert "Sweep skipped: not here" in text
        assert "Summary: killed=0 failed=0" in text

    def test_tracker_failure_does_not_stop_sweep(self, teardown_config, temp_dir):
        tracker = MagicMock()
        tracker.active.side_effect = RuntimeError("tracker broke")
        found = [ProcessRecord(31, 1, "dev", "pytest")]

        with (
            patch("procguard.teardown.find_candidates", return_value=found),
            patch("procguard.teardown.graceful_then_forced", side_effect=_graceful),
        ):
            report = global_teardown(tracker=tracker, config=teardown_config)

        assert report.swept.killed == 1
        assert "Tracker cleanup failed: RuntimeError: tracker broke" in (
            temp_dir / "zombies.log"
        ).read_text()

    def test_failed_terminations_are_counted(self, teardown_config, idle_tracker):
        found = [ProcessRecord(41, 1, "dev", "pytest")]

        def boom(*args, **kwargs):
            raise PermissionError("denied")

        with (
            patch("procguard.teardown.find_candidates", return_value=found),
            patch("procguard.teardown.graceful_then_forced", side_effect=boom),
        ):
            report = global_teardown(tracker=idle_tracker, config=teardown_config)

        assert report.failed == 1
        assert report.swept.results[0].outcome is CleanupOutcome.FAILED

    def test_unwritable_log_falls_back_to_stream(self, clean_env, temp_dir, idle_tracker):
        blocker = temp_dir / "file"
        blocker.write_text("")
        config = Config(
            {"audit": {"log_file": str(blocker / "zombies.log")}}, env_overrides=False
        )
        out = StringIO()

        with patch("procguard.teardown.find_candidates", return_value=[]):
            report = global_teardown(tracker=idle_tracker, config=config, out=out)

        assert report.failed == 0
        assert "Nothing to kill" in out.getvalue()

    def test_sweep_signals_the_scanned_handle(self, teardown_config, idle_tracker):
        handle = MagicMock(pid=51)
        found = [ProcessRecord(51, 1, "dev", "pytest", process=handle)]

        def _graceful_handle(target, timeout_ms, command="", lg=None):
            return TerminationResult(target.pid, CleanupOutcome.KILLED_GRACEFUL, "", command)

        with (
            patch("procguard.teardown.find_candidates", return_value=found),
            patch("procguard.teardown.graceful_then_forced", side_effect=_graceful_handle) as term,
        ):
            report = global_teardown(tracker=idle_tracker, config=teardown_config)

        assert term.call_args.args[0] is handle
        assert report.swept.killed == 1
