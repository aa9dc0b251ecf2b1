"""
Tests for the cleanup audit log.
"""

from io import StringIO
from pathlib import Path
from unittest.mock import patch

import pytest

from procguard.audit import CleanupLog, CleanupLogEntry, resolve_log_path
from procguard.config import Config
from procguard.reaper import ProcessRecord
from procguard.termination import CleanupOutcome, TerminationResult

SUBPATH = Path("logs/procguard/zombies.log")


def _config(**audit) -> Config:
    return Config({"audit": audit}, env_overrides=False)


# =============================================================================
# Entries
# =============================================================================


@pytest.mark.unit
class TestCleanupLogEntry:
    """Test per-process lines."""

    def test_format(self):
        entry = CleanupLogEntry(4242, "dev", "python -m pytest", CleanupOutcome.KILLED_GRACEFUL)
        assert entry.format() == "  killed-graceful PID=4242 USER=dev CMD=python -m pytest"

    def test_format_with_detail(self):
        entry = CleanupLogEntry(1, "dev", "pytest", CleanupOutcome.FAILED, "access denied")
        assert entry.format().endswith("CMD=pytest - access denied")

    def test_from_result(self):
        result = TerminationResult(7, CleanupOutcome.KILLED_FORCED, "", "pytest", "")
        entry = CleanupLogEntry.from_result(result, user="dev")
        assert (entry.pid, entry.user, entry.outcome) == (7, "dev", CleanupOutcome.KILLED_FORCED)


# =============================================================================
# Path resolution
# =============================================================================


@pytest.mark.unit
class TestResolveLogPath:
    """Test the location tiers."""

    def test_env_override(self, clean_env, temp_dir):
        target = temp_dir / "custom.log"
        clean_env.setenv("PROCGUARD_LOG_FILE", str(target))
        assert resolve_log_path(_config(), cwd=temp_dir) == target

    def test_config_override(self, clean_env, temp_dir):
        target = temp_dir / "from-config.log"
        assert resolve_log_path(_config(log_file=str(target)), cwd=temp_dir) == target

    def test_git_root(self, clean_env, temp_dir):
        with patch("procguard.audit._git_root", return_value=temp_dir):
            assert resolve_log_path(_config(), cwd=temp_dir / "sub") == temp_dir / SUBPATH

    def test_project_marker(self, clean_env, temp_dir):
        project = temp_dir / "project"
        nested = project / "src" / "pkg"
        nested.mkdir(parents=True)
        (project / "pyproject.toml").write_text("[project]\n")

        with patch("procguard.audit._git_root", return_value=None):
            resolved = resolve_log_path(_config(), cwd=nested)

        assert resolved == project.resolve() / SUBPATH

    def test_working_directory(self, clean_env, temp_dir):
        with (
            patch("procguard.audit._git_root", return_value=None),
            patch("procguard.audit._marker_root", return_value=None),
        ):
            assert resolve_log_path(_config(), cwd=temp_dir) == temp_dir.resolve() / SUBPATH

    def test_custom_subpath(self, clean_env, temp_dir):
        with patch("procguard.audit._git_root", return_value=temp_dir):
            resolved = resolve_log_path(_config(subpath="out/cleanup.log"), cwd=temp_dir)
        assert resolved == temp_dir / "out" / "cleanup.log"

    def test_marker_search_skipped_when_git_answers(self, clean_env, temp_dir):
        with (
            patch("procguard.audit._git_root", return_value=temp_dir),
            patch("procguard.audit._marker_root") as marker,
        ):
            resolve_log_path(_config(), cwd=temp_dir)
        marker.assert_not_called()

    def test_no_lookups_when_overridden(self, clean_env, temp_dir):
        with (
            patch("procguard.audit._git_root") as git,
            patch("procguard.audit._marker_root") as marker,
        ):
            resolve_log_path(_config(log_file=str(temp_dir / "x.log")), cwd=temp_dir)
        git.assert_not_called()
        marker.assert_not_called()


# =============================================================================
# Writer
# =============================================================================


@pytest.mark.unit
class TestCleanupLog:
    """Test the append-only writer."""

    def test_writes_a_full_run(self, temp_dir):
        path = temp_dir / "logs" / "zombies.log"
        audit = CleanupLog(path)
        records = [ProcessRecord(10, 1, "dev", "pytest -x")]

        audit.begin("teardown")
        audit.found(records)
        audit.outcome(
            CleanupLogEntry(10, "dev", "pytest -x", CleanupOutcome.KILLED_GRACEFUL)
        )
        audit.summary(1, 0)

        lines = path.read_text().splitlines()
        assert lines[0].startswith("=== Cleanup run: ")
        assert lines[1] == f"Mode: teardown; LOG_FILE={path}"
        assert lines[2] == "Found 1 matching processes"
        assert lines[3] == "  PID=10 USER=dev CMD=pytest -x"
        assert lines[4] == "  killed-graceful PID=10 USER=dev CMD=pytest -x"
        assert lines[5] == "Summary: killed=1 failed=0"
        assert lines[6] == ""
        assert not audit.degraded

    def test_appends_across_runs(self, temp_dir):
        path = temp_dir / "zombies.log"
        for _ in range(2):
            audit = CleanupLog(path)
            audit.begin("emergency")
            audit.summary(0, 0)
        assert path.read_text().count("=== Cleanup run:") == 2

    def test_nothing_to_kill(self, temp_dir):
        out = StringIO()
        CleanupLog(None, fallback=out).found([])
        assert out.getvalue() == "Found 0 matching processes\nNothing to kill\n"

    def test_unwritable_directory_falls_back(self, temp_dir, capture_logs):
        blocker = temp_dir / "not-a-dir"
        blocker.write_text("")
        out = StringIO()

        audit = CleanupLog(blocker / "zombies.log", fallback=out)
        audit.note("still recorded")

        assert audit.degraded
        assert out.getvalue() == "still recorded\n"
        assert "cannot write audit log" in capture_logs.getvalue()

    def test_no_path_uses_stdout(self, capsys):
        audit = CleanupLog(None)
        audit.begin("emergency dry-run")
        captured = capsys.readouterr().out
        assert "Mode: emergency dry-run; LOG_FILE=<stdout>" in captured
