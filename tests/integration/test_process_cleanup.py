"""
Integration tests that spawn, signal and reap real child processes.
"""

import asyncio
import shlex
import subprocess
import sys
import time

import psutil
import pytest

from procguard.config import Config
from procguard.intercept import create_intercepted_module
from procguard.mock.registry import MockRegistry
from procguard.termination import CleanupOutcome, graceful_then_forced
from procguard.tracker import LifecycleTracker, ProcessStatus
from tests.helpers.children import SLEEPER, posix_only, start, stop

pytestmark = [pytest.mark.integration, posix_only]


@pytest.mark.integration
class TestTerminateAll:
    """Concurrent termination of tracked children."""

    def test_unresponsive_child_is_forced_and_responsive_is_graceful(
        self, tracker: LifecycleTracker, sleeper, stubborn
    ):
        tracker.track(sleeper.pid, "sleeper", popen=sleeper)
        tracker.track(stubborn.pid, "stubborn", popen=stubborn)

        summary = tracker.terminate_all(timeout_ms=200)

        outcomes = {pid: r.outcome for pid, r in summary.by_pid().items()}
        assert outcomes[sleeper.pid] is CleanupOutcome.KILLED_GRACEFUL
        assert outcomes[stubborn.pid] is CleanupOutcome.KILLED_FORCED
        assert tracker.get(sleeper.pid).status is ProcessStatus.TERMINATED_GRACEFUL
        assert tracker.get(stubborn.pid).status is ProcessStatus.TERMINATED_FORCED
        assert tracker.stats().zombies == 1
        assert not psutil.pid_exists(stubborn.pid) or (
            psutil.Process(stubborn.pid).status() == psutil.STATUS_ZOMBIE
        )

    def test_terminate_is_idempotent(self, tracker: LifecycleTracker, sleeper):
        tracker.track(sleeper.pid, "sleeper", popen=sleeper)

        first = tracker.terminate(sleeper.pid, timeout_ms=500)
        second = tracker.terminate(sleeper.pid, timeout_ms=500)

        assert first.outcome is CleanupOutcome.KILLED_GRACEFUL
        assert second.outcome is CleanupOutcome.ALREADY_DEAD
        assert tracker.stats().total_cleaned == 1

    def test_entries_stay_until_acknowledged(self, tracker: LifecycleTracker, sleeper):
        tracker.track(sleeper.pid, "sleeper", popen=sleeper)
        tracker.terminate_all(timeout_ms=500)

        assert sleeper.pid in tracker
        assert tracker.active() == []
        tracker.acknowledge_all()
        assert sleeper.pid not in tracker


@pytest.mark.integration
class TestTrackerSpawn:
    """Processes launched through the tracker."""

    def test_spawn_tracks_and_detects_exit(self, tracker: LifecycleTracker):
        proc = tracker.spawn([sys.executable, "-c", "pass"])
        proc.wait(timeout=10)

        assert tracker.refresh(proc.pid) is ProcessStatus.EXITED
        assert tracker.active() == []

    def test_terminate_owned(self, tracker: LifecycleTracker):
        tracker.set_owner("test_owned")
        mine = tracker.spawn([sys.executable, "-c", SLEEPER], stdout=subprocess.DEVNULL)
        tracker.set_owner("someone_else")
        theirs = tracker.spawn([sys.executable, "-c", SLEEPER], stdout=subprocess.DEVNULL)
        try:
            summary = tracker.terminate_owned("test_owned", timeout_ms=500)

            assert [r.pid for r in summary.results] == [mine.pid]
            assert theirs.poll() is None
        finally:
            tracker.terminate_all(timeout_ms=500)
            for proc in (mine, theirs):
                proc.wait(timeout=10)


@pytest.mark.integration
class TestGracefulThenForcedReal:
    """The termination primitive against real children."""

    def test_sleeper(self):
        proc = start(SLEEPER)
        try:
            result = graceful_then_forced(proc.pid, timeout_ms=500)
            assert result.outcome is CleanupOutcome.KILLED_GRACEFUL
            assert "time.sleep" in result.command
        finally:
            stop(proc)

    def test_already_exited_child(self):
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        proc.wait(timeout=10)
        result = graceful_then_forced(proc.pid, timeout_ms=100)
        assert result.outcome is CleanupOutcome.ALREADY_DEAD


@pytest.mark.integration
class TestPassthrough:
    """Unregistered commands run for real under the tracker."""

    def test_passthrough_runs_real_command(self, tracker: LifecycleTracker):
        mod = create_intercepted_module(
            registry=MockRegistry(),
            config=Config({"intercept": {"unregistered": "passthrough"}}, env_overrides=False),
            tracker=tracker,
        )

        result = mod.run([sys.executable, "-c", "print('real')"], capture_output=True, text=True)

        assert result.stdout == "real\n"
        assert result.returncode == 0
        assert len(tracker) == 1
        assert tracker.active() == []

    def test_passthrough_exec_async_does_not_block_the_loop(self, tracker: LifecycleTracker):
        mod = create_intercepted_module(
            registry=MockRegistry(),
            config=Config({"intercept": {"unregistered": "passthrough"}}, env_overrides=False),
            tracker=tracker,
        )
        command = shlex.join([sys.executable, "-c", "import time; time.sleep(0.4); print('up')"])

        async def scenario():
            ticks = 0
            stop_ticking = asyncio.Event()

            async def ticker():
                nonlocal ticks
                while not stop_ticking.is_set():
                    ticks += 1
                    await asyncio.sleep(0.02)

            ticking = asyncio.create_task(ticker())
            started = time.monotonic()
            results = await asyncio.gather(mod.exec_async(command), mod.exec_async(command))
            elapsed = time.monotonic() - started
            stop_ticking.set()
            await ticking
            return results, elapsed, ticks

        results, elapsed, ticks = asyncio.run(scenario())

        assert [out for out, _ in results] == ["up\n", "up\n"]
        assert elapsed < 0.75
        assert ticks >= 5
        assert len(tracker) == 2
