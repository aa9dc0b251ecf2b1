"""
Emulated child process handle.

An ``EmulatedProcess`` mimics both a Node-style child handle (events,
streams) and a ``subprocess.Popen`` object (``wait``, ``poll``,
``communicate``, ``returncode``). Completion is never emitted while the
handle is being created:

- With an asyncio loop running, completion is scheduled with
  ``loop.call_soon`` (or ``call_later`` for delayed behaviors).
- Without one, completion happens the first time the handle is driven:
  ``wait``, ``communicate``, a stream read, or ``poll`` after the delay.
  ``complete_in_background`` hands it to a timer thread instead.

Either way a listener attached right after creation sees every event.
"""

import asyncio
import itertools
import subprocess
import threading
import time
from collections.abc import Sequence
from typing import Any

from .. import log
from ..exceptions import CommandFailedError
from .behavior import Behavior, normalize_signal, signal_number
from .events import EventEmitter
from .matcher import command_line
from .streams import EmulatedStream

_lg = log.derive_lg(None, "process")

# Synthetic pids live far above typical pid_max so they never alias real ones
PID_BASE = 4_000_000

_pid_counter = itertools.count(PID_BASE)
_pid_lock = threading.Lock()


def next_pid() -> int:
    with _pid_lock:
        return next(_pid_counter)


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class EmulatedProcess(EventEmitter):
    """
    Handle for one intercepted invocation.

    Events:
        spawn(): the process "started"
        exit(exit_code, signal): the process finished
        close(exit_code, signal): streams are closed, emitted after ``exit``
        error(exc): the behavior carries an error; only emitted when a
            listener is attached, otherwise logged at debug

    ``exit_code`` is None exactly when ``signal`` is set. ``returncode``
    follows the ``Popen`` convention of ``-signum`` for signals.
    """

    def __init__(
        self,
        executable: str,
        argv: Sequence[str],
        behavior: Behavior,
        *,
        style: str = "spawn",
        text: bool = True,
        encoding: str = "utf-8",
        lg: Any | None = None,
        schedule: bool = True,
    ) -> None:
        super().__init__()
        self._lg = lg if lg is not None else _lg
        self.executable = executable
        self.argv = tuple(argv)
        self.args = [executable, *self.argv]
        self.behavior = behavior
        self.style = style
        self.pid = behavior.pid if behavior.pid is not None else next_pid()

        self.exit_code: int | None = None
        self.signal: str | None = None
        self.returncode: int | None = None
        self.killed = False
        self.error: BaseException | None = None

        self.stdin = EmulatedStream("stdin", None, text, encoding)
        self.stdout = EmulatedStream("stdout", self, text, encoding)
        self.stderr = EmulatedStream("stderr", self, text, encoding)

        self._state_lock = threading.RLock()
        self._done = threading.Event()
        self._completed = False
        self._spawned = False
        self._created = time.monotonic()
        self._handle: asyncio.Handle | None = None
        self._timer: threading.Timer | None = None
        self._completer: int | None = None

        self._loop = _running_loop() if schedule else None
        if self._loop is not None:
            self._loop.call_soon(self._emit_spawn)
            if behavior.delay_ms:
                self._handle = self._loop.call_later(
                    behavior.delay_ms / 1000, self._complete
                )
            else:
                self._handle = self._loop.call_soon(self._complete)

    def __repr__(self) -> str:
        return (
            f"<EmulatedProcess pid={self.pid} cmd={self.command_line!r} "
            f"returncode={self.returncode}>"
        )

    @property
    def command_line(self) -> str:
        return command_line(self.executable, self.argv)

    @property
    def completed(self) -> bool:
        return self._completed

    def _remaining_delay(self) -> float:
        elapsed = time.monotonic() - self._created
        return max(0.0, self.behavior.delay_ms / 1000 - elapsed)

    def _emit_spawn(self) -> None:
        with self._state_lock:
            if self._spawned:
                return
            self._spawned = True
        self.emit("spawn")

    def _emit_error(self, exc: BaseException) -> None:
        self.error = exc
        if self.listener_count("error") > 0:
            self.emit("error", exc)
        else:
            self._lg.debug(
                "error event suppressed, no listener attached",
                extra={"pid": self.pid, "cmd": self.command_line, "exception": exc},
            )

    def _complete(self) -> None:
        with self._state_lock:
            if self._completed:
                return
            self._completed = True
            self._completer = threading.get_ident()
        try:
            self._emit_outcome()
        finally:
            # Waiters on other threads are released even when a listener raises
            self._done.set()

    def _emit_outcome(self) -> None:
        self._emit_spawn()

        b = self.behavior
        if b.error is not None:
            self.exit_code = b.exit_code or 1
            self.returncode = self.exit_code
            self.stdout.end()
            self.stderr.end()
            self._emit_error(b.error)
            self._finish(emit_exit=False)
            return

        self.stdout.push(b.stdout)
        self.stderr.push(b.stderr)
        self.stdout.end()
        self.stderr.end()

        if b.signal is not None:
            self.signal = b.signal
            self.exit_code = None
            self.returncode = -signal_number(b.signal)
        else:
            self.exit_code = b.exit_code
            self.returncode = b.exit_code
        self._finish()

    def _finish(self, emit_exit: bool = True) -> None:
        try:
            if emit_exit:
                self.emit("exit", self.exit_code, self.signal)
            self.stdin.close()
            self.stdout.close()
            self.stderr.close()
            self.emit("close", self.exit_code, self.signal)
        finally:
            self._done.set()

    def _on_loop_thread(self) -> bool:
        return self._loop is not None and _running_loop() is self._loop

    def _cancel_scheduled(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        if self._timer is not None:
            self._timer.cancel()

    def _drive(self, timeout: float | None = None) -> None:
        """Bring the process to completion, sleeping out any remaining delay."""
        if self._completed:
            # Completion may still be in progress on another thread
            if self._completer != threading.get_ident() and not self._done.wait(timeout):
                raise subprocess.TimeoutExpired(self.args, timeout)  # type: ignore[arg-type]
            return
        loop_elsewhere = (
            self._loop is not None
            and self._handle is not None
            and not self._loop.is_closed()
            and not self._on_loop_thread()
            and self._loop.is_running()
        )
        if loop_elsewhere:
            if not self._done.wait(timeout):
                raise subprocess.TimeoutExpired(self.args, timeout)  # type: ignore[arg-type]
            return

        remaining = self._remaining_delay()
        if timeout is not None and remaining > timeout:
            time.sleep(timeout)
            raise subprocess.TimeoutExpired(self.args, timeout)
        if remaining > 0:
            time.sleep(remaining)
        self._cancel_scheduled()
        self._complete()

    # Popen-compatible surface

    def poll(self) -> int | None:
        if not self._completed and self._remaining_delay() <= 0:
            self._cancel_scheduled()
            self._complete()
        return self.returncode

    def wait(self, timeout: float | None = None) -> int | None:
        self._drive(timeout)
        return self.returncode

    def communicate(
        self, input: str | bytes | None = None, timeout: float | None = None
    ) -> tuple[Any, Any]:
        if input is not None and not self.stdin.ended:
            self.stdin.write(input)
        self._drive(timeout)
        return self.stdout.getvalue(), self.stderr.getvalue()

    async def wait_async(self) -> int | None:
        """Await completion on the running loop."""
        if self._completed:
            return self.returncode
        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()

        def _resolve(*_: Any) -> None:
            if not fut.done():
                fut.set_result(self.returncode)

        self.once("close", _resolve)
        if self._completed:
            return self.returncode
        if self._handle is None or self._loop is not loop:
            self._loop = loop
            self._handle = loop.call_later(self._remaining_delay(), self._complete)
        return await fut

    def complete_in_background(self) -> None:
        """
        Complete on a daemon timer thread once the delay has elapsed.

        For handles created without a running event loop whose callers will
        not drive them. No-op when a loop already schedules completion.
        """
        if self._loop is not None or self._completed or self._timer is not None:
            return
        timer = threading.Timer(self._remaining_delay(), self._complete)
        timer.daemon = True
        timer.name = f"procguard-complete-{self.pid}"
        self._timer = timer
        timer.start()

    def send_signal(self, sig: str | int = "SIGTERM") -> bool:
        """
        Terminate the emulated process with ``sig``.

        Returns False when the process had already completed.
        """
        name = normalize_signal(sig)
        assert name is not None
        with self._state_lock:
            if self._completed:
                return False
            self._completed = True
            self._completer = threading.get_ident()
        self._cancel_scheduled()
        self._emit_spawn()

        self.killed = True
        self.signal = name
        self.exit_code = None
        self.returncode = -signal_number(name)
        self.stdout.end()
        self.stderr.end()
        self._lg.debug(
            "emulated process killed",
            extra={"pid": self.pid, "cmd": self.command_line, "signal": name},
        )
        self._finish()
        return True

    def kill(self) -> bool:
        return self.send_signal("SIGKILL")

    def terminate(self) -> bool:
        return self.send_signal("SIGTERM")

    def __enter__(self) -> "EmulatedProcess":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.wait()

    # Collect-style helpers

    def failure(self) -> BaseException | None:
        """The error a collect-style caller should see, or None on success."""
        if self.error is not None:
            return self.error
        if self.returncode is None or self.returncode == 0:
            return None
        return CommandFailedError(
            self.returncode,
            self.command_line,
            output=self.stdout.getvalue(),
            stderr=self.stderr.getvalue(),
            signal=self.signal,
        )
