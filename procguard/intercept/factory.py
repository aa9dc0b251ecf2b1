"""
Factory for the intercepted subprocess module.

``create_intercepted_module`` builds every entry point in one call, each
closed over the same registry, and returns them as a module object that can
stand in for ``subprocess``. Nothing is patched afterwards: importers get
intercepted functions from their first import onward.

Entry points:

    Node-shaped                     subprocess-shaped
    spawn(executable, args)         Popen(args, ...)
    exec(command, callback)         run(args, check=..., capture_output=...)
    exec_sync(command)              check_output(args)
    fork(module_path, args)         check_call(args) / call(args)
    exec_file(file, args, callback) getoutput(cmd) / getstatusoutput(cmd)
    exec_file_sync(file, args)      exec_async(command)  (coroutine)

String commands are tokenized with ``shlex``. Commands with no matching
registration follow the configured policy: ``default`` logs a warning and
succeeds with empty output, ``strict`` raises ``UnregisteredCommandError``,
``passthrough`` runs the real command under the lifecycle tracker.
"""

import asyncio
import os
import shlex
import subprocess
import sys
import time
import types
from collections.abc import Callable, Sequence
from typing import Any

from .. import log
from ..config import Config, get_config
from ..exceptions import UnregisteredCommandError
from ..mock.behavior import DEFAULT_BEHAVIOR, Behavior
from ..mock.process import EmulatedProcess
from ..mock.registry import REGISTRY, Invocation, MockRegistry

_lg = log.derive_lg(None, "intercept")

PIPE = subprocess.PIPE
STDOUT = subprocess.STDOUT
DEVNULL = subprocess.DEVNULL

Callback = Callable[[BaseException | None, Any, Any], Any]


def split_command(args: Any, shell: bool = False) -> tuple[str, tuple[str, ...]]:
    """
    Split an invocation into executable and argv.

    Strings (and path-likes) are tokenized with ``shlex``; sequences are
    taken as-is.
    """
    if isinstance(args, (str, bytes, os.PathLike)):
        tokens = shlex.split(os.fsdecode(args))
    else:
        tokens = [os.fsdecode(a) if isinstance(a, (bytes, os.PathLike)) else str(a) for a in args]
    if not tokens:
        raise ValueError("empty command")
    return tokens[0], tuple(tokens[1:])


def _text_mode(
    text: bool | None,
    encoding: str | None,
    errors: str | None,
    universal_newlines: bool | None,
) -> bool:
    return bool(text or encoding or errors or universal_newlines)


def create_intercepted_module(
    name: str = "subprocess",
    registry: MockRegistry | None = None,
    config: Config | None = None,
    tracker: Any | None = None,
    lg: Any | None = None,
) -> types.ModuleType:
    """
    Build the intercepted subprocess module.

    Args:
        name: Module ``__name__``
        registry: Registry consulted on every call (the process-wide one by default)
        config: Settings; read at call time (process-wide settings by default)
        tracker: Lifecycle tracker used by the passthrough policy
        lg: Logger for unmatched-command diagnostics

    Returns:
        Module exposing every entry point plus the ``subprocess`` constants
        and exception types.
    """
    reg = registry if registry is not None else REGISTRY
    lg = lg if lg is not None else _lg

    def _config() -> Config:
        return config if config is not None else get_config()

    def _tracker() -> Any:
        if tracker is not None:
            return tracker
        from ..tracker import TRACKER

        return TRACKER

    def _resolve(
        style: str, executable: str, argv: tuple[str, ...], options: dict[str, Any]
    ) -> tuple[Behavior | None, Invocation]:
        """
        Record the call and pick its behavior.

        Returns the behavior to emulate (None to run the real command) and
        the recorded invocation.
        """
        found = reg.lookup(executable, argv)
        call = Invocation(style, executable, argv, options, matched=found is not None)
        reg.record(call)
        if found is not None:
            return found.behavior, call

        policy = _config().unregistered_policy
        lg.warning(
            "unregistered command: %s",
            " ".join([executable, *argv]),
            extra={"cmd": executable, "argv": list(argv), "style": style, "policy": policy},
        )
        if policy == "strict":
            raise UnregisteredCommandError(executable, argv)
        if policy == "passthrough":
            return None, call
        return DEFAULT_BEHAVIOR, call

    def _emulate(
        call: Invocation,
        behavior: Behavior,
        text: bool = True,
        encoding: str | None = None,
        schedule: bool = True,
    ) -> EmulatedProcess:
        proc = EmulatedProcess(
            call.executable,
            call.argv,
            behavior,
            style=call.style,
            text=text,
            encoding=encoding or "utf-8",
            schedule=schedule,
        )
        call.pid = proc.pid
        reg.record_spawn(proc)
        return proc

    def _sync_delay(behavior: Behavior, timeout: float | None, args: Any) -> None:
        if not behavior.delay_ms:
            return
        cfg = _config()
        if not cfg.get("intercept.sync_delay"):
            return
        delay = min(behavior.delay_ms, int(cfg.get("intercept.sync_delay_cap_ms"))) / 1000
        if timeout is not None and delay > timeout:
            time.sleep(timeout)
            raise subprocess.TimeoutExpired(args, timeout)
        time.sleep(delay)

    def _attach_callback(proc: EmulatedProcess, callback: Callback | None) -> None:
        if callback is None:
            return

        def _on_close(*_: Any) -> None:
            callback(proc.failure(), proc.stdout.getvalue(), proc.stderr.getvalue())

        proc.once("close", _on_close)
        proc.complete_in_background()

    def _run_sync(
        call: Invocation,
        behavior: Behavior,
        text: bool,
        encoding: str | None,
        timeout: float | None,
        input: Any = None,
    ) -> EmulatedProcess:
        if behavior.error is not None:
            raise behavior.error.with_traceback(None)
        _sync_delay(behavior, timeout, [call.executable, *call.argv])
        proc = _emulate(call, behavior, text, encoding, schedule=False)
        if input is not None:
            proc.stdin.write(input)
        proc._complete()
        return proc

    # Node-shaped entry points

    def spawn(
        executable: str,
        args: Sequence[str] | None = None,
        *,
        shell: bool = False,
        text: bool = True,
        encoding: str | None = None,
        **options: Any,
    ) -> Any:
        """Streaming invocation; returns a handle immediately."""
        if args is None:
            executable, argv = split_command(executable if shell else [executable], shell)
        else:
            argv = tuple(str(a) for a in args)
        behavior, call = _resolve("spawn", executable, argv, options)
        if behavior is None:
            return _tracker().spawn([executable, *argv], **options)
        return _emulate(call, behavior, text, encoding)

    def exec_(
        command: str,
        callback: Callback | None = None,
        *,
        text: bool = True,
        encoding: str | None = None,
        **options: Any,
    ) -> Any:
        """
        Collect-style invocation; ``callback(error, stdout, stderr)`` runs on close.

        Inside a running event loop the callback fires from the loop. Without
        one it fires from a timer thread once the behavior's delay elapses,
        or earlier if the caller drives the handle.
        """
        executable, argv = split_command(command, shell=True)
        behavior, call = _resolve("exec", executable, argv, options)
        if behavior is None:
            return _passthrough_collect(executable, argv, callback, options)
        proc = _emulate(call, behavior, text, encoding)
        _attach_callback(proc, callback)
        return proc

    def exec_sync(
        command: str,
        *,
        input: Any = None,
        timeout: float | None = None,
        text: bool = True,
        encoding: str | None = None,
        **options: Any,
    ) -> Any:
        """Synchronous invocation; returns stdout or raises on failure."""
        executable, argv = split_command(command, shell=True)
        behavior, call = _resolve("exec_sync", executable, argv, options)
        if behavior is None:
            return _passthrough_run(
                [executable, *argv], dict(options, check=True, stdout=PIPE, text=text, timeout=timeout, input=input)
            ).stdout
        proc = _run_sync(call, behavior, text, encoding, timeout, input)
        failure = proc.failure()
        if failure is not None:
            raise failure
        return proc.stdout.getvalue()

    def fork(
        module_path: str,
        args: Sequence[str] = (),
        *,
        text: bool = True,
        **options: Any,
    ) -> Any:
        """Streaming invocation of a Python module or script."""
        argv = tuple(str(a) for a in args)
        behavior, call = _resolve("fork", module_path, argv, options)
        if behavior is None:
            return _tracker().spawn(_python_argv(module_path, argv), **options)
        return _emulate(call, behavior, text)

    def exec_file(
        file: str,
        args: Sequence[str] = (),
        callback: Callback | None = None,
        *,
        text: bool = True,
        encoding: str | None = None,
        **options: Any,
    ) -> Any:
        """Collect-style invocation of a file with an explicit argv."""
        argv = tuple(str(a) for a in args)
        behavior, call = _resolve("exec_file", file, argv, options)
        if behavior is None:
            return _passthrough_collect(file, argv, callback, options)
        proc = _emulate(call, behavior, text, encoding)
        _attach_callback(proc, callback)
        return proc

    def exec_file_sync(
        file: str,
        args: Sequence[str] = (),
        *,
        input: Any = None,
        timeout: float | None = None,
        text: bool = True,
        encoding: str | None = None,
        **options: Any,
    ) -> Any:
        argv = tuple(str(a) for a in args)
        behavior, call = _resolve("exec_file_sync", file, argv, options)
        if behavior is None:
            return _passthrough_run(
                [file, *argv], dict(options, check=True, stdout=PIPE, text=text, timeout=timeout, input=input)
            ).stdout
        if behavior.delay_ms:
            raise ValueError(
                f"exec_file_sync cannot emulate a delay ({behavior.delay_ms}ms) for {file}"
            )
        proc = _run_sync(call, behavior, text, encoding, timeout, input)
        failure = proc.failure()
        if failure is not None:
            raise failure
        return proc.stdout.getvalue()

    async def exec_async(command: str, **options: Any) -> tuple[Any, Any]:
        """Await a collect-style invocation; returns ``(stdout, stderr)``."""
        proc = exec_(command, **options)
        if not isinstance(proc, EmulatedProcess):
            stdout, stderr = await asyncio.to_thread(proc.communicate)
            if proc.returncode:
                raise subprocess.CalledProcessError(proc.returncode, command, stdout, stderr)
            return stdout, stderr
        await proc.wait_async()
        failure = proc.failure()
        if failure is not None:
            raise failure.with_traceback(None)
        return proc.stdout.getvalue(), proc.stderr.getvalue()

    # subprocess-shaped entry points

    def Popen(
        args: Any,
        bufsize: int = -1,
        executable: str | None = None,
        stdin: Any = None,
        stdout: Any = None,
        stderr: Any = None,
        *,
        shell: bool = False,
        text: bool | None = None,
        encoding: str | None = None,
        errors: str | None = None,
        universal_newlines: bool | None = None,
        **options: Any,
    ) -> Any:
        prog, argv = split_command(args, shell)
        behavior, call = _resolve("popen", prog, argv, options)
        if behavior is None:
            return _tracker().spawn(
                args,
                bufsize=bufsize,
                executable=executable,
                stdin=stdin,
                stdout=stdout,
                stderr=stderr,
                shell=shell,
                text=text,
                encoding=encoding,
                errors=errors,
                universal_newlines=universal_newlines,
                **options,
            )
        # Real Popen raises OSError-style errors at construction
        if behavior.error is not None:
            raise behavior.error.with_traceback(None)
        return _emulate(
            call,
            behavior,
            _text_mode(text, encoding, errors, universal_newlines),
            encoding,
        )

    def run(
        args: Any,
        *,
        input: Any = None,
        capture_output: bool = False,
        timeout: float | None = None,
        check: bool = False,
        stdout: Any = None,
        stderr: Any = None,
        shell: bool = False,
        text: bool | None = None,
        encoding: str | None = None,
        errors: str | None = None,
        universal_newlines: bool | None = None,
        **options: Any,
    ) -> subprocess.CompletedProcess:
        prog, argv = split_command(args, shell)
        behavior, call = _resolve("run", prog, argv, options)
        if behavior is None:
            return _passthrough_run(
                args,
                dict(
                    options,
                    input=input,
                    capture_output=capture_output,
                    timeout=timeout,
                    check=check,
                    stdout=stdout,
                    stderr=stderr,
                    shell=shell,
                    text=text,
                    encoding=encoding,
                    errors=errors,
                    universal_newlines=universal_newlines,
                ),
            )

        text_mode = _text_mode(text, encoding, errors, universal_newlines)
        proc = _run_sync(call, behavior, text_mode, encoding, timeout, input)

        if capture_output:
            stdout = stderr = PIPE
        out = proc.stdout.getvalue() if stdout == PIPE else None
        err: Any = None
        if stderr == PIPE:
            err = proc.stderr.getvalue()
        elif stderr == STDOUT and out is not None:
            out = out + proc.stderr.getvalue()

        if check:
            failure = proc.failure()
            if failure is not None:
                raise failure
        return subprocess.CompletedProcess(args, proc.returncode, out, err)  # type: ignore[arg-type]

    def check_output(args: Any, **kwargs: Any) -> Any:
        kwargs.setdefault("stdout", PIPE)
        return run(args, check=True, **kwargs).stdout

    def check_call(args: Any, **kwargs: Any) -> int:
        run(args, check=True, **kwargs)
        return 0

    def call(args: Any, **kwargs: Any) -> int:
        return run(args, **kwargs).returncode

    def getstatusoutput(cmd: str) -> tuple[int, str]:
        result = run(cmd, shell=True, text=True, stdout=PIPE, stderr=STDOUT)
        data = result.stdout or ""
        if data.endswith("\n"):
            data = data[:-1]
        return result.returncode, data

    def getoutput(cmd: str) -> str:
        return getstatusoutput(cmd)[1]

    # Passthrough helpers: run for real, tracked by the lifecycle tracker

    def _passthrough_run(args: Any, kwargs: dict[str, Any]) -> subprocess.CompletedProcess:
        input_data = kwargs.pop("input", None)
        timeout = kwargs.pop("timeout", None)
        check = kwargs.pop("check", False)
        if kwargs.pop("capture_output", False):
            kwargs["stdout"] = kwargs["stderr"] = PIPE
        if input_data is not None:
            kwargs["stdin"] = PIPE
        proc = _tracker().spawn(args, **kwargs)
        try:
            out, err = proc.communicate(input_data, timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
            raise
        if check and proc.returncode:
            raise subprocess.CalledProcessError(proc.returncode, args, out, err)
        return subprocess.CompletedProcess(args, proc.returncode, out, err)

    def _passthrough_collect(
        executable: str,
        argv: tuple[str, ...],
        callback: Callback | None,
        options: dict[str, Any],
    ) -> Any:
        proc = _tracker().spawn(
            [executable, *argv], stdout=PIPE, stderr=PIPE, text=True, **options
        )
        if callback is not None:
            out, err = proc.communicate()
            error = (
                subprocess.CalledProcessError(proc.returncode, [executable, *argv], out, err)
                if proc.returncode
                else None
            )
            callback(error, out, err)
        return proc

    module = types.ModuleType(name, "Intercepted subprocess module")
    exports: dict[str, Any] = {
        "spawn": spawn,
        "exec": exec_,
        "exec_sync": exec_sync,
        "fork": fork,
        "exec_file": exec_file,
        "exec_file_sync": exec_file_sync,
        "exec_async": exec_async,
        "Popen": Popen,
        "run": run,
        "check_output": check_output,
        "check_call": check_call,
        "call": call,
        "getoutput": getoutput,
        "getstatusoutput": getstatusoutput,
        "PIPE": PIPE,
        "STDOUT": STDOUT,
        "DEVNULL": DEVNULL,
        "CalledProcessError": subprocess.CalledProcessError,
        "CompletedProcess": subprocess.CompletedProcess,
        "SubprocessError": subprocess.SubprocessError,
        "TimeoutExpired": subprocess.TimeoutExpired,
        "list2cmdline": subprocess.list2cmdline,
        "registry": reg,
    }
    module.__dict__.update(exports)
    module.__all__ = [k for k in exports if k != "registry"]  # type: ignore[attr-defined]
    module.__procguard__ = True  # type: ignore[attr-defined]
    return module


def _python_argv(module_path: str, argv: tuple[str, ...]) -> list[str]:
    if module_path.endswith(".py") or os.sep in module_path:
        return [sys.executable, module_path, *argv]
    return [sys.executable, "-m", module_path, *argv]


def is_intercepted(module: Any) -> bool:
    return bool(getattr(module, "__procguard__", False))
