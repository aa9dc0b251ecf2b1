"""
Logging for procguard.

Extends the standard logger with a TRACE level and with structured extra
fields that are merged per logger and per call, then rendered by
``LogFormatter`` as ``[key:value]`` suffixes:

    [12:34:56,789] [W] unregistered command        [cmd:ghost] [argv:] [1234] [procguard.intercept]

Library code only obtains loggers through ``derive_lg``; handlers are
attached by ``create_lg`` from the CLI or from the pytest plugin.
"""

import collections
import logging
import os
import re
import sys
from typing import Any, TextIO

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

ROOT_NAME = "procguard"

DEFAULT_FORMAT = "[%(asctime)s] [%(levelname).1s] %(message)s"
DEFAULT_RULE_WIDTH = 70

LEVEL_NAMES: dict[str, int] = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

_EXTRA_ATTR = "__procguard__extra"
_ANSI_PATTERN = re.compile(r"\x1b\[[0-9;]*m")
_RESET = "\x1b[0m"
_COLORS: dict[int, str] = {
    TRACE: "\x1b[38;5;240m",
    logging.DEBUG: "\x1b[38;5;32m",
    logging.INFO: "\x1b[36m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[35m",
}


class Logger(logging.Logger):
    """
    Logger with pre-populated extra fields and a TRACE level.

    Extra fields given at derivation time are merged under per-call
    ``extra=`` values, so a tracker logger can carry ``[owner:...]`` on every
    record without repeating it.
    """

    def __init__(self, name: str, level: int = logging.NOTSET) -> None:
        super().__init__(name, level)
        self._extra: dict[str, Any] = {}

    def bind(self, **extra: Any) -> "Logger":
        self._extra.update(extra)
        return self

    def makeRecord(  # type: ignore[override]
        self,
        name: str,
        level: int,
        fn: str,
        lno: int,
        msg: object,
        args: Any,
        exc_info: Any,
        func: str | None = None,
        extra: dict[str, Any] | None = None,
        sinfo: str | None = None,
    ) -> logging.LogRecord:
        merged: dict[str, Any] = collections.OrderedDict(self._extra)
        if extra:
            merged.update(extra)
        record = super().makeRecord(
            name, level, fn, lno, msg, args, exc_info, func, merged or None, sinfo
        )
        setattr(record, _EXTRA_ATTR, merged)
        return record

    def trace(self, msg: str, *args: Any, **kwargs: Any) -> None:
        if self.isEnabledFor(TRACE):
            self._log(TRACE, msg, args, **kwargs)


def _get_logger(name: str) -> Logger | logging.Logger:
    manager = logging.Logger.manager
    existing = manager.loggerDict.get(name)
    if isinstance(existing, logging.Logger):
        return existing
    original = manager.loggerClass
    manager.setLoggerClass(Logger)
    try:
        return logging.getLogger(name)
    finally:
        manager.loggerClass = original


def derive_lg(parent: logging.Logger | None, suffix: str, **extra: Any) -> Any:
    """
    Get a child logger below ``parent`` (or below the package root).

    Args:
        parent: Parent logger, or None for the package root
        suffix: Dotted name relative to the parent
        **extra: Fields attached to every record of the child

    Returns:
        Logger named ``<parent>.<suffix>``
    """
    base = parent.name if parent is not None else ROOT_NAME
    lg = _get_logger(f"{base}.{suffix}")
    if extra and isinstance(lg, Logger):
        lg.bind(**extra)
    return lg


def resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    try:
        return LEVEL_NAMES[level.lower()]
    except KeyError:
        raise ValueError(f"Unknown log level: {level!r}") from None


def _visual_len(text: str) -> int:
    if "\x1b" not in text:
        return len(text)
    return len(_ANSI_PATTERN.sub("", text))


class LogFormatter(logging.Formatter):
    """
    Formats records as a fixed-width message column followed by extras.

    Args:
        colors: Colorize the level marker and message per level
        rule_width: Column where extra fields start
    """

    def __init__(self, colors: bool = False, rule_width: int = DEFAULT_RULE_WIDTH):
        super().__init__(DEFAULT_FORMAT)
        self._colors = colors
        self._rule_width = rule_width

    def _format_extra(self, record: logging.LogRecord) -> str:
        extra = getattr(record, _EXTRA_ATTR, None)
        if not extra:
            return ""
        keys = extra.keys()
        if not isinstance(extra, collections.OrderedDict):
            keys = sorted(keys)
        parts = []
        for key in keys:
            value = extra[key]
            if isinstance(value, BaseException):
                value = value.__class__.__name__
            elif isinstance(value, (list, tuple)):
                value = ",".join(str(v) for v in value)
            parts.append(f"[{key}:{value}]")
        return " ".join(parts)

    def format(self, record: logging.LogRecord) -> str:
        head = super().format(record)
        exc_text = ""
        if "\n" in head:
            head, exc_text = head.split("\n", 1)
        if self._colors:
            col = _COLORS.get(record.levelno, "")
            head = f"{col}{head}{_RESET}"

        line = head
        extra = self._format_extra(record)
        if extra:
            line += " " * max(1, self._rule_width - _visual_len(head)) + extra
        line += f" [{record.process}] [{record.name}]"
        return f"{line}\n{exc_text}" if exc_text else line


def _should_use_color(stream: TextIO) -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(stream, "isatty") and stream.isatty()


def create_lg(
    level: int | str = "info",
    stream: TextIO | None = None,
    colors: bool | None = None,
) -> Any:
    """
    Configure the package root logger with a single console handler.

    Calling it again replaces the previously installed handler, so the CLI
    and the pytest plugin can both call it safely.

    Args:
        level: Level name or number
        stream: Output stream (defaults to stderr)
        colors: Force colors on or off (auto-detected when None)

    Returns:
        The package root logger
    """
    stream = stream if stream is not None else sys.stderr
    lg = _get_logger(ROOT_NAME)
    lg.setLevel(resolve_level(level))

    for handler in list(lg.handlers):
        if getattr(handler, "_procguard", False):
            lg.removeHandler(handler)
            handler.close()

    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        LogFormatter(colors=_should_use_color(stream) if colors is None else colors)
    )
    setattr(handler, "_procguard", True)
    lg.addHandler(handler)
    return lg
