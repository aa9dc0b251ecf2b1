"""
Tests for logger derivation and formatting.
"""

import logging
from io import StringIO

import pytest

from procguard import log


def _handler_count(lg: logging.Logger) -> int:
    return sum(1 for h in lg.handlers if getattr(h, "_procguard", False))


@pytest.mark.unit
class TestDeriveLogger:
    """Test child logger creation."""

    def test_names_are_below_package_root(self):
        lg = log.derive_lg(None, "tests.derive")
        assert lg.name == "procguard.tests.derive"
        assert isinstance(lg, log.Logger)

    def test_child_of_parent(self):
        parent = log.derive_lg(None, "tests.parent")
        child = log.derive_lg(parent, "child")
        assert child.name == "procguard.tests.parent.child"

    def test_other_loggers_keep_default_class(self):
        log.derive_lg(None, "tests.class_check")
        assert logging.getLogger("not_procguard_logger").__class__ is not log.Logger

    @pytest.mark.parametrize(
        "level,expected",
        [("trace", log.TRACE), ("DEBUG", logging.DEBUG), ("warning", logging.WARNING), (40, 40)],
    )
    def test_resolve_level(self, level, expected):
        assert log.resolve_level(level) == expected

    def test_resolve_unknown_level(self):
        with pytest.raises(ValueError):
            log.resolve_level("loud")


@pytest.mark.unit
class TestFormatting:
    """Test rendered output."""

    def test_extras_are_rendered(self, capture_logs):
        lg = log.derive_lg(None, "tests.format")
        lg.info("reaped process", extra={"pid": 42, "cmd": "pytest -x"})

        line = capture_logs.getvalue().splitlines()[0]
        assert "[I] reaped process" in line
        assert "[pid:42] [cmd:pytest -x]" in line
        assert line.endswith("[procguard.tests.format]")

    def test_bound_extras_precede_call_extras(self, capture_logs):
        lg = log.derive_lg(None, "tests.bound", owner="test_a")
        lg.warning("left running", extra={"pid": 7})
        assert "[owner:test_a] [pid:7]" in capture_logs.getvalue()

    def test_exceptions_and_lists(self, capture_logs):
        lg = log.derive_lg(None, "tests.values")
        lg.error("failed", extra={"exception": OSError("x"), "argv": ["a", "b"]})
        output = capture_logs.getvalue()
        assert "[exception:OSError]" in output
        assert "[argv:a,b]" in output

    def test_trace_level(self, capture_logs):
        lg = log.derive_lg(None, "tests.trace")
        logging.getLogger(log.ROOT_NAME).setLevel(log.TRACE)
        lg.trace("very detailed")
        assert "[T] very detailed" in capture_logs.getvalue()

    def test_colors(self):
        record = logging.LogRecord("procguard.x", logging.ERROR, __file__, 1, "bad", None, None)
        assert "\x1b[31m" in log.LogFormatter(colors=True).format(record)
        assert "\x1b[" not in log.LogFormatter(colors=False).format(record)


@pytest.mark.unit
class TestCreateLogger:
    """Test handler installation."""

    def test_create_lg_replaces_its_handler(self):
        first, second = StringIO(), StringIO()
        lg = log.create_lg("info", stream=first, colors=False)
        log.create_lg("info", stream=second, colors=False)

        assert _handler_count(lg) == 1
        log.derive_lg(None, "tests.create").info("hello")
        assert "hello" in second.getvalue()
        assert first.getvalue() == ""

    def test_level_is_applied(self):
        stream = StringIO()
        log.create_lg("warning", stream=stream, colors=False)
        log.derive_lg(None, "tests.level").info("quiet")
        assert stream.getvalue() == ""
