"""
procguard command line.

Usage:
    emergency-cleanup                  # reap now, print a one-line summary
    procguard reap [--dry-run] [--report]
    procguard list
    procguard teardown
    procguard log-path
"""

import argparse
from collections.abc import Sequence

from .. import __version__, log
from ..config import Config
from ..exceptions import ConfigError
from .output import ConsoleOutput, OutputWriter
from .tools import EXIT_UNSUPPORTED, TOOLS, ReapTool

EXIT_CONFIG = 1


def _setup_logging(settings: Config, level: str | None, quiet: bool) -> None:
    lg = log.create_lg("warning" if quiet else (level or settings.get("logging.level")))
    lg.propagate = False


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="procguard",
        description="Find and clean up processes leaked by test sessions",
    )
    parser.add_argument("--version", action="version", version=f"procguard {__version__}")
    parser.add_argument("-c", "--config", help="Path to procguard.yaml")
    parser.add_argument("--log-level", help="Log level (trace, debug, info, warning, error)")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log warnings")

    sub = parser.add_subparsers(dest="tool", metavar="COMMAND")
    for tool_cls in TOOLS:
        cfg = tool_cls.config
        tool_parser = sub.add_parser(cfg.name, help=cfg.help_text, description=cfg.description)
        tool_cls.add_args(tool_parser)
    return parser


def main(argv: Sequence[str] | None = None, out: OutputWriter | None = None) -> int:
    """Main entry point for the ``procguard`` command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    out = out if out is not None else ConsoleOutput()

    try:
        settings = Config.load(args.config)
    except ConfigError as e:
        out.write(f"Config error: {e}")
        return EXIT_CONFIG
    _setup_logging(settings, args.log_level, args.quiet)

    if args.tool is None:
        parser.print_help()
        return 0

    tool_cls = next(t for t in TOOLS if t.config.name == args.tool)
    kwargs = {k: v for k, v in vars(args).items() if k not in ("tool", "config", "log_level", "quiet")}
    return tool_cls(settings, out).run(**kwargs)


def emergency_cleanup(argv: Sequence[str] | None = None, out: OutputWriter | None = None) -> int:
    """
    Entry point for ``emergency-cleanup``.

    Takes no arguments. Reaps immediately and prints a one-line summary.
    Exits non-zero only when the platform cannot be swept.
    """
    parser = argparse.ArgumentParser(
        prog="emergency-cleanup",
        description="Force-kill leaked test-runner processes owned by the current user",
    )
    parser.parse_args(argv)
    out = out if out is not None else ConsoleOutput()

    try:
        settings = Config.load()
    except ConfigError as e:
        # A broken config must not block cleanup
        out.write(f"Config error ({e}); using defaults")
        settings = Config(env_overrides=False)
    _setup_logging(settings, None, quiet=True)

    code = ReapTool(settings, out).run()
    return EXIT_UNSUPPORTED if code == EXIT_UNSUPPORTED else 0


if __name__ == "__main__":
    raise SystemExit(main())
