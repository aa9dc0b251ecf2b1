from importlib.metadata import PackageNotFoundError, version
from typing import TYPE_CHECKING

# The CLI pulls in rich; only load it when accessed
if TYPE_CHECKING:
    from . import cli

from .audit import CleanupLog, CleanupLogEntry, resolve_log_path
from .config import Config, get_config, set_config
from .exceptions import (
    CommandFailedError,
    ConfigError,
    MalformedMatcherError,
    ProcessAlreadyExitedError,
    ProcGuardError,
    TerminationTimeoutError,
    UnregisteredCommandError,
    UnsupportedPlatformError,
)
from .intercept import (
    DEFAULT_ALIASES,
    create_intercepted_module,
    install,
    uninstall,
)
from .mock import (
    REGISTRY,
    UNREGISTERED,
    Behavior,
    EmulatedProcess,
    MockRegistry,
    common,
    mock_command,
    quick,
)
from .reaper import ProcessRecord, ProcessSignature, ReapReport, find_candidates, reap
from .teardown import TeardownReport, global_teardown
from .termination import CleanupOutcome, TerminationResult, TerminationSummary
from .tracker import TRACKER, LifecycleTracker, ProcessInfo, ProcessStatus

# Version is read from package metadata (pyproject.toml)
try:
    __version__ = version("procguard")
except PackageNotFoundError:
    # Package not installed, use fallback (development mode)
    __version__ = "0.1.0-dev"

__all__ = [
    # Version
    "__version__",
    # Modules
    "cli",
    # Config
    "Config",
    "get_config",
    "set_config",
    # Mocking
    "Behavior",
    "EmulatedProcess",
    "MockRegistry",
    "REGISTRY",
    "UNREGISTERED",
    "common",
    "mock_command",
    "quick",
    # Interception
    "DEFAULT_ALIASES",
    "create_intercepted_module",
    "install",
    "uninstall",
    # Lifecycle tracking
    "LifecycleTracker",
    "ProcessInfo",
    "ProcessStatus",
    "TRACKER",
    # Termination and sweeps
    "CleanupOutcome",
    "TerminationResult",
    "TerminationSummary",
    "ProcessRecord",
    "ProcessSignature",
    "ReapReport",
    "find_candidates",
    "reap",
    "TeardownReport",
    "global_teardown",
    # Audit log
    "CleanupLog",
    "CleanupLogEntry",
    "resolve_log_path",
    # Exceptions
    "ProcGuardError",
    "CommandFailedError",
    "ConfigError",
    "MalformedMatcherError",
    "ProcessAlreadyExitedError",
    "TerminationTimeoutError",
    "UnregisteredCommandError",
    "UnsupportedPlatformError",
]


def __getattr__(name: str) -> object:
    """Lazy import for the CLI package."""
    import importlib

    if name == "cli":
        module = importlib.import_module(f".{name}", __name__)
        globals()[name] = module
        return module
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
