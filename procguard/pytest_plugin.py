"""
pytest integration.

Loaded automatically through the ``pytest11`` entry point. It

- installs the intercepted subprocess module before conftest files and
  test modules are imported (when interception is enabled),
- clears the mock registry and terminates processes a test left behind at
  every test boundary,
- cleans up tracked survivors at session end, and optionally runs the
  full teardown sweep.

Enable interception with ``--procguard-intercept``, the ``procguard_intercept``
ini key, or ``intercept.enabled`` in ``procguard.yaml``.
"""

from collections.abc import Generator
from typing import Any

import pytest

from . import log
from .config import Config, get_config, set_config
from .intercept import create_intercepted_module, hook
from .mock.registry import REGISTRY, MockRegistry
from .teardown import global_teardown
from .tracker import TRACKER, LifecycleTracker

_lg = log.derive_lg(None, "pytest")

_settings_key = pytest.StashKey[Config]()


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("procguard", "subprocess mocking and leaked-process cleanup")
    group.addoption(
        "--procguard-intercept",
        action="store_true",
        default=None,
        help="Serve the intercepted subprocess module under the configured aliases",
    )
    group.addoption(
        "--procguard-strict",
        action="store_true",
        default=False,
        help="Raise UnregisteredCommandError for commands without a mock",
    )
    group.addoption(
        "--procguard-teardown",
        action="store_true",
        default=None,
        help="Sweep the process table for leaked test runners at session end",
    )
    parser.addini("procguard_intercept", "Enable subprocess interception", type="bool", default=False)
    parser.addini(
        "procguard_aliases",
        "Module names served by the intercepted module",
        type="args",
        default=[],
    )
    parser.addini(
        "procguard_teardown", "Run the teardown sweep at session end", type="bool", default=False
    )


def _option(config: pytest.Config, name: str) -> Any:
    ns = getattr(config, "known_args_namespace", None)
    value = getattr(ns, name, None) if ns is not None else None
    if value is None:
        value = config.getoption(name, default=None)
    return value


def _settings(config: pytest.Config) -> Config:
    settings = config.stash.get(_settings_key, None)
    if settings is not None:
        return settings

    settings = get_config()
    if _option(config, "procguard_strict"):
        data = settings.to_dict()
        data["intercept"]["unregistered"] = "strict"
        settings = Config(data, env_overrides=False, source=settings.source)
    set_config(settings)
    config.stash[_settings_key] = settings
    return settings


def _install(config: pytest.Config) -> None:
    settings = _settings(config)
    enabled = (
        _option(config, "procguard_intercept")
        or config.getini("procguard_intercept")
        or settings.get("intercept.enabled")
    )
    if not enabled:
        return
    aliases = config.getini("procguard_aliases") or list(settings.aliases)
    hook.install(aliases, registry=REGISTRY, config=settings)


@pytest.hookimpl(tryfirst=True)
def pytest_load_initial_conftests(early_config: pytest.Config, parser: Any, args: Any) -> None:
    _install(early_config)


def pytest_configure(config: pytest.Config) -> None:
    if hook.installed_module() is None:
        _install(config)


def pytest_report_header(config: pytest.Config) -> str | None:
    aliases = hook.installed_aliases()
    if not aliases:
        return None
    return f"procguard: intercepting {', '.join(aliases)} ({_settings(config).unregistered_policy})"


@pytest.fixture(autouse=True)
def _procguard_test_boundary(request: pytest.FixtureRequest) -> Generator[None, None, None]:
    owner = request.node.nodeid
    TRACKER.set_owner(owner)
    try:
        yield
    finally:
        REGISTRY.clear()
        TRACKER.set_owner(None)
        if TRACKER.active():
            TRACKER.terminate_owned(owner)


@pytest.fixture
def proc_mocks() -> Generator[MockRegistry, None, None]:
    """The process-wide mock registry, cleared after the test."""
    yield REGISTRY
    REGISTRY.clear()


@pytest.fixture
def proc_tracker() -> LifecycleTracker:
    return TRACKER


@pytest.fixture
def intercepted(request: pytest.FixtureRequest) -> Any:
    """The installed intercepted module, or an uninstalled one on the shared registry."""
    module = hook.installed_module()
    if module is not None:
        return module
    return create_intercepted_module(registry=REGISTRY, config=_settings(request.config))


def pytest_sessionfinish(session: pytest.Session, exitstatus: int) -> None:
    config = session.config
    if hasattr(config, "workerinput"):
        return

    settings = _settings(config)
    run_sweep = _option(config, "procguard_teardown") or config.getini("procguard_teardown")
    if run_sweep:
        global_teardown(config=settings)
        return

    if TRACKER.active():
        summary = TRACKER.terminate_all(
            timeout_ms=settings.timeout_ms, max_workers=settings.max_workers
        )
        _lg.warning(
            "terminated processes still running at session end",
            extra={"killed": summary.killed, "failed": summary.failed},
        )
    TRACKER.acknowledge_all()


def pytest_unconfigure(config: pytest.Config) -> None:
    hook.uninstall()
