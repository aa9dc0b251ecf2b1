"""
Import hook serving the intercepted module under several names.

``install`` builds the intercepted module once and makes every alias
resolve to that same object, both through ``sys.modules`` and through a
finder at the front of ``sys.meta_path``. Because there is one module
object, every alias shares one registry: a behavior registered through
``procguard.subprocess`` is seen by code that did ``import subprocess``.

Install before code under test is imported. Modules that imported an
alias earlier keep their reference to the original; install logs a
warning for each alias it had to displace.
"""

import importlib.abc
import importlib.machinery
import importlib.util
import sys
import threading
import types
from collections.abc import Iterable
from typing import Any

from .. import log
from ..config import Config
from ..mock.registry import REGISTRY, MockRegistry
from .factory import create_intercepted_module

_lg = log.derive_lg(None, "intercept.hook")

DEFAULT_ALIASES: tuple[str, ...] = ("subprocess", "procguard.subprocess")

_MISSING = object()


class InterceptFinder(importlib.abc.MetaPathFinder, importlib.abc.Loader):
    """Finder and loader that answer every alias with one module object."""

    def __init__(self, module: types.ModuleType, aliases: Iterable[str]) -> None:
        self.module = module
        self.aliases: set[str] = set(aliases)

    def find_spec(
        self, fullname: str, path: Any = None, target: Any = None
    ) -> importlib.machinery.ModuleSpec | None:
        if fullname not in self.aliases:
            return None
        return importlib.util.spec_from_loader(fullname, self)

    def create_module(self, spec: importlib.machinery.ModuleSpec) -> types.ModuleType:
        return self.module

    def exec_module(self, module: types.ModuleType) -> None:
        pass


class _Installation:
    def __init__(self, finder: InterceptFinder) -> None:
        self.finder = finder
        self.saved: dict[str, Any] = {}


_state_lock = threading.Lock()
_installation: _Installation | None = None


def _bind_parent_attr(alias: str, module: Any) -> Any:
    """Set ``parent.child`` for dotted aliases; returns the previous value."""
    parent_name, _, child = alias.rpartition(".")
    if not parent_name:
        return _MISSING
    parent = sys.modules.get(parent_name)
    if parent is None:
        return _MISSING
    previous = getattr(parent, child, _MISSING)
    if module is _MISSING:
        if hasattr(parent, child):
            delattr(parent, child)
    else:
        setattr(parent, child, module)
    return previous


def install(
    aliases: Iterable[str] = DEFAULT_ALIASES,
    registry: MockRegistry | None = None,
    config: Config | None = None,
    lg: Any | None = None,
) -> types.ModuleType:
    """
    Make every alias resolve to one intercepted module.

    Calling ``install`` again adds any new aliases to the existing
    installation and returns the same module.

    Args:
        aliases: Module names to serve
        registry: Registry shared by all aliases (process-wide one by default)
        config: Settings for the unregistered-command policy
        lg: Logger for displacement warnings

    Returns:
        The intercepted module
    """
    global _installation
    lg = lg if lg is not None else _lg
    aliases = tuple(aliases)

    with _state_lock:
        if _installation is None:
            module = create_intercepted_module(
                aliases[0] if aliases else "subprocess",
                registry=registry if registry is not None else REGISTRY,
                config=config,
            )
            _installation = _Installation(InterceptFinder(module, ()))
            sys.meta_path.insert(0, _installation.finder)
        inst = _installation
        module = inst.finder.module

        for alias in aliases:
            if alias in inst.finder.aliases:
                continue
            previous = sys.modules.get(alias, _MISSING)
            inst.saved[alias] = (previous, _bind_parent_attr(alias, module))
            if previous is not _MISSING and previous is not module:
                lg.warning(
                    "module %s was imported before interception; earlier importers keep the original",
                    alias,
                    extra={"alias": alias},
                )
            sys.modules[alias] = module
            inst.finder.aliases.add(alias)

    lg.debug("interception installed", extra={"aliases": sorted(inst.finder.aliases)})
    return module


def uninstall() -> None:
    """Restore every displaced module and remove the finder."""
    global _installation
    with _state_lock:
        inst = _installation
        if inst is None:
            return
        _installation = None
        if inst.finder in sys.meta_path:
            sys.meta_path.remove(inst.finder)
        for alias, (previous, parent_previous) in inst.saved.items():
            if previous is _MISSING:
                sys.modules.pop(alias, None)
            else:
                sys.modules[alias] = previous
            _bind_parent_attr(alias, parent_previous)
    _lg.debug("interception removed")


def installed_module() -> types.ModuleType | None:
    inst = _installation
    return inst.finder.module if inst is not None else None


def installed_aliases() -> tuple[str, ...]:
    inst = _installation
    return tuple(sorted(inst.finder.aliases)) if inst is not None else ()
