"""Intercepted subprocess module and the import hook that installs it."""

from .factory import create_intercepted_module, is_intercepted, split_command
from .hook import DEFAULT_ALIASES, install, installed_aliases, installed_module, uninstall

__all__ = [
    "DEFAULT_ALIASES",
    "create_intercepted_module",
    "install",
    "installed_aliases",
    "installed_module",
    "is_intercepted",
    "split_command",
    "uninstall",
]
