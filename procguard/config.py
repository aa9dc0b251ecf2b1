"""
Configuration for procguard.

Values come from three layers, later layers winning:

1. Built-in defaults (``DEFAULTS``)
2. A YAML file: an explicit path, or ``procguard.yaml`` found by searching
   upward from the working directory
3. Environment variables with the ``PROCGUARD_`` prefix

Environment keys are resolved against the known key tree, so keys that
contain underscores work: ``PROCGUARD_TERMINATION_TIMEOUT_MS=500`` sets
``termination.timeout_ms``. Two shortcuts are also honored:
``PROCGUARD_STRICT=1`` selects the strict unregistered-command policy and
``PROCGUARD_LOG_FILE`` sets the audit log path.

Example:
    config = Config.load()
    config.get("termination.timeout_ms")   # 3000
    config.unregistered_policy             # "default"
"""

import copy
import os
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError

ENV_PREFIX = "PROCGUARD_"
CONFIG_FILENAME = "procguard.yaml"

# Maximum config file size (1 MB)
MAX_CONFIG_SIZE_BYTES = 1024 * 1024

UNREGISTERED_POLICIES = ("default", "strict", "passthrough")

DEFAULT_SIGNATURE = [
    r"(^|[\s/])py\.?test(\s|$)",
    r"python[0-9.]*\s+(-\S+\s+)*-m\s+pytest",
    r"-c\s+\S*import sys;exec\(eval\(sys\.stdin\.readline\(\)\)\)",
]

DEFAULTS: dict[str, Any] = {
    "intercept": {
        "enabled": False,
        "aliases": ["subprocess", "procguard.subprocess"],
        "unregistered": "default",
        "sync_delay": False,
        "sync_delay_cap_ms": 250,
    },
    "termination": {
        "timeout_ms": 3000,
        "max_workers": 8,
    },
    "reaper": {
        "signature": list(DEFAULT_SIGNATURE),
        "kill_timeout_ms": 1000,
    },
    "audit": {
        "log_file": None,
        "subpath": "logs/procguard/zombies.log",
    },
    "logging": {
        "level": "info",
    },
}

_SHORTCUTS: dict[str, tuple[list[str], Any]] = {
    # env var -> (config path, fixed value or None to use the env value)
    "PROCGUARD_STRICT": (["intercept", "unregistered"], "strict"),
    "PROCGUARD_LOG_FILE": (["audit", "log_file"], None),
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _convert_env_value(value: str) -> bool | int | float | str | list[Any] | None:
    """
    Convert environment variable string to appropriate type.

    Args:
        value: Environment variable value as string

    Returns:
        None, bool, list (comma-separated), int, float or the original string
    """
    if value.lower() in ("null", "none", ""):
        return None

    if value.lower() in ("true", "false"):
        return value.lower() == "true"

    if "," in value:
        return [_convert_env_value(v.strip()) for v in value.split(",")]

    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        pass

    return value


def _env_key_to_path(env_key: str, tree: dict[str, Any]) -> list[str] | None:
    """
    Resolve ``PROCGUARD_A_B_C`` against the key tree.

    Tokens are joined greedily so a key like ``timeout_ms`` is matched before
    descending. Returns None for keys that match nothing.
    """
    tokens = env_key[len(ENV_PREFIX) :].lower().split("_")
    path: list[str] = []
    node: Any = tree
    i = 0
    while i < len(tokens):
        if not isinstance(node, dict):
            return None
        for j in range(len(tokens), i, -1):
            candidate = "_".join(tokens[i:j])
            if candidate in node:
                path.append(candidate)
                node = node[candidate]
                i = j
                break
        else:
            return None
    return path


def _set_nested_value(data: dict[str, Any], path: list[str], value: Any) -> None:
    current = data
    for part in path[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[path[-1]] = value


def find_config_file(start: Path | None = None) -> Path | None:
    """Search ``start`` (default cwd) and its parents for ``procguard.yaml``."""
    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        if path.stat().st_size > MAX_CONFIG_SIZE_BYTES:
            raise ConfigError(
                "Config file too large", path=str(path), max=MAX_CONFIG_SIZE_BYTES
            )
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError("Cannot read config file", path=str(path)) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}", path=str(path)) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("Config root must be a mapping", path=str(path))
    # Allow the settings to live under a top-level "procguard" key
    section = data.get("procguard", data)
    return section if isinstance(section, dict) else {}


class Config:
    """
    Resolved procguard settings.

    Args:
        data: Settings merged over ``DEFAULTS``
        env_overrides: Apply ``PROCGUARD_*`` environment variables
        source: File the settings were loaded from, if any
    """

    def __init__(
        self,
        data: dict[str, Any] | None = None,
        env_overrides: bool = True,
        source: Path | None = None,
    ) -> None:
        merged = _deep_merge(DEFAULTS, data or {})
        if env_overrides:
            merged = self._apply_env_overrides(merged)
        self._data = merged
        self.source = source
        self.validate()

    @classmethod
    def load(cls, path: str | Path | None = None, env_overrides: bool = True) -> "Config":
        """
        Load settings from ``path`` or from a discovered ``procguard.yaml``.

        A missing discovered file is not an error; an explicit path that
        does not exist is.
        """
        if path is not None:
            file_path: Path | None = Path(path)
            if not file_path.is_file():  # type: ignore[union-attr]
                raise ConfigError("Config file not found", path=str(path))
        else:
            file_path = find_config_file()

        data = _load_yaml(file_path) if file_path is not None else {}
        return cls(data, env_overrides=env_overrides, source=file_path)

    def _apply_env_overrides(self, data: dict[str, Any]) -> dict[str, Any]:
        for key, value in sorted(os.environ.items()):
            if not key.startswith(ENV_PREFIX):
                continue
            if key in _SHORTCUTS:
                path, fixed = _SHORTCUTS[key]
                if fixed is not None:
                    if _convert_env_value(value) in (True, 1):
                        _set_nested_value(data, path, fixed)
                elif value:
                    _set_nested_value(data, path, value)
                continue
            config_path = _env_key_to_path(key, DEFAULTS)
            if config_path is None:
                continue
            converted = _convert_env_value(value)
            # A single-item list env var arrives as a plain string
            if isinstance(self._default_at(config_path), list) and not isinstance(
                converted, list
            ):
                converted = [] if converted is None else [converted]
            _set_nested_value(data, config_path, converted)
        return data

    @staticmethod
    def _default_at(path: list[str]) -> Any:
        node: Any = DEFAULTS
        for part in path:
            node = node[part]
        return node

    def validate(self) -> None:
        """Raise ConfigError for values the runtime cannot work with."""
        policy = self.get("intercept.unregistered")
        if policy not in UNREGISTERED_POLICIES:
            raise ConfigError(
                "Unknown unregistered-command policy",
                value=policy,
                allowed=",".join(UNREGISTERED_POLICIES),
            )
        for path in (
            "termination.timeout_ms",
            "termination.max_workers",
            "reaper.kill_timeout_ms",
        ):
            value = self.get(path)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ConfigError("Expected a positive integer", key=path, value=value)
        if not isinstance(self.get("intercept.aliases"), list):
            raise ConfigError("intercept.aliases must be a list")

    def get(self, path: str, default: Any = None) -> Any:
        node: Any = self._data
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def has(self, path: str) -> bool:
        marker = object()
        return self.get(path, marker) is not marker

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    @property
    def unregistered_policy(self) -> str:
        return str(self.get("intercept.unregistered"))

    @property
    def aliases(self) -> tuple[str, ...]:
        return tuple(self.get("intercept.aliases"))

    @property
    def timeout_ms(self) -> int:
        return int(self.get("termination.timeout_ms"))

    @property
    def max_workers(self) -> int:
        return int(self.get("termination.max_workers"))

    @property
    def signature(self) -> list[str]:
        return list(self.get("reaper.signature"))

    def __repr__(self) -> str:
        return f"Config(source={self.source!r})"


_default_config: Config | None = None


def get_config() -> Config:
    """Return the lazily loaded process-wide configuration."""
    global _default_config
    if _default_config is None:
        _default_config = Config.load()
    return _default_config


def set_config(config: Config | None) -> None:
    """Replace (or with None, reset) the process-wide configuration."""
    global _default_config
    _default_config = config
