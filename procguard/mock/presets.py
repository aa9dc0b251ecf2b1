"""
Canned behaviors for common situations and common tools.

``quick`` covers outcome shapes (success, failure, raising, slow);
``common`` registers realistic outputs for git, pip, docker and shell
utilities. All helpers register into the given registry (the process-wide
one by default) and return the registration ids.
"""

from collections.abc import Mapping, Sequence
from typing import Any

from .behavior import Behavior
from .registry import REGISTRY, MockRegistry


def _reg(registry: MockRegistry | None) -> MockRegistry:
    return registry if registry is not None else REGISTRY


class quick:
    """Outcome-shaped one-liners."""

    @staticmethod
    def success(
        command: str, stdout: str = "", registry: MockRegistry | None = None
    ) -> str:
        return _reg(registry).register(command, stdout=stdout)

    @staticmethod
    def failure(
        command: str,
        stderr: str = "",
        exit_code: int = 1,
        registry: MockRegistry | None = None,
    ) -> str:
        return _reg(registry).register(command, stderr=stderr, exit_code=exit_code)

    @staticmethod
    def raises(
        command: str, error: BaseException, registry: MockRegistry | None = None
    ) -> str:
        return _reg(registry).register(command, error=error)

    @staticmethod
    def slow(
        command: str,
        delay_ms: int,
        stdout: str = "",
        registry: MockRegistry | None = None,
    ) -> str:
        return _reg(registry).register(command, stdout=stdout, delay_ms=delay_ms)

    @staticmethod
    def signalled(
        command: str, signal: str = "SIGTERM", registry: MockRegistry | None = None
    ) -> str:
        return _reg(registry).register(command, signal=signal)

    @staticmethod
    def batch(
        mocks: Mapping[str, Behavior | Mapping[str, Any] | str],
        registry: MockRegistry | None = None,
    ) -> list[str]:
        """
        Register many commands at once.

        A plain string value is shorthand for a successful stdout.
        """
        ids = []
        for command, value in mocks.items():
            if isinstance(value, str):
                ids.append(_reg(registry).register(command, stdout=value))
            else:
                ids.append(_reg(registry).register(command, None, value))
        return ids


def _register_all(
    table: Sequence[tuple[str, dict[str, Any]]], registry: MockRegistry | None
) -> list[str]:
    return [_reg(registry).register(cmd, **fields) for cmd, fields in table]


class common:
    """Realistic outputs for tools tests often shell out to."""

    @staticmethod
    def git(
        branch: str = "main",
        clean: bool = True,
        registry: MockRegistry | None = None,
    ) -> list[str]:
        status = "" if clean else " M src/app.py\n?? notes.txt\n"
        return _register_all(
            [
                ("git status", {"stdout": status}),
                ("git rev-parse --abbrev-ref HEAD", {"stdout": f"{branch}\n"}),
                ("git rev-parse HEAD", {"stdout": "3f2c1a9d8e7b6c5a4f3e2d1c0b9a8f7e6d5c4b3a\n"}),
                ("git diff --name-only", {"stdout": "" if clean else "src/app.py\n"}),
                ("git log", {"stdout": "3f2c1a9 Initial commit\n"}),
            ],
            registry,
        )

    @staticmethod
    def pip(
        packages: Mapping[str, str] | None = None,
        registry: MockRegistry | None = None,
    ) -> list[str]:
        packages = packages if packages is not None else {"pytest": "8.3.2", "psutil": "6.0.0"}
        freeze = "".join(f"{name}=={ver}\n" for name, ver in packages.items())
        return _register_all(
            [
                ("pip --version", {"stdout": "pip 24.2\n"}),
                ("pip freeze", {"stdout": freeze}),
                ("pip install", {"stdout": "Successfully installed\n"}),
            ],
            registry,
        )

    @staticmethod
    def docker(available: bool = True, registry: MockRegistry | None = None) -> list[str]:
        if not available:
            return _register_all(
                [
                    (
                        "docker",
                        {
                            "exit_code": 1,
                            "stderr": "Cannot connect to the Docker daemon. "
                            "Is the docker daemon running?\n",
                        },
                    )
                ],
                registry,
            )
        return _register_all(
            [
                ("docker --version", {"stdout": "Docker version 27.1.1, build 6312585\n"}),
                ("docker ps", {"stdout": "CONTAINER ID   IMAGE   COMMAND   STATUS\n"}),
                ("docker info", {"stdout": "Server Version: 27.1.1\n"}),
            ],
            registry,
        )

    @staticmethod
    def shell(registry: MockRegistry | None = None) -> list[str]:
        return _register_all(
            [
                ("true", {}),
                ("false", {"exit_code": 1}),
                ("echo", {}),
                ("pwd", {"stdout": "/workspace\n"}),
                ("whoami", {"stdout": "tester\n"}),
            ],
            registry,
        )
