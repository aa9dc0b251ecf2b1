"""Mock registry, matchers and emulated processes."""

from .behavior import Behavior, BehaviorBuilder, mock_command
from .matcher import MatchKey, MatchKind, Matcher
from .presets import common, quick
from .process import EmulatedProcess
from .registry import REGISTRY, UNREGISTERED, Invocation, MockRegistry, Registration
from .streams import EmulatedStream

__all__ = [
    "Behavior",
    "BehaviorBuilder",
    "EmulatedProcess",
    "EmulatedStream",
    "Invocation",
    "MatchKey",
    "MatchKind",
    "Matcher",
    "MockRegistry",
    "REGISTRY",
    "Registration",
    "UNREGISTERED",
    "common",
    "mock_command",
    "quick",
]
