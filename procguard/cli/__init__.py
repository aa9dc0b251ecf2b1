"""Command line entry points."""

from .cli import emergency_cleanup, main

__all__ = ["emergency_cleanup", "main"]
