"""
Minimal event emitter used by emulated processes and their streams.
"""

import threading
from collections.abc import Callable
from typing import Any

Listener = Callable[..., Any]


class EventEmitter:
    """
    Callback registry keyed by event name.

    ``on`` works directly or as a decorator:

        proc.on("close", lambda code, sig: ...)

        @proc.on("exit")
        def handle_exit(code, sig): ...
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[tuple[Listener, bool]]] = {}
        self._listeners_lock = threading.Lock()

    def on(self, event: str, listener: Listener | None = None) -> Any:
        if listener is None:

            def decorator(fn: Listener) -> Listener:
                self._add(event, fn, once=False)
                return fn

            return decorator
        self._add(event, listener, once=False)
        return self

    def once(self, event: str, listener: Listener) -> "EventEmitter":
        self._add(event, listener, once=True)
        return self

    def off(self, event: str, listener: Listener) -> "EventEmitter":
        with self._listeners_lock:
            entries = self._listeners.get(event, [])
            self._listeners[event] = [e for e in entries if e[0] is not listener]
        return self

    def remove_all_listeners(self, event: str | None = None) -> None:
        with self._listeners_lock:
            if event is None:
                self._listeners.clear()
            else:
                self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def _add(self, event: str, listener: Listener, once: bool) -> None:
        if not callable(listener):
            raise TypeError("listener must be callable")
        with self._listeners_lock:
            self._listeners.setdefault(event, []).append((listener, once))

    def emit(self, event: str, *args: Any) -> bool:
        """Call every listener for ``event``; returns False if there were none."""
        with self._listeners_lock:
            entries = list(self._listeners.get(event, ()))
            if any(once for _, once in entries):
                self._listeners[event] = [e for e in entries if not e[1]]
        for listener, _ in entries:
            listener(*args)
        return bool(entries)
