"""
Readable and writable streams attached to an emulated process.

A stream keeps everything written to it, emits ``data`` for each chunk and
``end`` once no more data will arrive. Reading from an output stream drives
its process to completion first, the way reading a real pipe blocks until
the child has written.
"""

from collections.abc import Iterator
from typing import Any, Protocol

from .events import EventEmitter


class _Drivable(Protocol):
    def _drive(self, timeout: float | None = None) -> None: ...


class EmulatedStream(EventEmitter):
    """
    In-memory pipe end.

    Args:
        name: ``stdin``, ``stdout`` or ``stderr``
        owner: Process driven before reads; None for stdin
        text: Deliver ``str`` when true, ``bytes`` otherwise
        encoding: Codec used to convert between the two
    """

    def __init__(
        self,
        name: str,
        owner: _Drivable | None = None,
        text: bool = True,
        encoding: str = "utf-8",
    ) -> None:
        super().__init__()
        self.name = name
        self.text = text
        self.encoding = encoding
        self.ended = False
        self.closed = False
        self._owner = owner
        self._chunks: list[str] = []
        self._pos = 0

    def __repr__(self) -> str:
        return f"<EmulatedStream {self.name} ended={self.ended} closed={self.closed}>"

    def _out(self, data: str) -> str | bytes:
        return data if self.text else data.encode(self.encoding)

    def _in(self, data: str | bytes) -> str:
        return data.decode(self.encoding) if isinstance(data, bytes) else data

    # Producer side

    def push(self, data: str) -> None:
        if not data:
            return
        self._chunks.append(data)
        self.emit("data", self._out(data))

    def end(self) -> None:
        if self.ended:
            return
        self.ended = True
        self.emit("end")

    def write(self, data: str | bytes) -> int:
        """Write to the stream (stdin side); returns the number of characters."""
        if self.ended or self.closed:
            raise ValueError(f"write to ended stream {self.name}")
        text = self._in(data)
        self._chunks.append(text)
        self.emit("data", self._out(text))
        return len(data)

    def close(self) -> None:
        if self.closed:
            return
        self.end()
        self.closed = True
        self.emit("close")

    def flush(self) -> None:
        pass

    # Consumer side

    def _drive(self) -> None:
        if self._owner is not None:
            self._owner._drive()

    def getvalue(self) -> str | bytes:
        """Everything ever written, without driving the process."""
        return self._out("".join(self._chunks))

    @property
    def buffer(self) -> str:
        return "".join(self._chunks)

    def read(self, size: int = -1) -> str | bytes:
        self._drive()
        data = "".join(self._chunks)
        end = len(data) if size is None or size < 0 else self._pos + size
        chunk = data[self._pos : end]
        self._pos += len(chunk)
        return self._out(chunk)

    def readline(self) -> str | bytes:
        self._drive()
        data = "".join(self._chunks)
        nl = data.find("\n", self._pos)
        end = len(data) if nl < 0 else nl + 1
        line = data[self._pos : end]
        self._pos = end
        return self._out(line)

    def readlines(self) -> list[Any]:
        return list(self)

    def __iter__(self) -> Iterator[Any]:
        while True:
            line = self.readline()
            if not line:
                return
            yield line

    def readable(self) -> bool:
        return self._owner is not None

    def writable(self) -> bool:
        return self._owner is None and not self.ended
