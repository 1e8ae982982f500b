"""Readers and writers that bridge linked buffers and ordinary byte streams."""

from __future__ import annotations

import io
from typing import Any, Optional

from linkpoll.linkbuffer import BytesLike, LinkBuffer
from linkpoll.node import BLOCK4K

MAX_READ_CYCLE = 16


class ConnectionEOFError(EOFError):
    """Raised when the underlying stream ends before enough data arrived."""


class ZCReader:
    """Buffered reader over a stream offering ``readinto``.

    Data is read into a :class:`LinkBuffer` in 4 KiB chunks until a request
    can be served; a ``readinto`` result of 0 means end of stream.
    """

    def __init__(self, r: Any) -> None:
        self.r = r
        self.buf = LinkBuffer()

    def __len__(self) -> int:
        return len(self.buf)

    def next(self, n: int) -> memoryview:
        """Consume and return the next ``n`` bytes."""
        self._wait_read(n)
        return self.buf.next(n)

    def peek(self, n: int) -> memoryview:
        """Return the next ``n`` bytes without consuming them."""
        self._wait_read(n)
        return self.buf.peek(n)

    def skip(self, n: int) -> None:
        """Discard the next ``n`` bytes."""
        self._wait_read(n)
        self.buf.skip(n)

    def release(self) -> None:
        """Release the data that has been read."""
        self.buf.release()

    def slice(self, n: int) -> LinkBuffer:
        """Move the next ``n`` bytes into a new read-only buffer."""
        self._wait_read(n)
        return self.buf.slice(n)

    def read_string(self, n: int) -> str:
        """Consume ``n`` bytes and return them as text."""
        self._wait_read(n)
        return self.buf.read_string(n)

    def read_binary(self, n: int) -> bytes:
        """Consume ``n`` bytes and return a copy of them."""
        self._wait_read(n)
        return self.buf.read_binary(n)

    def read_byte(self) -> int:
        """Consume and return one byte."""
        self._wait_read(1)
        return self.buf.read_byte()

    def until(self, delim: int) -> memoryview:
        """Consume the buffered bytes up to and including ``delim``."""
        return self.buf.until(delim)

    def _wait_read(self, n: int) -> None:
        while len(self.buf) < n:
            self._fill(n)

    def _fill(self, n: int) -> None:
        """Read from the stream, at most 16 times, until ``n`` bytes are held."""
        for _ in range(MAX_READ_CYCLE):
            if len(self.buf) >= n:
                return
            chunk = self.buf.malloc(BLOCK4K)
            num = self.r.readinto(chunk)
            if num is None:
                num = 0
            elif num == 0:
                self.buf.malloc_ack(0)
                self.buf.flush()
                raise ConnectionEOFError("connection EOF")
            elif num < 0:
                self.buf.malloc_ack(0)
                self.buf.flush()
                raise ValueError(f"zcReader fill negative count[{num}]")
            self.buf.malloc_ack(num)
            self.buf.flush()


class ZCWriter:
    """Writer collecting data in a :class:`LinkBuffer` and sending it on flush."""

    def __init__(self, w: Any) -> None:
        self.w = w
        self.buf = LinkBuffer()

    def malloc(self, n: int) -> memoryview:
        """Reserve ``n`` writable bytes."""
        return self.buf.malloc(n)

    def malloc_len(self) -> int:
        """Return the number of reserved but unflushed bytes."""
        return self.buf.malloc_len()

    def flush(self) -> None:
        """Commit the reserved data and write it to the stream."""
        self.buf.flush()
        n = self.w.write(self.buf.bytes())
        if n:
            self.buf.skip(n)
            self.buf.release()

    def malloc_ack(self, n: int) -> None:
        """Keep the first ``n`` reserved bytes and drop the rest."""
        self.buf.malloc_ack(n)

    def append(self, w: Optional[LinkBuffer]) -> None:
        """Take over the contents of another buffer."""
        self.buf.append(w)

    def write_string(self, s: str) -> int:
        """Buffer text; return the number of bytes."""
        return self.buf.write_string(s)

    def write_binary(self, b: BytesLike) -> int:
        """Buffer bytes; return their number."""
        return self.buf.write_binary(b)

    def write_direct(self, p: BytesLike, remain_cap: int) -> None:
        """Insert ``p`` before the last ``remain_cap`` reserved bytes."""
        self.buf.write_direct(p, remain_cap)

    def write_byte(self, b: int) -> None:
        """Buffer a single byte."""
        self.buf.write_byte(b)


class IOReader(io.RawIOBase):
    """A raw binary stream reading from a buffer such as :class:`LinkBuffer`."""

    def __init__(self, r: Any) -> None:
        super().__init__()
        self.r = r

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: Any) -> int:
        """Copy up to ``len(buffer)`` buffered bytes; 0 means no more data."""
        view = memoryview(buffer).cast("B")
        wanted = min(len(view), len(self.r))
        if wanted == 0:
            return 0
        src = self.r.next(wanted)
        n = len(src)
        view[:n] = src
        self.r.release()
        return n


class IOWriter(io.RawIOBase):
    """A raw binary stream writing into a buffer such as :class:`LinkBuffer`."""

    def __init__(self, w: Any) -> None:
        super().__init__()
        self.w = w

    def writable(self) -> bool:
        return True

    def write(self, data: Any) -> int:
        """Copy ``data`` into the buffer and flush it; return its length."""
        view = memoryview(data).cast("B")
        n = len(view)
        dst = self.w.malloc(n)
        dst[:n] = view
        self.w.flush()
        return n