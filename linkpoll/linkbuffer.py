"""A linked, mostly zero-copy byte buffer with separate read and write ends."""

from __future__ import annotations

import threading
from typing import Optional, Union

from linkpoll.node import (
    BINARY_INPLACE_THRESHOLD,
    BLOCK1K,
    MALLOC_MAX,
    PAGESIZE,
    LinkBufferNode,
    free,
    malloc,
)

BytesLike = Union[bytes, bytearray, memoryview]

_EMPTY_VIEW = memoryview(b"")


class LinkBufferError(Exception):
    """Raised when a buffer operation cannot be satisfied."""


def _as_view(p: BytesLike) -> memoryview:
    return memoryview(p).cast("B")


class LinkBuffer:
    """A chain of nodes holding readable data followed by allocated space.

    Data is written by reserving space (:meth:`malloc`, :meth:`write_binary`,
    ...) and becomes readable after :meth:`flush`. Reading consumes from the
    front; :meth:`release` drops fully read nodes.

    ``head`` is the first node not yet released, ``read_node`` the node being
    read, ``flush_node`` the last committed node and ``write_node`` the node
    being written. A buffer produced by :meth:`slice` is read-only and has no
    flush or write node.
    """

    def __init__(self, size: int = 0) -> None:
        node = LinkBufferNode(size)
        self.head: Optional[LinkBufferNode] = node
        self.read_node: Optional[LinkBufferNode] = node
        self.flush_node: Optional[LinkBufferNode] = node
        self.write_node: Optional[LinkBufferNode] = node
        self._length = 0
        self._malloc_size = 0
        self._caches: list[memoryview] = []
        self._len_lock = threading.Lock()

    def __len__(self) -> int:
        return self._length

    def __enter__(self) -> LinkBuffer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def is_empty(self) -> bool:
        """Return True when there is no readable data."""
        return len(self) == 0

    # ----------------------------------------------------------- reading

    def _new_copy_target(self, n: int) -> memoryview:
        if BLOCK1K < n <= MALLOC_MAX:
            whole = malloc(n, n)
            self._caches.append(whole)
            return whole[:n]
        return memoryview(bytearray(n))

    def next(self, n: int) -> memoryview:
        """Consume and return the next ``n`` bytes.

        The result may share memory with the buffer and stays valid only
        until the next :meth:`release`.
        """
        if n <= 0:
            return _EMPTY_VIEW
        if len(self) < n:
            raise LinkBufferError(f"link buffer next[{n}] not enough")
        self._recal_len(-n)
        if self._is_single_node(n):
            return self.read_node.next(n)
        p = self._new_copy_target(n)
        pos = 0
        ack = n
        while ack > 0:
            node = self.read_node
            available = len(node)
            if available >= ack:
                p[pos : pos + ack] = node.next(ack)
                break
            if available > 0:
                p[pos : pos + available] = node.next(available)
                pos += available
            ack -= available
            self.read_node = node.next_node
        return p

    def peek(self, n: int) -> memoryview:
        """Return the next ``n`` bytes without consuming them."""
        if n <= 0:
            return _EMPTY_VIEW
        if len(self) < n:
            raise LinkBufferError(f"link buffer peek[{n}] not enough")
        if self._is_single_node(n):
            return self.read_node.peek(n)
        p = self._new_copy_target(n)
        node = self.read_node
        pos = 0
        ack = n
        while ack > 0:
            available = len(node)
            if available >= ack:
                p[pos : pos + ack] = node.peek(ack)
                break
            if available > 0:
                p[pos : pos + available] = node.peek(available)
                pos += available
            ack -= available
            node = node.next_node
        return p

    def skip(self, n: int) -> None:
        """Discard the next ``n`` readable bytes."""
        if n <= 0:
            return
        if len(self) < n:
            raise LinkBufferError(f"link buffer skip[{n}] not enough")
        self._recal_len(-n)
        ack = n
        while ack > 0:
            node = self.read_node
            available = len(node)
            if available >= ack:
                node.off += ack
                break
            ack -= available
            self.read_node = node.next_node

    def release(self) -> None:
        """Release the nodes that have been read completely."""
        while (
            self.read_node is not self.flush_node and len(self.read_node) == 0
        ):
            self.read_node = self.read_node.next_node
        while self.head is not self.read_node:
            node = self.head
            self.head = node.next_node
            node.release()
        for cached in self._caches:
            free(cached)
        self._caches.clear()

    def read_string(self, n: int) -> str:
        """Consume ``n`` bytes and return them as text."""
        if n <= 0:
            return ""
        if len(self) < n:
            raise LinkBufferError(f"link buffer read string[{n}] not enough")
        return self._read_binary(n).decode("utf-8", "surrogateescape")

    def read_binary(self, n: int) -> bytes:
        """Consume ``n`` bytes and return an independent copy of them."""
        if n <= 0:
            return b""
        if len(self) < n:
            raise LinkBufferError(f"link buffer read binary[{n}] not enough")
        return self._read_binary(n)

    def _read_binary(self, n: int) -> bytes:
        self._recal_len(-n)
        if self._is_single_node(n):
            return bytes(self.read_node.next(n))
        out = bytearray()
        ack = n
        while ack > 0:
            node = self.read_node
            available = len(node)
            if available >= ack:
                out += node.next(ack)
                break
            if available > 0:
                out += node.next(available)
            ack -= available
            self.read_node = node.next_node
        return bytes(out)

    def read_byte(self) -> int:
        """Consume and return one byte."""
        if len(self) < 1:
            raise LinkBufferError("link buffer read byte is empty")
        self._recal_len(-1)
        while True:
            if len(self.read_node) >= 1:
                return self.read_node.next(1)[0]
            self.read_node = self.read_node.next_node

    def until(self, delim: int) -> memoryview:
        """Consume and return the bytes up to and including ``delim``."""
        n = self.index_byte(delim, 0)
        if n < 0:
            raise LinkBufferError(f"link buffer read slice cannot find: '{delim:b}'")
        return self.next(n + 1)

    def slice(self, n: int) -> LinkBuffer:
        """Move the next ``n`` bytes into a new read-only buffer without copying.

        Afterwards the read part of this buffer is released.
        """
        if n <= 0:
            return LinkBuffer(0)
        if len(self) < n:
            raise LinkBufferError(f"link buffer readv[{n}] not enough")
        self._recal_len(-n)

        p = LinkBuffer(0)
        p._length = n

        if self._is_single_node(n):
            node = self.read_node.refer(n)
            p.head = p.read_node = node
            p.flush_node = p.write_node = None
            return p

        available = len(self.read_node)
        node = self.read_node.refer(available)
        self.read_node = self.read_node.next_node
        p.head = p.read_node = node
        tail = node
        ack = n - available
        while ack > 0:
            available = len(self.read_node)
            if available >= ack:
                tail.next_node = self.read_node.refer(ack)
                tail = tail.next_node
                break
            if available > 0:
                tail.next_node = self.read_node.refer(available)
                tail = tail.next_node
            ack -= available
            self.read_node = self.read_node.next_node
        p.flush_node = p.write_node = None
        self.release()
        return p

    # ----------------------------------------------------------- writing

    def malloc(self, n: int) -> memoryview:
        """Reserve ``n`` writable bytes; they become readable after flush."""
        if n <= 0:
            return _EMPTY_VIEW
        self._malloc_size += n
        self._growth(n)
        return self.write_node.malloc(n)

    def malloc_len(self) -> int:
        """Return the number of reserved but not yet flushed bytes."""
        return self._malloc_size

    def malloc_ack(self, n: int) -> None:
        """Keep the first ``n`` reserved bytes and discard the rest."""
        if n < 0:
            raise LinkBufferError(f"link buffer malloc ack[{n}] invalid")
        self._malloc_size = n
        self.write_node = self.flush_node
        ack = n
        while ack > 0:
            node = self.write_node
            available = node.malloc_off - node.length
            if available >= ack:
                node.malloc_off = ack + node.length
                break
            ack -= available
            self.write_node = node.next_node
        node = self.write_node.next_node
        while node is not None:
            node.off = 0
            node.malloc_off = 0
            node.refer_count = 1
            node.length = 0
            node = node.next_node

    def flush(self) -> None:
        """Commit every reserved byte, making it readable."""
        self._malloc_size = 0
        # Keep the tail node from holding more than a page.
        if self.write_node.capacity() > PAGESIZE:
            self.write_node.next_node = LinkBufferNode(0)
            self.write_node = self.write_node.next_node
        committed = 0
        stop = self.write_node.next_node
        node = self.flush_node
        while node is not stop:
            delta = node.malloc_off - node.length
            if delta > 0:
                committed += delta
                node.length = node.malloc_off
            node = node.next_node
        self.flush_node = self.write_node
        self._recal_len(committed)

    def append(self, w: Optional[LinkBuffer]) -> None:
        """Take over the contents of another buffer; see :meth:`write_buffer`."""
        if w is None:
            return
        if not isinstance(w, LinkBuffer):
            raise TypeError("unsupported writer which is not LinkBuffer")
        self.write_buffer(w)

    def write_buffer(self, buf: Optional[LinkBuffer]) -> None:
        """Link the nodes of ``buf`` onto this buffer without flushing.

        ``buf`` is emptied and must not be used afterwards.
        """
        if buf is None:
            return
        buf_len, buf_malloc_len = len(buf), buf.malloc_len()
        if buf_len + buf_malloc_len <= 0:
            return
        self.write_node.next_node = buf.read_node
        self.write_node = buf.write_node

        while buf.head is not buf.read_node:
            node = buf.head
            buf.head = node.next_node
            node.release()
        rest = buf.write_node.next_node
        while rest is not None:
            node = rest
            rest = node.next_node
            node.release()
        buf._length = 0
        buf._malloc_size = 0
        buf.head = buf.read_node = buf.flush_node = buf.write_node = None

        self.write_node.next_node = None
        if buf_len > 0:
            self._recal_len(buf_len)
        self._malloc_size += buf_malloc_len

    def write_string(self, s: str) -> int:
        """Write text; return the number of bytes written."""
        if not s:
            return 0
        return self.write_binary(s.encode("utf-8", "surrogateescape"))

    def write_binary(self, p: Optional[BytesLike]) -> int:
        """Write bytes; large inputs are linked in place rather than copied."""
        n = len(p) if p is not None else 0
        if n == 0:
            return 0
        self._malloc_size += n
        if n > BINARY_INPLACE_THRESHOLD:
            node = LinkBufferNode(0)
            node.buf = _as_view(p)
            node.malloc_off = n
            self.write_node.next_node = node
            self.write_node = node
            return n
        self._growth(n)
        dst = self.write_node.malloc(n)
        dst[:] = _as_view(p)
        return n

    def write_direct(self, p: BytesLike, remain_len: int) -> None:
        """Insert ``p`` in place before the last ``remain_len`` reserved bytes.

        Must not be mixed with :meth:`write_string` or :meth:`write_binary`.
        """
        n = len(p)
        if n == 0 or remain_len < 0:
            return
        origin = self.flush_node
        offset = self._malloc_size - remain_len
        gap = origin.malloc_off - origin.length
        while gap <= offset:
            offset -= gap
            origin = origin.next_node
            gap = origin.malloc_off - origin.length
        offset += origin.length

        data_node = LinkBufferNode(0)
        data_node.buf = _as_view(p)
        data_node.malloc_off = n

        tail_node = LinkBufferNode(0)
        tail_node.off = offset
        tail_node.buf = origin.buf
        tail_node.length = offset
        tail_node.malloc_off = origin.malloc_off
        tail_node.readonly = False
        origin.malloc_off = offset
        origin.readonly = True

        data_node.next_node = tail_node
        tail_node.next_node = origin.next_node
        origin.next_node = data_node

        while self.write_node.next_node is not None:
            self.write_node = self.write_node.next_node
        self._malloc_size += n

    def write_byte(self, p: int) -> None:
        """Reserve one byte and store ``p`` in it."""
        dst = self.malloc(1)
        dst[0] = p

    def close(self) -> None:
        """Release every node of the buffer."""
        with self._len_lock:
            self._length = 0
        self._malloc_size = 0
        node = self.head
        while node is not None:
            current = node
            node = node.next_node
            current.release()

    # ------------------------------------------------------- inspection

    def bytes(self) -> bytes:
        """Return a copy of all readable bytes."""
        node, flush = self.read_node, self.flush_node
        if node is flush:
            return bytes(node.buf[node.off : node.length])
        out = bytearray()
        while node is not flush:
            if len(node) > 0:
                out += node.buf[node.off : node.length]
            node = node.next_node
        out += flush.buf[flush.off : flush.length]
        return bytes(out)

    def get_bytes(self, limit: int) -> list[memoryview]:
        """Return up to ``limit`` views of the readable chunks, in order."""
        out: list[memoryview] = []
        node, flush = self.read_node, self.flush_node
        while node is not flush and len(out) < limit:
            if len(node) > 0:
                out.append(node.buf[node.off : node.length])
            node = node.next_node
        if len(out) < limit:
            out.append(flush.buf[flush.off : flush.length])
        return out

    def book(self, book_size: int, max_size: int) -> memoryview:
        """Reserve space for one read of at most ``book_size`` bytes.

        When the tail is full a node of ``max_size`` bytes is added.
        """
        write = self.write_node
        available = write.capacity() - write.malloc_off
        if available == 0:
            available = max_size
            write.next_node = LinkBufferNode(max_size)
            self.write_node = write.next_node
        if available > book_size:
            available = book_size
        return self.write_node.malloc(available)

    def book_ack(self, n: int) -> int:
        """Commit the first ``n`` booked bytes; return the new length."""
        write = self.write_node
        write.malloc_off = n + write.length
        write.length = write.malloc_off
        self.flush_node = write
        return self._recal_len(n)

    def calc_max_size(self) -> int:
        """Return the size of data held since the last release."""
        total = 0
        node = self.head
        while node is not self.read_node:
            total += node.length
            node = node.next_node
        return total + self.read_node.length

    def index_byte(self, c: int, skip: int) -> int:
        """Return the index of the first ``c`` at or after ``skip``, or -1."""
        size = len(self)
        if skip >= size:
            return -1
        node = self.read_node
        unread = size
        while unread > 0:
            available = len(node)
            n = unread if available >= unread else available
            if skip >= n:
                skip -= n
                node = node.next_node
                unread -= n
                continue
            i = bytes(node.peek(n)[skip:]).find(c)
            if i >= 0:
                return (size - unread) + skip + i
            skip = 0
            node = node.next_node
            unread -= n
        return -1

    def reset_tail(self, max_size: int) -> None:
        """Reset the tail node, or add an empty one if it would exceed a page."""
        if max_size <= PAGESIZE:
            self.write_node.reset()
            return
        self.write_node.next_node = LinkBufferNode(0)
        self.write_node = self.write_node.next_node
        self.flush_node = self.write_node

    # ---------------------------------------------------------- helpers

    def _recal_len(self, delta: int) -> int:
        with self._len_lock:
            self._length += delta
            return self._length

    def _growth(self, n: int) -> None:
        if n <= 0:
            return
        while (
            self.write_node.readonly
            or self.write_node.capacity() - self.write_node.malloc_off < n
        ):
            if self.write_node.next_node is None:
                self.write_node.next_node = LinkBufferNode(n)
                self.write_node = self.write_node.next_node
                return
            self.write_node = self.write_node.next_node

    def _is_single_node(self, n: int) -> bool:
        if n <= 0:
            return True
        available = len(self.read_node)
        while available == 0:
            self.read_node = self.read_node.next_node
            available = len(self.read_node)
        return available >= n