"""Buffer nodes for the linked buffer, backed by a size-class byte pool."""

from __future__ import annotations

import threading

BLOCK1K = 1 << 10
BLOCK2K = 1 << 11
BLOCK4K = 1 << 12
BLOCK8K = 1 << 13

# The tail node of a buffer must not grow beyond one page.
PAGESIZE = BLOCK8K

# Buffers larger than this are never pooled.
MALLOC_MAX = BLOCK8K * BLOCK1K

# Binary writes longer than this are linked in place instead of copied.
BINARY_INPLACE_THRESHOLD = BLOCK4K

_POOL_LIMIT = 64
_pool: dict[int, list[bytearray]] = {}
_pool_lock = threading.Lock()
_refer_lock = threading.Lock()
_link_buffer_cap = BLOCK4K
_EMPTY = memoryview(bytearray())


def set_link_buffer_cap(cap: int) -> None:
    """Set the minimum capacity of every newly allocated node."""
    global _link_buffer_cap
    if cap < 1:
        raise ValueError(f"link buffer cap must be positive, got {cap}")
    _link_buffer_cap = cap


def get_link_buffer_cap() -> int:
    """Return the minimum capacity of newly allocated nodes."""
    return _link_buffer_cap


def _size_class(capacity: int) -> int:
    return 1 << (capacity - 1).bit_length()


def malloc(size: int, capacity: int) -> memoryview:
    """Allocate a writable buffer able to hold at least ``capacity`` bytes.

    The returned view spans the whole allocation, which is rounded up to a
    power of two unless it exceeds ``MALLOC_MAX``. ``size`` is the length the
    caller intends to use and must not exceed ``capacity``.
    """
    if size < 0 or capacity < size:
        raise ValueError(f"invalid allocation size={size} capacity={capacity}")
    if capacity == 0:
        return memoryview(bytearray())
    if capacity > MALLOC_MAX:
        return memoryview(bytearray(capacity))
    size_class = _size_class(capacity)
    data = None
    with _pool_lock:
        bucket = _pool.get(size_class)
        if bucket:
            data = bucket.pop()
    if data is None:
        data = bytearray(size_class)
    return memoryview(data)


def free(buf: memoryview | bytearray) -> None:
    """Return a buffer obtained from :func:`malloc` to the pool."""
    data = buf.obj if isinstance(buf, memoryview) else buf
    if not isinstance(data, bytearray):
        return
    cap = len(data)
    if cap == 0 or cap > MALLOC_MAX or cap & (cap - 1):
        return
    if isinstance(buf, memoryview) and buf.nbytes != cap:
        return
    with _pool_lock:
        bucket = _pool.setdefault(cap, [])
        if len(bucket) < _POOL_LIMIT and all(item is not data for item in bucket):
            bucket.append(data)


class LinkBufferNode:
    """One chunk of a linked buffer.

    ``buf`` spans the node's whole capacity; ``length`` bytes of it are
    committed, ``off`` is the read offset and ``malloc_off`` the write offset.
    """

    __slots__ = (
        "buf",
        "length",
        "off",
        "malloc_off",
        "refer_count",
        "readonly",
        "origin",
        "next_node",
    )

    def __init__(self, size: int = 0) -> None:
        self.buf: memoryview = _EMPTY
        self.length = 0
        self.off = 0
        self.malloc_off = 0
        self.refer_count = 1
        self.readonly = False
        self.origin: LinkBufferNode | None = None
        self.next_node: LinkBufferNode | None = None
        if size <= 0:
            # The buffer will be supplied from outside and is not pooled here.
            self.readonly = True
            return
        self.buf = malloc(0, max(size, _link_buffer_cap))

    def __len__(self) -> int:
        return self.length - self.off

    def __repr__(self) -> str:
        return (
            f"LinkBufferNode(off={self.off}, length={self.length}, "
            f"malloc_off={self.malloc_off}, capacity={self.capacity()}, "
            f"refer={self.refer_count}, readonly={self.readonly})"
        )

    def capacity(self) -> int:
        """Return the number of bytes the node's storage can hold."""
        return len(self.buf)

    def is_empty(self) -> bool:
        """Return True when every committed byte has been read."""
        return self.off == self.length

    def _check(self, start: int, end: int) -> None:
        if start > end or end > len(self.buf):
            raise IndexError(
                f"node range [{start}:{end}] exceeds capacity {len(self.buf)}"
            )

    def next(self, n: int) -> memoryview:
        """Return the next ``n`` bytes and advance the read offset."""
        start = self.off
        end = start + n
        self._check(start, end)
        self.off = end
        return self.buf[start:end]

    def peek(self, n: int) -> memoryview:
        """Return the next ``n`` bytes without advancing."""
        start = self.off
        end = start + n
        self._check(start, end)
        return self.buf[start:end]

    def malloc(self, n: int) -> memoryview:
        """Reserve ``n`` writable bytes after the write offset."""
        start = self.malloc_off
        end = start + n
        self._check(start, end)
        self.malloc_off = end
        return self.buf[start:end]

    def refer(self, n: int) -> LinkBufferNode:
        """Read ``n`` bytes into a new read-only node sharing this storage.

        The storage stays alive until every referring node is released.
        """
        start = self.off
        self.next(n)
        node = LinkBufferNode(0)
        node.buf = self.buf[start:]
        node.length = n
        node.origin = self.origin if self.origin is not None else self
        with _refer_lock:
            node.origin.refer_count += 1
        return node

    def release(self) -> None:
        """Drop one reference; recycle the storage when none remain."""
        if self.origin is not None:
            self.origin.release()
        with _refer_lock:
            self.refer_count -= 1
            dead = self.refer_count == 0
        if not dead:
            return
        self.off = 0
        self.malloc_off = 0
        self.refer_count = 1
        self.origin = None
        self.next_node = None
        if self.readonly:
            self.readonly = False
        else:
            free(self.buf)
        self.buf = _EMPTY
        self.length = 0

    def reset(self) -> None:
        """Empty a node that owns its storage and is referenced only once."""
        if self.origin is not None or self.refer_count != 1:
            return
        self.off = 0
        self.malloc_off = 0
        self.length = 0