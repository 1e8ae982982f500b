"""Low-level socket helpers: fd pairs, vectored I/O and socket options."""

from __future__ import annotations

import errno
import os
import socket
import struct
import sys
from contextlib import contextmanager
from typing import Iterator, Sequence

BARRIER_CAP = 32

SO_ZEROCOPY = 60
SO_ZEROBLOCKTIMEO = 69
MSG_ZEROCOPY = 0x4000000

_PLATFORM = sys.platform
IS_LINUX = _PLATFORM.startswith("linux")
IS_DARWIN = _PLATFORM == "darwin"
IS_OPENBSD = _PLATFORM.startswith("openbsd")
IS_DRAGONFLY = _PLATFORM.startswith("dragonfly")
IS_BSD = IS_DARWIN or IS_OPENBSD or IS_DRAGONFLY or _PLATFORM.startswith(
    ("freebsd", "netbsd")
)

# Port range options used on DragonFly BSD; the socket module does not expose them.
_IP_PORTRANGE = 19
_IP_PORTRANGE_HIGH = 1
_IPV6_PORTRANGE = 14
_IPV6_PORTRANGE_HIGH = 1

# Darwin's TCP_KEEPINTVL; older releases reject it with ENOPROTOOPT.
_DARWIN_TCP_KEEPINTVL = 0x101
_DARWIN_TCP_KEEPALIVE = 0x10


@contextmanager
def _borrowed(fd: int) -> Iterator[socket.socket]:
    """Wrap a raw socket fd in a socket object without taking ownership."""
    sock = socket.socket(fileno=fd)
    try:
        yield sock
    finally:
        sock.detach()


def get_sys_fd_pairs() -> tuple[int, int]:
    """Create a connected pair of UNIX stream sockets and return their fds."""
    left, right = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
    return left.detach(), right.detach()


def set_tcp_no_delay(fd: int, enabled: bool) -> None:
    """Set or clear TCP_NODELAY on the socket."""
    with _borrowed(fd) as sock:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, int(bool(enabled)))


def sys_socket(family: int, sotype: int, proto: int) -> int:
    """Open a non-blocking, close-on-exec socket and return its fd."""
    sock = socket.socket(family, sotype, proto)
    try:
        sock.set_inheritable(False)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock.detach()


def iovecs(bs: Sequence[bytes | bytearray | memoryview]) -> list:
    """Return the non-empty chunks of ``bs`` in order."""
    return [chunk for chunk in bs if len(chunk) > 0]


def writev(fd: int, bs: Sequence[bytes | bytearray | memoryview]) -> int:
    """Write the chunks with a single writev call; return the bytes written."""
    chunks = iovecs(bs)
    if not chunks:
        return 0
    return os.writev(fd, chunks)


def readv(fd: int, bs: Sequence[bytearray | memoryview]) -> int:
    """Fill the writable chunks with a single readv call.

    Returns the number of bytes read; 0 means end of stream.
    """
    chunks = iovecs(bs)
    if not chunks:
        return 0
    return os.readv(fd, chunks)


def sendmsg(
    fd: int, bs: Sequence[bytes | bytearray | memoryview], zerocopy: bool = False
) -> int:
    """Send the chunks with a single sendmsg call; return the bytes sent."""
    chunks = iovecs(bs)
    if not chunks:
        return 0
    flags = MSG_ZEROCOPY if (zerocopy and IS_LINUX) else 0
    with _borrowed(fd) as sock:
        return sock.sendmsg(chunks, [], flags)


def set_keep_alive(fd: int, secs: int) -> None:
    """Enable TCP keep-alive with the given idle time and probe interval."""
    if IS_OPENBSD:
        # No per-socket keep-alive tuning is available there.
        return
    with _borrowed(fd) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if IS_DARWIN:
            try:
                sock.setsockopt(socket.IPPROTO_TCP, _DARWIN_TCP_KEEPINTVL, secs)
            except OSError as exc:
                if exc.errno != errno.ENOPROTOOPT:
                    raise
            keepalive = getattr(socket, "TCP_KEEPALIVE", _DARWIN_TCP_KEEPALIVE)
            sock.setsockopt(socket.IPPROTO_TCP, keepalive, secs)
            return
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, secs)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, secs)


def set_default_sockopts(s: int, family: int, sotype: int, ipv6only: bool) -> None:
    """Apply the default options to a new socket and allow broadcast."""
    with _borrowed(s) as sock:
        if IS_BSD:
            if IS_DRAGONFLY and sotype != socket.SOCK_RAW:
                try:
                    if family == socket.AF_INET:
                        sock.setsockopt(
                            socket.IPPROTO_IP, _IP_PORTRANGE, _IP_PORTRANGE_HIGH
                        )
                    elif family == socket.AF_INET6:
                        sock.setsockopt(
                            socket.IPPROTO_IPV6, _IPV6_PORTRANGE, _IPV6_PORTRANGE_HIGH
                        )
                except OSError:
                    pass
        elif family == socket.AF_INET6 and sotype != socket.SOCK_RAW:
            # Some systems never admit this option; failure is not fatal.
            try:
                sock.setsockopt(
                    socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, int(bool(ipv6only))
                )
            except OSError:
                pass
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)


def set_zero_copy(fd: int) -> None:
    """Enable SO_ZEROCOPY on the socket; unsupported outside Linux."""
    if not IS_LINUX:
        raise OSError(errno.EINVAL, os.strerror(errno.EINVAL))
    with _borrowed(fd) as sock:
        sock.setsockopt(socket.SOL_SOCKET, SO_ZEROCOPY, 1)


def set_block_zero_copy_send(fd: int, sec: int, usec: int) -> None:
    """Set the blocking zero-copy send timeout; unsupported outside Linux."""
    if not IS_LINUX:
        raise OSError(errno.EINVAL, os.strerror(errno.EINVAL))
    timeval = struct.pack("ll", sec, usec)
    with _borrowed(fd) as sock:
        sock.setsockopt(socket.SOL_SOCKET, SO_ZEROBLOCKTIMEO, timeval)