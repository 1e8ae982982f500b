import os
import socket

import pytest

from linkpoll.sysio import (
    get_sys_fd_pairs,
    iovecs,
    readv,
    sendmsg,
    set_block_zero_copy_send,
    set_default_sockopts,
    set_keep_alive,
    set_tcp_no_delay,
    set_zero_copy,
    sys_socket,
    writev,
)

LINES = [b"", b"first line", b"second line", b"third line"]


@pytest.fixture
def pair():
    r, w = get_sys_fd_pairs()
    yield r, w
    for fd in (r, w):
        try:
            os.close(fd)
        except OSError:
            pass


@pytest.fixture
def tcp_fd():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    yield sock.fileno()
    sock.close()


def _closed_fd():
    r, w = get_sys_fd_pairs()
    os.close(r)
    os.close(w)
    return r


def test_fd_pair_is_connected(pair):
    r, w = pair
    os.write(w, b"ping")
    assert os.read(r, 10) == b"ping"


def test_iovecs_drops_empty_chunks():
    assert iovecs(LINES) == [b"first line", b"second line", b"third line"]
    assert iovecs([b"", b""]) == []


def test_writev(pair):
    r, w = pair
    assert writev(w, LINES) == 31
    assert os.read(r, 50) == b"first linesecond linethird line"


def test_writev_nothing_to_write(pair):
    _, w = pair
    assert writev(w, [b"", b""]) == 0


def test_readv(pair):
    r, w = pair
    written = sum(os.write(w, line) for line in LINES[1:])
    assert written == 31
    bufs = [bytearray(0), bytearray(10), bytearray(11), bytearray(10)]
    assert readv(r, bufs) == 31
    assert [bytes(b) for b in bufs] == LINES


def test_readv_eof_returns_zero(pair):
    r, w = pair
    os.close(w)
    assert readv(r, [bytearray(8)]) == 0


def test_sendmsg(pair):
    r, w = pair
    assert sendmsg(w, LINES, False) == 31
    assert os.read(r, 50) == b"first linesecond linethird line"


def test_sendmsg_nothing_to_send(pair):
    _, w = pair
    assert sendmsg(w, [b""], False) == 0


def test_set_tcp_no_delay(tcp_fd):
    with socket.socket(fileno=os.dup(tcp_fd)) as probe:
        set_tcp_no_delay(tcp_fd, True)
        assert probe.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY) != 0
        set_tcp_no_delay(tcp_fd, False)
        assert probe.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY) == 0


def test_sys_socket_is_nonblocking_and_cloexec():
    fd = sys_socket(socket.AF_INET, socket.SOCK_STREAM, 0)
    try:
        assert os.get_blocking(fd) is False
        assert os.get_inheritable(fd) is False
    finally:
        os.close(fd)


def test_set_keep_alive(tcp_fd):
    result = set_keep_alive(tcp_fd, 30)
    assert result is None
    with socket.socket(fileno=os.dup(tcp_fd)) as probe:
        assert probe.getsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE) == 1


def test_set_keep_alive_bad_fd():
    with pytest.raises(OSError):
        set_keep_alive(_closed_fd(), 30)


def test_set_default_sockopts_allows_broadcast():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        before = sock.getsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST)
        assert before == 0
        result = set_default_sockopts(
            sock.fileno(), socket.AF_INET, socket.SOCK_DGRAM, False
        )
        assert result is None
        assert sock.getsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST) == 1
    finally:
        sock.close()


def test_set_default_sockopts_bad_fd():
    with pytest.raises(OSError):
        set_default_sockopts(_closed_fd(), socket.AF_INET, socket.SOCK_DGRAM, False)


def test_set_zero_copy_bad_fd():
    with pytest.raises(OSError):
        set_zero_copy(_closed_fd())


def test_set_block_zero_copy_send_bad_fd():
    with pytest.raises(OSError):
        set_block_zero_copy_send(_closed_fd(), 1, 0)