"""Default poller built on epoll (Linux) or kqueue (BSD and macOS)."""

from __future__ import annotations

import errno
import logging
import os
import select
import socket
import threading
import time
from typing import Callable, Iterable, Optional

from linkpoll.events import Poll, PollEvent, PollOperator
from linkpoll.sysio import readv, sendmsg

_log = logging.getLogger(__name__)

_MSG_ERRQUEUE = getattr(socket, "MSG_ERRQUEUE", 0x2000)
_RETRY_ERRNOS = (errno.EAGAIN, errno.EWOULDBLOCK)

_INITIAL_EVENTS = 128
_MAX_EVENTS = 128 * 1024
_BSD_EVENTS = 1024

_HAS_EPOLL = hasattr(select, "epoll")
_HAS_KQUEUE = hasattr(select, "kqueue")

if _HAS_EPOLL:
    _EPOLLRDHUP = getattr(select, "EPOLLRDHUP", 0x2000)
    _HUP_MASK = select.EPOLLHUP | _EPOLLRDHUP
    _READ_MASK = select.EPOLLIN | _EPOLLRDHUP | select.EPOLLERR
    _WRITE_ET_MASK = select.EPOLLET | select.EPOLLOUT | _EPOLLRDHUP | select.EPOLLERR
    _READ_WRITE_MASK = (
        select.EPOLLIN | select.EPOLLOUT | _EPOLLRDHUP | select.EPOLLERR
    )


def _errqueue_has_error(fd: int) -> bool:
    """Return True unless the socket's error queue is merely empty (EAGAIN)."""
    try:
        sock = socket.socket(fileno=fd)
    except OSError:
        return True
    try:
        sock.recvmsg(0, 0, _MSG_ERRQUEUE)
    except BlockingIOError:
        return False
    except OSError:
        return True
    finally:
        sock.detach()
    return True


class DefaultPoll(Poll):
    """Poller dispatching descriptor events to their :class:`PollOperator`.

    A private wake pipe lets :meth:`trigger` interrupt :meth:`wait` and
    :meth:`close` make it return.
    """

    def __init__(self) -> None:
        self._epoll = None
        self._kqueue = None
        if _HAS_EPOLL:
            self._epoll = select.epoll()
        elif _HAS_KQUEUE:
            self._kqueue = select.kqueue()
        else:
            raise OSError(errno.ENOSYS, "neither epoll nor kqueue is available")
        self._operators: dict[int, PollOperator] = {}
        self._trigger = 0
        self._trigger_lock = threading.Lock()
        try:
            self._wake_r, self._wake_w = os.pipe()
            os.set_blocking(self._wake_r, False)
            os.set_blocking(self._wake_w, False)
            self._wake_op = PollOperator(fd=self._wake_r)
            self.control(self._wake_op, PollEvent.READABLE)
        except Exception:
            self._close_backend()
            raise

    # ------------------------------------------------------------- Poll API

    def wait(self) -> None:
        """Dispatch events until :meth:`close` is called."""
        if self._epoll is not None:
            self._wait_epoll()
        else:
            self._wait_kqueue()

    def close(self) -> None:
        """Ask the waiting loop to shut down and release its descriptors."""
        os.write(self._wake_w, b"\x01")

    def trigger(self) -> None:
        """Wake the waiting loop; repeated calls before it runs are merged."""
        with self._trigger_lock:
            self._trigger += 1
            if self._trigger > 1:
                return
        os.write(self._wake_w, b"\x00")

    def control(self, operator: PollOperator, event: PollEvent | int) -> None:
        """Register, modify or detach the descriptor of ``operator``."""
        event = PollEvent(event)
        if self._epoll is not None:
            self._control_epoll(operator, event)
        else:
            self._control_kqueue(operator, event)

    # --------------------------------------------------------------- epoll

    def _control_epoll(self, operator: PollOperator, event: PollEvent) -> None:
        fd = operator.fd
        if event is PollEvent.DETACH:
            try:
                self._operators.pop(fd, None)
                self._epoll.unregister(fd)
            finally:
                operator.unused()
            return
        if event in (PollEvent.READABLE, PollEvent.MOD_READABLE, PollEvent.WRITABLE):
            operator.inuse()
        self._operators[fd] = operator
        if event is PollEvent.READABLE:
            self._epoll.register(fd, _READ_MASK)
        elif event is PollEvent.MOD_READABLE:
            self._epoll.modify(fd, _READ_MASK)
        elif event is PollEvent.WRITABLE:
            self._epoll.register(fd, _WRITE_ET_MASK)
        elif event is PollEvent.R2RW:
            self._epoll.modify(fd, _READ_WRITE_MASK)
        elif event is PollEvent.RW2R:
            self._epoll.modify(fd, _READ_MASK)

    def _wait_epoll(self) -> None:
        size, timeout, n = _INITIAL_EVENTS, -1, 0
        while True:
            if n == size and size < _MAX_EVENTS:
                size <<= 1
            events = self._epoll.poll(timeout, size)
            n = len(events)
            if n == 0:
                timeout = -1
                time.sleep(0)
                continue
            timeout = 0
            if self._handle_epoll(events):
                return

    def _handle_epoll(self, events: Iterable[tuple[int, int]]) -> bool:
        hups: list[PollOperator] = []
        for fd, evt in events:
            if fd == self._wake_r:
                if self._on_wake():
                    return True
                continue
            operator = self._operators.get(fd)
            if operator is None or not operator.do():
                continue
            try:
                hup = self._dispatch_epoll(operator, evt)
            finally:
                operator.done()
            if hup:
                hups.append(operator)
        if hups:
            self._detaches(hups)
        return False

    def _dispatch_epoll(self, operator: PollOperator, evt: int) -> bool:
        if evt & _HUP_MASK:
            return True
        if evt & select.EPOLLERR:
            # Under blocking zero-copy the kernel may report an error that is
            # only an EAGAIN on the error queue; that is not a hang-up.
            return _errqueue_has_error(operator.fd)
        if evt & select.EPOLLIN:
            if operator.on_read is not None:
                operator.on_read(self)
            elif self._read_inputs(operator):
                return True
        if evt & select.EPOLLOUT:
            if operator.on_write is not None:
                operator.on_write(self)
            elif self._write_outputs(operator):
                return True
        return False

    # -------------------------------------------------------------- kqueue

    def _control_kqueue(self, operator: PollOperator, event: PollEvent) -> None:
        fd = operator.fd
        read, write = select.KQ_FILTER_READ, select.KQ_FILTER_WRITE
        add_enable = select.KQ_EV_ADD | select.KQ_EV_ENABLE
        delete = select.KQ_EV_DELETE | select.KQ_EV_ONESHOT
        if event is PollEvent.DETACH:
            try:
                self._operators.pop(fd, None)
                self._kqueue.control([select.kevent(fd, read, delete)], 0)
            finally:
                operator.unused()
            return
        if event in (PollEvent.READABLE, PollEvent.MOD_READABLE):
            operator.inuse()
            self._operators[fd] = operator
            kev = select.kevent(fd, read, add_enable)
        elif event is PollEvent.WRITABLE:
            operator.inuse()
            self._operators[fd] = operator
            kev = select.kevent(fd, write, add_enable | select.KQ_EV_ONESHOT)
        elif event is PollEvent.R2RW:
            kev = select.kevent(fd, write, add_enable)
        else:
            kev = select.kevent(fd, write, delete)
        self._kqueue.control([kev], 0)

    def _wait_kqueue(self) -> None:
        while True:
            events = self._kqueue.control(None, _BSD_EVENTS, None)
            if self._handle_kqueue(events):
                return

    def _handle_kqueue(self, events: Iterable[select.kevent]) -> bool:
        hups: list[PollOperator] = []
        for kev in events:
            fd = int(kev.ident)
            if fd == self._wake_r:
                if self._on_wake():
                    return True
                continue
            operator = self._operators.get(fd)
            if operator is None or not operator.do():
                continue
            try:
                hup = self._dispatch_kqueue(operator, kev)
            finally:
                operator.done()
            if hup:
                hups.append(operator)
        if hups:
            self._detaches(hups)
        return False

    def _dispatch_kqueue(self, operator: PollOperator, kev: select.kevent) -> bool:
        if kev.flags & select.KQ_EV_EOF:
            return True
        enabled = kev.flags & select.KQ_EV_ENABLE
        if kev.filter == select.KQ_FILTER_READ and enabled:
            if operator.on_read is not None:
                operator.on_read(self)
                return False
            return self._read_inputs(operator)
        if kev.filter == select.KQ_FILTER_WRITE and enabled:
            if operator.on_write is not None:
                operator.on_write(self)
                return False
            return self._write_outputs(operator)
        return False

    # ------------------------------------------------------------- helpers

    def _read_inputs(self, operator: PollOperator) -> bool:
        """Read into the operator's input buffers; True on a fatal error."""
        if operator.inputs is None:
            return False
        bs = operator.inputs()
        if not bs:
            return False
        try:
            n = readv(operator.fd, bs)
        except OSError as exc:
            if operator.input_ack is not None:
                operator.input_ack(0)
            if exc.errno in _RETRY_ERRNOS or exc.errno == errno.EINTR:
                return False
            _log.warning("readv(fd=%d) failed: %s", operator.fd, exc)
            return True
        if operator.input_ack is not None:
            operator.input_ack(n)
        return False

    def _write_outputs(self, operator: PollOperator) -> bool:
        """Send the operator's output buffers; True on a fatal error."""
        if operator.outputs is None:
            return False
        bs, _zerocopy = operator.outputs()
        if not bs:
            return False
        try:
            n = sendmsg(operator.fd, bs, False)
        except OSError as exc:
            if operator.output_ack is not None:
                operator.output_ack(0)
            if exc.errno in _RETRY_ERRNOS:
                return False
            _log.warning("sendmsg(fd=%d) failed: %s", operator.fd, exc)
            return True
        if operator.output_ack is not None:
            operator.output_ack(n)
        return False

    def _on_wake(self) -> bool:
        """Drain the wake pipe; shut down and return True if closing."""
        data = bytearray()
        while True:
            try:
                chunk = os.read(self._wake_r, 64)
            except BlockingIOError:
                break
            if not chunk:
                break
            data += chunk
        with self._trigger_lock:
            self._trigger = 0
        if any(data):
            self._close_backend()
            return True
        return False

    def _close_backend(self) -> None:
        for name in ("_wake_r", "_wake_w"):
            fd = getattr(self, name, -1)
            if fd >= 0:
                try:
                    os.close(fd)
                except OSError:
                    pass
            setattr(self, name, -1)
        if self._epoll is not None:
            self._epoll.close()
        if self._kqueue is not None:
            self._kqueue.close()

    def _detaches(self, hups: list[PollOperator]) -> None:
        callbacks: list[Optional[Callable[[Poll], None]]] = []
        for operator in hups:
            callbacks.append(operator.on_hup)
            try:
                self.control(operator, PollEvent.DETACH)
            except (OSError, ValueError):
                pass
        threading.Thread(
            target=self._run_hups, args=(callbacks,), daemon=True
        ).start()

    def _run_hups(self, callbacks: list[Optional[Callable[[Poll], None]]]) -> None:
        for callback in callbacks:
            if callback is not None:
                callback(self)


def open_poll() -> DefaultPoll:
    """Open the default poller for this platform."""
    return DefaultPoll()