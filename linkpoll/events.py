"""Poll events, the poller interface and the per-descriptor operator."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Optional, Sequence


class PollEvent(IntEnum):
    """Operations accepted by :meth:`Poll.control`."""

    # Watch a listener or connection for readability or closure.
    READABLE = 0x1
    # Watch a dialing socket for writability (edge triggered, one shot).
    WRITABLE = 0x2
    # Remove the operator from the poller.
    DETACH = 0x3
    # Re-register readability for a dialed connection.
    MOD_READABLE = 0x4
    # Add writability while the socket send buffer is full.
    R2RW = 0x5
    # Remove writability again.
    RW2R = 0x6


class Poll(ABC):
    """A poller watching file descriptors and dispatching to their operators."""

    @abstractmethod
    def wait(self) -> None:
        """Block, dispatching events until the poller is closed."""

    @abstractmethod
    def close(self) -> None:
        """Close the poller and make :meth:`wait` return."""

    @abstractmethod
    def trigger(self) -> None:
        """Wake the waiting loop even if no event fired."""

    @abstractmethod
    def control(self, operator: PollOperator, event: PollEvent) -> None:
        """Apply ``event`` to the descriptor of ``operator``."""


class _State(IntEnum):
    UNUSED = 0
    INUSE = 1
    DOING = 2


@dataclass(eq=False)
class PollOperator:
    """Binds a file descriptor to the callbacks a poller invokes for it.

    Non-connection descriptors use ``on_read``/``on_write``; connections
    supply ``inputs``/``input_ack`` and ``outputs``/``output_ack`` to exchange
    buffers with the poller. ``on_hup`` runs after the descriptor is detached.
    """

    fd: int
    on_read: Optional[Callable[[Poll], None]] = None
    on_write: Optional[Callable[[Poll], None]] = None
    on_hup: Optional[Callable[[Poll], None]] = None
    inputs: Optional[Callable[[], Sequence[memoryview]]] = None
    input_ack: Optional[Callable[[int], None]] = None
    outputs: Optional[Callable[[], tuple[Sequence[memoryview], bool]]] = None
    output_ack: Optional[Callable[[int], None]] = None
    _state: _State = field(default=_State.UNUSED, init=False, repr=False)
    _cond: threading.Condition = field(
        default_factory=threading.Condition, init=False, repr=False
    )

    @property
    def in_use(self) -> bool:
        """True while the operator is registered with a poller."""
        return self._state is not _State.UNUSED

    def inuse(self) -> None:
        """Mark the operator as registered."""
        with self._cond:
            while self._state is _State.DOING:
                self._cond.wait()
            self._state = _State.INUSE

    def unused(self) -> None:
        """Mark the operator as detached, waiting for a running dispatch."""
        with self._cond:
            while self._state is _State.DOING:
                self._cond.wait()
            self._state = _State.UNUSED

    def do(self) -> bool:
        """Claim the operator for one dispatch; False if unavailable."""
        with self._cond:
            if self._state is not _State.INUSE:
                return False
            self._state = _State.DOING
            return True

    def done(self) -> None:
        """Finish a dispatch started by :meth:`do`."""
        with self._cond:
            if self._state is _State.DOING:
                self._state = _State.INUSE
                self._cond.notify_all()