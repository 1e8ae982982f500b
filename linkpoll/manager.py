"""Management of a group of pollers and the choice between them."""

from __future__ import annotations

import os
import threading
from typing import Optional

from linkpoll.events import Poll
from linkpoll.loadbalance import LoadBalance, RandomLB, RoundRobinLB, new_loadbalance
from linkpoll.poll import open_poll


def default_num_loops() -> int:
    """Return one loop, or one per usable CPU when there are more than four."""
    try:
        procs = len(os.sched_getaffinity(0))
    except (AttributeError, OSError):
        procs = os.cpu_count() or 1
    return procs if procs > 4 else 1


class Manager:
    """Owns the pollers, runs each in its own thread and balances between them."""

    def __init__(self) -> None:
        self.num_loops = 0
        self.polls: list[Poll] = []
        self._balance: Optional[RandomLB | RoundRobinLB] = None

    def set_num_loops(self, num_loops: int) -> None:
        """Change the number of pollers; fewer pollers means a full reset."""
        if num_loops < 1:
            raise ValueError(f"set invalid numLoops[{num_loops}]")
        if num_loops < self.num_loops:
            self.num_loops = num_loops
            self.reset()
            return
        self.num_loops = num_loops
        self.run()

    def set_load_balance(self, lb: LoadBalance | int) -> None:
        """Choose how :meth:`pick` spreads work over the pollers."""
        if self._balance is not None and self._balance.load_balance() == lb:
            return
        self._balance = new_loadbalance(lb, self.polls)

    def close(self) -> None:
        """Close every poller and forget them."""
        for poll in self.polls:
            poll.close()
        self.num_loops = 0
        self._balance = None
        self.polls = []

    def run(self) -> None:
        """Open and start pollers until there are ``num_loops`` of them."""
        if self._balance is None:
            raise RuntimeError("load balance must be set before run")
        while len(self.polls) < self.num_loops:
            poll = open_poll()
            self.polls.append(poll)
            threading.Thread(target=poll.wait, daemon=True).start()
        self._balance.rebalance(self.polls)

    def reset(self) -> None:
        """Close all pollers and start a fresh set."""
        for poll in self.polls:
            poll.close()
        self.polls = []
        self.run()

    def pick(self) -> Poll:
        """Return the poller to use next."""
        if self._balance is None:
            raise RuntimeError("load balance is not set")
        return self._balance.pick()


_manager: Optional[Manager] = None
_manager_lock = threading.Lock()


def get_manager() -> Manager:
    """Return the shared manager, starting it on first use."""
    global _manager
    with _manager_lock:
        if _manager is None:
            manager = Manager()
            manager.set_load_balance(LoadBalance.ROUND_ROBIN)
            manager.set_num_loops(default_num_loops())
            _manager = manager
        return _manager


def set_num_loops(num_loops: int) -> None:
    """Set the number of pollers of the shared manager."""
    get_manager().set_num_loops(num_loops)


def set_load_balance(lb: LoadBalance | int) -> None:
    """Set the balancing method of the shared manager."""
    get_manager().set_load_balance(lb)