"""Strategies for choosing one poller among several."""

from __future__ import annotations

import itertools
import random
from enum import IntEnum
from typing import Any, Iterable


class LoadBalance(IntEnum):
    """How new connections are spread over pollers."""

    RANDOM = 0
    ROUND_ROBIN = 1


class RandomLB:
    """Pick a poller uniformly at random."""

    def __init__(self, polls: Iterable[Any]) -> None:
        self._polls: tuple = tuple(polls)

    def load_balance(self) -> LoadBalance:
        return LoadBalance.RANDOM

    def pick(self) -> Any:
        if not self._polls:
            raise IndexError("no poll to pick from")
        return self._polls[random.randrange(len(self._polls))]

    def rebalance(self, polls: Iterable[Any]) -> None:
        self._polls = tuple(polls)


class RoundRobinLB:
    """Pick pollers in turn."""

    def __init__(self, polls: Iterable[Any]) -> None:
        self._polls: tuple = tuple(polls)
        self._accepted = itertools.count(1)

    def load_balance(self) -> LoadBalance:
        return LoadBalance.ROUND_ROBIN

    def pick(self) -> Any:
        if not self._polls:
            raise IndexError("no poll to pick from")
        return self._polls[next(self._accepted) % len(self._polls)]

    def rebalance(self, polls: Iterable[Any]) -> None:
        self._polls = tuple(polls)


def new_loadbalance(lb: LoadBalance | int, polls: Iterable[Any]) -> RandomLB | RoundRobinLB:
    """Create the balancer for ``lb``; anything unknown means round robin."""
    if lb == LoadBalance.RANDOM:
        return RandomLB(polls)
    return RoundRobinLB(polls)