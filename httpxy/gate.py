"""
gate.py — Process-wide counting gate bounding concurrent pipelines.

The gate hands out :class:`ConnectionSlot` permits.  A pipeline takes
one before touching any socket and gives it back exactly once in its
``finally`` block; releasing the same slot twice is a no-op so a
double release can never inflate the ceiling.
"""

from __future__ import annotations

import asyncio
import itertools
import logging

from httpxy.errors import ConfigError

logger = logging.getLogger(__name__)


class ConnectionSlot:
    """One permit drawn from a :class:`ConcurrencyGate`."""

    __slots__ = ("gate", "number", "_released")

    def __init__(self, gate: ConcurrencyGate, number: int) -> None:
        self.gate = gate
        self.number = number
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        self.gate.release(self)

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"<ConnectionSlot #{self.number} {state}>"


class ConcurrencyGate:
    """Counting semaphore with explicit permit objects.

    No fairness is promised beyond what ``asyncio.Semaphore`` gives:
    every blocked acquirer eventually proceeds once permits free up.
    """

    def __init__(self, ceiling: int = 50) -> None:
        if ceiling < 1:
            raise ConfigError(f"gate ceiling must be positive, got {ceiling}")
        self.ceiling = ceiling
        self._sem = asyncio.Semaphore(ceiling)
        self._outstanding = 0
        self._counter = itertools.count(1)

    @property
    def outstanding(self) -> int:
        """Number of slots currently held."""
        return self._outstanding

    @property
    def available(self) -> int:
        return self.ceiling - self._outstanding

    def locked(self) -> bool:
        return self._sem.locked()

    async def acquire(self) -> ConnectionSlot:
        """Wait for a free permit and return it."""
        await self._sem.acquire()
        self._outstanding += 1
        slot = ConnectionSlot(self, next(self._counter))
        logger.trace("Acquired %r (%d/%d)", slot, self._outstanding, self.ceiling)
        return slot

    def release(self, slot: ConnectionSlot) -> None:
        """Return *slot*; wakes at most one waiter."""
        if slot.gate is not self:
            raise ValueError(f"{slot!r} does not belong to this gate")
        if slot._released:
            return
        slot._released = True
        self._outstanding -= 1
        self._sem.release()
        logger.trace("Released %r (%d/%d)", slot, self._outstanding, self.ceiling)
