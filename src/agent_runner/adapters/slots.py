from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from threading import Condition
import time

from agent_runner.observability import get_logger

_log = get_logger('agent_runner.adapters.slots')


@dataclass(frozen=True)
class SlotStats:
    capacity: int
    available: int
    in_use: int
    waiting: int
    acquired_total: int
    released_total: int

    def to_dict(self) -> dict[str, int]:
        return {
            'capacity': self.capacity,
            'available': self.available,
            'in_use': self.in_use,
            'waiting': self.waiting,
            'acquired_total': self.acquired_total,
            'released_total': self.released_total,
        }


class _Ticket:
    __slots__ = ('granted',)

    def __init__(self):
        self.granted = False


class ConcurrencySlots:
    """Counting semaphore with strict FIFO hand-off.

    A released slot goes straight to the oldest waiter instead of back to
    the pool, so a late arrival can never overtake a queued caller.
    """

    def __init__(self, capacity: int):
        self.capacity = max(1, int(capacity))
        self._cond = Condition()
        self._available = self.capacity
        self._waiters: deque[_Ticket] = deque()
        self._acquired_total = 0
        self._released_total = 0

    def acquire(self, timeout: float | None = None) -> bool:
        with self._cond:
            if self._available > 0 and not self._waiters:
                self._available -= 1
                self._acquired_total += 1
                return True

            ticket = _Ticket()
            self._waiters.append(ticket)
            deadline = None if timeout is None else time.monotonic() + max(0.0, float(timeout))
            while not ticket.granted:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._waiters.remove(ticket)
                    return False
                self._cond.wait(remaining)
            return True

    def release(self) -> None:
        with self._cond:
            if self._acquired_total <= self._released_total:
                _log.warning('slot_release_without_acquire capacity=%d', self.capacity)
                return
            self._released_total += 1
            if self._waiters:
                ticket = self._waiters.popleft()
                ticket.granted = True
                self._acquired_total += 1
                self._cond.notify_all()
                return
            self._available = min(self.capacity, self._available + 1)

    def stats(self) -> SlotStats:
        with self._cond:
            return SlotStats(
                capacity=self.capacity,
                available=self._available,
                in_use=self.capacity - self._available,
                waiting=len(self._waiters),
                acquired_total=self._acquired_total,
                released_total=self._released_total,
            )

    @property
    def available(self) -> int:
        return self.stats().available

    @property
    def waiting(self) -> int:
        return self.stats().waiting


__all__ = ['ConcurrencySlots', 'SlotStats']
