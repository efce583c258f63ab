from __future__ import annotations

from threading import Thread
import time

from agent_runner.adapters import ConcurrencySlots


def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError('condition not reached in time')


def test_slots_report_capacity_and_availability():
    slots = ConcurrencySlots(3)
    assert slots.acquire()
    stats = slots.stats()
    assert stats.capacity == 3
    assert stats.available == 2
    assert stats.in_use == 1
    assert stats.waiting == 0
    slots.release()
    assert slots.available == 3


def test_capacity_is_clamped_to_at_least_one():
    assert ConcurrencySlots(0).capacity == 1


def test_acquire_beyond_capacity_times_out_and_leaves_queue():
    slots = ConcurrencySlots(2)
    assert slots.acquire()
    assert slots.acquire()
    assert slots.acquire(timeout=0.05) is False
    assert slots.waiting == 0
    assert slots.available == 0


def test_waiters_are_served_in_arrival_order():
    slots = ConcurrencySlots(1)
    assert slots.acquire()
    order: list[str] = []

    def worker(name: str) -> None:
        slots.acquire()
        order.append(name)
        slots.release()

    threads = []
    for idx, name in enumerate(['first', 'second', 'third']):
        thread = Thread(target=worker, args=(name,), daemon=True)
        thread.start()
        threads.append(thread)
        expected = idx + 1
        _wait_until(lambda: slots.waiting == expected)

    slots.release()
    for thread in threads:
        thread.join(timeout=5)

    assert order == ['first', 'second', 'third']
    stats = slots.stats()
    assert stats.available == 1
    assert stats.acquired_total == stats.released_total == 4


def test_released_slot_is_handed_to_waiter_not_to_newcomer():
    slots = ConcurrencySlots(1)
    assert slots.acquire()
    acquired = []
    waiter = Thread(target=lambda: acquired.append(slots.acquire()), daemon=True)
    waiter.start()
    _wait_until(lambda: slots.waiting == 1)

    slots.release()
    assert slots.acquire(timeout=0.05) is False
    waiter.join(timeout=5)
    assert acquired == [True]
    assert slots.available == 0


def test_release_without_acquire_does_not_grow_pool():
    slots = ConcurrencySlots(2)
    slots.release()
    stats = slots.stats()
    assert stats.available == 2
    assert stats.released_total == 0
