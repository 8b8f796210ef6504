"""Tests for keyed mutual exclusion."""

from __future__ import annotations

import threading
import time

from machineshop._locks import KeyedLock


def test_same_key_is_serialised() -> None:
    locks = KeyedLock()
    active = 0
    peak = 0
    guard = threading.Lock()

    def worker() -> None:
        nonlocal active, peak
        with locks.hold("default/demo"):
            with guard:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with guard:
                active -= 1

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert peak == 1
    assert not locks.is_held("default/demo"), "entry should be dropped when idle"


def test_distinct_keys_do_not_block() -> None:
    locks = KeyedLock()
    entered = threading.Event()

    def other() -> None:
        with locks.hold("b"):
            entered.set()

    with locks.hold("a"):
        thread = threading.Thread(target=other)
        thread.start()
        assert entered.wait(timeout=2)
        thread.join()


def test_lock_released_on_error() -> None:
    locks = KeyedLock()
    try:
        with locks.hold("a"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass

    assert not locks.is_held("a")
    with locks.hold("a"):
        assert locks.is_held("a")
