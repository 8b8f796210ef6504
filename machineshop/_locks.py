"""Keyed mutual exclusion shared by reconciliation passes."""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass


@dataclass(slots=True)
class _Entry:
    lock: threading.Lock
    holders: int = 0


class KeyedLock:
    """Hand out one lock per key, dropping it once nobody holds or waits.

    Examples
    --------
    >>> locks = KeyedLock()
    >>> with locks.hold("default/demo"):
    ...     locks.is_held("default/demo")
    True
    >>> locks.is_held("default/demo")
    False
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Block until the lock for ``key`` is acquired, release on exit."""
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry(lock=threading.Lock())
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._entries[key]

    def is_held(self, key: Hashable) -> bool:
        """Return whether any caller holds or waits on ``key``."""
        with self._guard:
            return key in self._entries


__all__ = ["KeyedLock"]
