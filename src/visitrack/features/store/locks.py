from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager

from visitrack.core.errors import StoreError


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLocks:
    """
    One mutex per key, created on demand and dropped when the last holder leaves.
    Holders of different keys never wait on each other; the guard lock is only held
    while the registry itself is touched.
    """

    def __init__(self, *, timeout_seconds: float = 5.0) -> None:
        self.timeout_seconds = float(timeout_seconds)
        self._guard = threading.Lock()
        self._entries: dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1

        acquired = entry.lock.acquire(timeout=self.timeout_seconds)
        try:
            if not acquired:
                raise StoreError(
                    f"Timed out after {self.timeout_seconds}s waiting for lock on {key!r}"
                )
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
