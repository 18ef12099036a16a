"""Per-key serialization for reserve and finalize.

Every read-check-write against a variant's stock runs while holding that
variant's lock. Within one process this is what closes the check-then-act
window (SQLite ignores ``FOR UPDATE``); across processes the services also
take a row lock on the variant, which PostgreSQL honours. Payment webhooks
for the same order are serialized the same way through ``order_locks``.

Entries are reference counted and dropped once no thread holds or waits on
them, so the registry only ever contains keys that are in use.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Tuple


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class LockRegistry:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[int, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def _checkout(self, key: int) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: int, entry: _Entry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    @contextmanager
    def hold(self, keys: Iterable[int]) -> Iterator[None]:
        # Stable ordering avoids deadlock between multi-variant orders
        ordered = sorted({int(k) for k in keys if k is not None})
        checked_out: List[Tuple[int, _Entry]] = []
        acquired: List[_Entry] = []
        try:
            for key in ordered:
                entry = self._checkout(key)
                checked_out.append((key, entry))
                entry.lock.acquire()
                acquired.append(entry)
            yield
        finally:
            for entry in reversed(acquired):
                entry.lock.release()
            for key, entry in reversed(checked_out):
                self._checkin(key, entry)


variant_locks = LockRegistry()
order_locks = LockRegistry()
