"""Per-key locks serializing reference creation and physical deletion."""

from __future__ import annotations

from contextlib import contextmanager
import threading
from typing import Iterator


class LockTimeout(Exception):
    pass


class KeyLockRegistry:
    """Hands out one lock per ``(disk_name, physical_key)``.

    Entries are dropped once no caller holds or waits on them.
    """

    def __init__(self, timeout: float | None = 30.0) -> None:
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], list] = {}

    @contextmanager
    def hold(self, disk_name: str, physical_key: str, timeout: float | None = None) -> Iterator[None]:
        key = (disk_name, physical_key)
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        lock = entry[0]
        wait = self.timeout if timeout is None else timeout
        acquired = lock.acquire(timeout=-1 if wait is None else wait)
        try:
            if not acquired:
                raise LockTimeout(f"Timed out waiting for lock on {disk_name}:{physical_key}")
            yield
        finally:
            if acquired:
                lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
