"""Keyed advisory locks for per-thread and per-item serialization.

A KeyedLock hands out one asyncio.Lock per key. Work on different keys
never contends, so two threads' extraction pipelines run fully in
parallel while two runs for the same thread are serialized.

Entries are reference counted and dropped when the last holder or waiter
leaves, so the lock table does not grow with the number of threads seen.

Usage:
    from commintel.core.locks import KeyedLock

    locks = KeyedLock("thread")

    async with locks.acquire(thread_id):
        ...  # at most one holder per thread_id
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from commintel.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _Entry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class KeyedLock:
    """Mutex table keyed by string id.

    Attributes:
        name: Label used in log events (e.g. 'thread', 'item')
    """

    def __init__(self, name: str = "key") -> None:
        self.name = name
        self._entries: dict[str, _Entry] = {}

    @asynccontextmanager
    async def acquire(self, key: str, timeout: float | None = None) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block.

        Args:
            key: Lock key (thread id, item id)
            timeout: Seconds to wait for the lock, or None to wait indefinitely

        Raises:
            TimeoutError: If the lock could not be acquired within ``timeout``
        """
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry()
            self._entries[key] = entry
        entry.users += 1

        try:
            if entry.lock.locked():
                logger.debug("lock_wait", lock=self.name, key=key)
            if timeout is None:
                await entry.lock.acquire()
            else:
                await asyncio.wait_for(entry.lock.acquire(), timeout)
        except BaseException:
            self._release_entry(key, entry)
            raise

        try:
            yield
        finally:
            entry.lock.release()
            self._release_entry(key, entry)

    def locked(self, key: str) -> bool:
        """Whether ``key`` is currently held."""
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)

    def _release_entry(self, key: str, entry: _Entry) -> None:
        entry.users -= 1
        if entry.users == 0 and self._entries.get(key) is entry:
            del self._entries[key]
