"""Lock striping for registries keyed by agent pair or id."""

from __future__ import annotations

import threading
from collections.abc import Hashable


class ShardedLock:
    """
    Fixed pool of locks selected by key hash.

    Unrelated keys land on different stripes with high probability, so
    writers to different agent pairs rarely contend. A key always maps to
    the same lock for the lifetime of the pool.
    """

    DEFAULT_SHARDS = 64

    def __init__(self, shards: int = DEFAULT_SHARDS) -> None:
        if shards <= 0:
            raise ValueError(f"shards must be > 0, got {shards}")
        self._locks = [threading.Lock() for _ in range(shards)]

    def __len__(self) -> int:
        return len(self._locks)

    def for_key(self, key: Hashable) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]
