"""A sharded, reference-counted map for cache entries."""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Generic, Optional, Protocol, TypeVar

SHARD_COUNT = 32

# Approximate size of a shard's own bookkeeping.
_SHARD_STRUCT_SIZE = 48


class CacheValue(Protocol):
    """What a value stored in a :class:`ShardedMap` has to provide."""

    @property
    def key(self) -> int: ...

    @property
    def shard_key(self) -> int: ...

    def weight(self) -> int: ...

    def release(self) -> bool: ...

    def ref_count(self) -> int: ...

    def inc_ref_count(self) -> int: ...

    def dec_ref_count(self) -> int: ...

    def cas_ref_count(self, old: int, new: int) -> bool: ...

    def store_ref_count(self, value: int) -> None: ...

    def is_doomed(self) -> bool: ...

    def mark_as_doomed(self) -> bool: ...


V = TypeVar("V", bound=CacheValue)


def map_shard_key(key: int) -> int:
    """Index of the shard that holds ``key``."""
    return key % SHARD_COUNT


class Releaser(Generic[V]):
    """A handle on one reference to a cached value.

    Releasing it drops the reference; the last reference to a doomed value
    frees the value itself. Usable as a context manager.
    """

    __slots__ = ("value",)

    def __init__(self, value: V) -> None:
        self.value = value

    def release(self) -> bool:
        """Drop the reference. Returns False if a concurrent change won the race."""
        value = self.value
        old = value.ref_count()
        if value.cas_ref_count(old, old - 1):
            if old == 1 and value.is_doomed():
                value.release()
            return True
        return False

    def __enter__(self) -> V:
        return self.value

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class Shard(Generic[V]):
    """One partition of a :class:`ShardedMap` with its own lock and counters."""

    def __init__(self, shard_id: int) -> None:
        self.id = shard_id
        self.lock = threading.RLock()
        self.items: dict[int, V] = {}
        self._len = 0
        self._mem = 0

    def __len__(self) -> int:
        with self.lock:
            return self._len

    def weight(self) -> int:
        """Approximate memory used by the shard and its values."""
        with self.lock:
            return _SHARD_STRUCT_SIZE + self._mem

    def set(self, key: int, value: V) -> tuple[int, Releaser[V]]:
        """Store ``value`` with a single reference; return its weight and a releaser."""
        with self.lock:
            value.store_ref_count(1)
            self.items[key] = value
            taken = value.weight()
            self._len += 1
            self._mem += taken
            return taken, Releaser(value)

    def get(self, key: int) -> Optional[tuple[V, Releaser[V]]]:
        """Return the value and a releaser for a new reference, or None on a miss."""
        with self.lock:
            value = self.items.get(key)
            if value is None:
                return None
            value.inc_ref_count()
            return value, Releaser(value)

    def release(self, key: int) -> tuple[int, bool]:
        """Remove ``key``; return the freed weight and whether it was present.

        The value is freed at once if nobody holds it, otherwise it is marked
        doomed and freed when the last reference is released.
        """
        with self.lock:
            value = self.items.pop(key, None)
            if value is None:
                return 0, False
            weight = value.weight()
            self._len -= 1
            self._mem -= weight
            if value.mark_as_doomed() and value.ref_count() == 0:
                value.release()
            return weight, True

    def walk(
        self,
        stop_event: Optional[threading.Event],
        fn: Callable[[int, V], bool],
        exclusive: bool,
    ) -> None:
        """Call ``fn(key, value)`` for each entry until it returns False or the event is set.

        An exclusive walk holds the shard lock throughout; otherwise the entries
        are snapshotted under the lock and visited without it. Each value holds
        an extra reference while ``fn`` runs.
        """
        if exclusive:
            with self.lock:
                self._visit(list(self.items.items()), stop_event, fn)
        else:
            with self.lock:
                entries = list(self.items.items())
            self._visit(entries, stop_event, fn)

    @staticmethod
    def _visit(
        entries: list[tuple[int, V]],
        stop_event: Optional[threading.Event],
        fn: Callable[[int, V], bool],
    ) -> None:
        for key, value in entries:
            value.inc_ref_count()
            with Releaser(value):
                if stop_event is not None and stop_event.is_set():
                    return
                if not fn(key, value):
                    return


class ShardedMap(Generic[V]):
    """A concurrent map split into :data:`SHARD_COUNT` independently locked shards."""

    def __init__(self) -> None:
        self.shards: list[Shard[V]] = [Shard(i) for i in range(SHARD_COUNT)]
        self._lock = threading.Lock()
        self._len = 0
        self._mem = 0

    def __len__(self) -> int:
        with self._lock:
            return self._len

    def mem(self) -> int:
        """Total weight of the stored values."""
        with self._lock:
            return self._mem

    def set(self, value: V) -> Releaser[V]:
        """Store ``value`` under its key and return a releaser for its reference."""
        taken, releaser = self.shards[value.shard_key].set(value.key, value)
        with self._lock:
            self._len += 1
            self._mem += taken
        return releaser

    def get(self, key: int, shard_key: int) -> Optional[tuple[V, Releaser[V]]]:
        """Look up ``key`` in the given shard; None on a miss."""
        return self.shards[shard_key].get(key)

    def update(self, old: V, new: V) -> None:
        """Hook for replacing a value in place; memory accounting stays unchanged."""

    def release(self, key: int) -> tuple[int, bool]:
        """Remove ``key``; return the freed weight and whether it was present."""
        freed, hit = self.shard(key).release(key)
        if hit:
            with self._lock:
                self._len -= 1
                self._mem -= freed
        return freed, hit

    def shard(self, key: int) -> Shard[V]:
        """The shard that stores ``key``."""
        return self.shards[map_shard_key(key)]

    def walk_shards(self, fn: Callable[[int, Shard[V]], None]) -> None:
        """Call ``fn(shard_id, shard)`` for every shard concurrently, each under its lock."""

        def run(shard: Shard[V]) -> None:
            with shard.lock:
                fn(shard.id, shard)

        with ThreadPoolExecutor(max_workers=SHARD_COUNT) as pool:
            list(pool.map(run, self.shards))