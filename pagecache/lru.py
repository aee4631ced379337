"""Memory-bounded LRU cache storage with eviction, background refresh and dumps."""

from __future__ import annotations

import gzip
import logging
import struct
import threading
import time
import zlib
from collections.abc import Callable
from pathlib import Path
from typing import IO, Optional, Protocol, Union

from pagecache.balancer import PTR_BYTES_WEIGHT, Balancer, ShardNode
from pagecache.linked_list import LinkedList
from pagecache.request import Request
from pagecache.response import CacheConfig, Response, Revalidator, unmarshal_binary
from pagecache.sharded import SHARD_COUNT, Releaser, ShardedMap
from pagecache.utils import fmt_mem, ticker

logger = logging.getLogger(__name__)

DUMP_DIR = "public/dump"
DUMP_FILE_NAME = "cache.dump"

# Each dump record: [shard_id:uint16][len:uint32][payload].
_RECORD_HEADER = struct.Struct("<HI")
_STOP_DUMP_TIMEOUT = 8.0
_EVICT_INTERVAL = 1.0
_LOG_INTERVAL = 5.0
_SAMPLED_SHARDS = int(SHARD_COUNT * 0.25)

PathLike = Union[str, Path]


class DumpError(Exception):
    """Raised when the cache cannot be written to or read from a dump file."""


class _Refresher(Protocol):
    def run_refresher(self) -> object: ...


class _Backend(Protocol):
    def revalidator_maker(self, request: Request) -> Revalidator: ...


class _Deadline:
    """Event-like object that becomes set once its time runs out."""

    def __init__(self, timeout: float) -> None:
        self._expires = time.monotonic() + timeout

    def is_set(self) -> bool:
        return time.monotonic() >= self._expires


class LruStorage:
    """A sharded cache bounded by memory, evicting from the most loaded shards.

    On construction it registers all shards with the balancer, loads a dump
    from ``dump_dir`` if there is one, and starts the refresher and evictor.
    """

    def __init__(
        self,
        stop_event: threading.Event,
        config: CacheConfig,
        balancer: Balancer,
        refresher: _Refresher,
        backend: _Backend,
        sharded_map: ShardedMap,
        dump_dir: PathLike = DUMP_DIR,
    ) -> None:
        self.stop_event = stop_event
        self.config = config
        self.balancer = balancer
        self.refresher = refresher
        self.backend = backend
        self.sharded_map = sharded_map
        self.dump_dir = Path(dump_dir)
        self.memory_threshold = int(config.memory_limit * config.memory_fill_threshold)
        self._stats_lock = threading.Lock()
        self._evicted_items = 0
        self._evicted_mem = 0

        sharded_map.walk_shards(lambda _shard_id, shard: balancer.register(shard))
        self._load_dump_if_exists()

        refresher.run_refresher()
        self._run_evictor()
        if config.app_debug:
            self._run_logger()

    # --- cache API ---

    def get(self, request: Request) -> Optional[tuple[Response, Releaser]]:
        """Look up ``request`` and mark the entry as recently used; None on a miss."""
        found = self.sharded_map.get(request.key, request.shard_key)
        if found is None:
            return None
        response, releaser = found
        self.balancer.update(response)
        return response, releaser

    def set(self, response: Response) -> Releaser:
        """Store ``response``; an entry already cached for its request is kept and touched."""
        found = self.sharded_map.get(response.request.key, response.request.shard_key)
        if found is not None:
            existing, releaser = found
            self.sharded_map.update(existing, response)
            self.balancer.update(existing)
            return releaser
        releaser = self.sharded_map.set(response)
        self.balancer.set(response)
        return releaser

    def _del(self, key: int, shard_key: int) -> tuple[int, bool]:
        freed, hit = self.sharded_map.release(key)
        if hit:
            self.balancer.remove(shard_key)
        return freed, hit

    # --- eviction ---

    def used_mem(self) -> int:
        """Estimated memory used by the entries and their LRU pointers."""
        return self.sharded_map.mem() + PTR_BYTES_WEIGHT * len(self.sharded_map)

    def _should_evict(self) -> bool:
        return self.used_mem() >= self.memory_threshold

    def evict_until_within_limit(self) -> tuple[int, int]:
        """Evict entries from the most loaded shards until below the threshold.

        Returns the number of evicted entries and the memory they freed.
        """
        items = 0
        freed = 0
        shard_offset = 0
        idle_rounds = 0
        while self._should_evict():
            shard_offset += 1
            if shard_offset >= _SAMPLED_SHARDS:
                shard_offset = 0

            self.balancer.rebalance()
            node = self.balancer.most_loaded_sampled(shard_offset)
            if node is None:
                evicted, mem = 0, 0
            else:
                lru = node.lru_list
                if len(lru) == 0:
                    break
                evicted, mem = self._evict_from(lru)
            items += evicted
            freed += mem

            idle_rounds = 0 if evicted else idle_rounds + 1
            if idle_rounds >= _SAMPLED_SHARDS:
                break
        return items, freed

    def _evict_from(self, lru: LinkedList) -> tuple[int, int]:
        items = 0
        freed = 0
        offset = 0
        while self._should_evict():
            with lru.lock:
                element = lru.next_unlocked(offset)
                if element is None:
                    break
                offset += 1
                response = element.value
                if response.is_doomed():
                    continue
                key, shard_key = response.key, response.shard_key
            mem, hit = self._del(key, shard_key)
            if hit:
                items += 1
                freed += mem
        return items, freed

    def _run_evictor(self) -> None:
        def loop() -> None:
            for _ in ticker(self.stop_event, _EVICT_INTERVAL):
                if self.stop_event.is_set():
                    return
                items, freed = self.evict_until_within_limit()
                if self.config.app_debug and (items or freed):
                    with self._stats_lock:
                        self._evicted_items += items
                        self._evicted_mem += freed

        threading.Thread(target=loop, name="evictor", daemon=True).start()

    def _run_logger(self) -> None:
        def loop() -> None:
            for _ in ticker(self.stop_event, _LOG_INTERVAL):
                if self.stop_event.is_set():
                    return
                with self._stats_lock:
                    items, freed = self._evicted_items, self._evicted_mem
                    self._evicted_items = self._evicted_mem = 0
                logger.info(
                    "[lru][5s] evicted (items: %d, freedMem: %s), "
                    "storage (usage: %s, len: %d, limit: %s), sys (threads: %d)",
                    items,
                    fmt_mem(freed),
                    fmt_mem(self.used_mem()),
                    len(self.sharded_map),
                    fmt_mem(int(self.config.memory_limit)),
                    threading.active_count(),
                )

        threading.Thread(target=loop, name="lru-logger", daemon=True).start()

    # --- dumps ---

    def dump_to_dir(self, directory: PathLike) -> int:
        """Write all entries to ``directory``/cache.dump; return how many were written.

        Raises DumpError if the file cannot be written or an entry failed to serialize.
        """
        return self._dump(Path(directory), None)

    def _dump(self, directory: Path, deadline: Optional[_Deadline]) -> int:
        started = time.monotonic()
        path = directory / DUMP_FILE_NAME
        written = 0
        failed = 0
        try:
            with gzip.open(path, "wb") as out:
                for shard_id, node in enumerate(self.balancer.shards()):
                    if node is None:
                        continue
                    ok, bad = self._dump_shard(out, shard_id, node, deadline)
                    written += ok
                    failed += bad
        except OSError as exc:
            logger.error("[dump] write dump file %s failed: %s", path, exc)
            raise DumpError(f"write dump file {path}: {exc}") from exc

        logger.info(
            "[dump] dump to: %s successfully written %d keys, errors %d (elapsed: %.3fs)",
            path,
            written,
            failed,
            time.monotonic() - started,
        )
        if failed:
            raise DumpError(f"dump errors: {failed}")
        return written

    @staticmethod
    def _dump_shard(
        out: IO[bytes], shard_id: int, node: ShardNode, deadline: Optional[_Deadline]
    ) -> tuple[int, int]:
        written = 0
        failed = 0

        def visit(_key: int, response: Response) -> bool:
            nonlocal written, failed
            if deadline is not None and deadline.is_set():
                return False
            try:
                payload = response.marshal_binary()
            except ValueError as exc:
                logger.error("[dump] marshal data to binary failed: %s", exc)
                failed += 1
                return True
            out.write(_RECORD_HEADER.pack(shard_id, len(payload)))
            out.write(payload)
            written += 1
            return True

        node.shard.walk(deadline, visit, True)
        return written, failed

    def load_from_dir(self, directory: PathLike) -> int:
        """Load entries from ``directory``/cache.dump; return how many were loaded.

        Malformed records are skipped. Raises DumpError if the file cannot be
        opened or read, or if the stop event is set while loading.
        """
        started = time.monotonic()
        path = Path(directory) / DUMP_FILE_NAME
        try:
            raw = path.open("rb")
        except OSError as exc:
            raise DumpError(f"open dump file: {exc}") from exc

        loaded = 0
        failed = 0
        make_revalidator: Callable[[Request], Revalidator] = self.backend.revalidator_maker
        with raw, gzip.GzipFile(fileobj=raw, mode="rb") as src:
            try:
                while True:
                    if self.stop_event.is_set():
                        raise DumpError("loading dump interrupted")
                    header = src.read(_RECORD_HEADER.size)
                    if not header:
                        break
                    if len(header) < _RECORD_HEADER.size:
                        logger.error("[dump] read record header: unexpected end of file")
                        failed += 1
                        break
                    _shard_id, length = _RECORD_HEADER.unpack(header)
                    payload = src.read(length)
                    if len(payload) < length:
                        logger.error("[dump] read full payload: unexpected end of file")
                        failed += 1
                        break
                    try:
                        response = unmarshal_binary(payload, make_revalidator)
                    except ValueError as exc:
                        logger.error("[dump] unmarshal binary: %s", exc)
                        failed += 1
                        continue
                    self.set(response).release()
                    loaded += 1
            except (OSError, EOFError, zlib.error) as exc:
                raise DumpError(f"read dump file {path}: {exc}") from exc

        logger.info(
            "[dump] successfully loaded %d keys, errors: %d (elapsed: %.3fs)",
            loaded,
            failed,
            time.monotonic() - started,
        )
        return loaded

    def _load_dump_if_exists(self) -> None:
        try:
            self.load_from_dir(self.dump_dir)
        except DumpError as exc:
            logger.warning("failed to load dump: %s", exc)

    def stop(self) -> None:
        """Dump the cache to the dump directory, giving up after a few seconds."""
        try:
            self._dump(self.dump_dir, _Deadline(_STOP_DUMP_TIMEOUT))
        except DumpError as exc:
            logger.error("failed to dump cache: %s", exc)