"""Choosing and building a cache storage by eviction algorithm."""

from __future__ import annotations

import enum
import threading

from pagecache.balancer import Balancer
from pagecache.lru import LruStorage
from pagecache.response import CacheConfig
from pagecache.sharded import ShardedMap


class Algorithm(str, enum.Enum):
    """Cache eviction algorithm labels."""

    LRU = "LRU"  # least recently used
    MRU = "MRU"  # most recently used
    LFU = "LFU"  # least frequently used
    MFU = "MFU"  # most frequently used


def new_storage(
    stop_event: threading.Event,
    config: CacheConfig,
    balancer: Balancer,
    refresher,
    backend,
    sharded_map: ShardedMap,
) -> LruStorage:
    """Build the storage for the configured eviction algorithm.

    Raises ValueError for algorithms without a storage.
    """
    try:
        algorithm = Algorithm(config.eviction_algo)
    except ValueError:
        algorithm = None
    if algorithm is Algorithm.LRU:
        return LruStorage(stop_event, config, balancer, refresher, backend, sharded_map)
    raise ValueError(f"algorithm {config.eviction_algo} is not supported")