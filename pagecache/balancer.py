"""Per-shard LRU lists and selection of the most loaded shards."""

from __future__ import annotations

import random
import threading
from typing import Optional

from pagecache.linked_list import Element, LinkedList, Order
from pagecache.response import Response
from pagecache.sharded import SHARD_COUNT, Shard, ShardedMap
from pagecache.utils import ticker

# Approximate weight of one pointer kept per cached entry.
PTR_BYTES_WEIGHT = 8

_SHARD_NODE_STRUCT_SIZE = 32
_BALANCER_STRUCT_SIZE = 48
_REBALANCE_INTERVAL = 0.5


class ShardNode:
    """A shard together with its LRU list; recently used entries at the front."""

    def __init__(self, shard: Shard) -> None:
        self.shard = shard
        self.lru_list = LinkedList()
        self.mem_list_elem: Optional[Element] = None
        self._lock = threading.Lock()
        self._len = 0

    @property
    def length(self) -> int:
        """Number of entries accounted to this shard."""
        with self._lock:
            return self._len

    def _add(self, delta: int) -> None:
        with self._lock:
            self._len += delta

    def weight(self) -> int:
        """Approximate memory used by the node and its list pointers."""
        return _SHARD_NODE_STRUCT_SIZE + self.length * PTR_BYTES_WEIGHT


class Balancer:
    """Keeps shard nodes in a list ordered by load, most loaded at the front."""

    def __init__(self, stop_event: threading.Event, sharded_map: ShardedMap) -> None:
        self.stop_event = stop_event
        self.sharded_map = sharded_map
        self.mem_list = LinkedList()
        self._shards: list[Optional[ShardNode]] = [None] * SHARD_COUNT

    def run_rebalancer(self) -> threading.Thread:
        """Re-sort the shard list in the background until the stop event is set."""

        def loop() -> None:
            for _ in ticker(self.stop_event, _REBALANCE_INTERVAL):
                if self.stop_event.is_set():
                    return
                self.rebalance()

        thread = threading.Thread(target=loop, name="rebalancer", daemon=True)
        thread.start()
        return thread

    def rebalance(self) -> None:
        """Sort shard nodes by weight, heaviest first."""
        self.mem_list.sort(Order.DESC)

    def shards(self) -> list[Optional[ShardNode]]:
        """Shard nodes indexed by shard id; None where none is registered."""
        return list(self._shards)

    def rand_shard_node(self) -> Optional[ShardNode]:
        """A randomly chosen shard node."""
        return self._shards[random.randrange(SHARD_COUNT)]

    def register(self, shard: Shard) -> None:
        """Create a node with an empty LRU list for ``shard``."""
        node = ShardNode(shard)
        node.mem_list_elem = self.mem_list.push_back(node)
        self._shards[shard.id] = node

    def set(self, response: Response) -> ShardNode:
        """Put ``response`` at the front of its shard's LRU list."""
        node = self._shards[response.request.shard_key]
        node._add(1)
        response.lru_element = node.lru_list.push_front(response)
        return node

    def update(self, existing: Response) -> None:
        """Mark ``existing`` as most recently used."""
        self._shards[existing.shard_key].lru_list.move_to_front(existing.lru_element)

    def move(self, shard_key: int, element: Element) -> None:
        """Move ``element`` to the front of the given shard's LRU list."""
        self._shards[shard_key].lru_list.move_to_front(element)

    def remove(self, shard_key: int) -> None:
        """Account for one entry removed from the given shard."""
        self._shards[shard_key]._add(-1)

    def most_loaded_sampled(self, offset: int) -> Optional[ShardNode]:
        """The shard node at ``offset`` from the front of the load list, or None."""
        with self.mem_list.lock:
            element = self.mem_list.next_unlocked(offset)
            return None if element is None else element.value

    def weight(self) -> int:
        """Approximate memory used by the balancer and all shard nodes."""
        mem = _BALANCER_STRUCT_SIZE + SHARD_COUNT * PTR_BYTES_WEIGHT
        return mem + sum(node.weight() for node in self._shards if node is not None)