import threading

import pytest

from pagecache.sharded import (
    SHARD_COUNT,
    Releaser,
    Shard,
    ShardedMap,
    map_shard_key,
)


class Item:
    def __init__(self, key, size=10):
        self.key = key
        self.shard_key = map_shard_key(key)
        self.size = size
        self.refs = 0
        self.doomed = False
        self.released = 0
        self._lock = threading.Lock()

    def weight(self):
        return self.size

    def release(self):
        self.released += 1
        return True

    def ref_count(self):
        return self.refs

    def inc_ref_count(self):
        with self._lock:
            self.refs += 1
            return self.refs

    def dec_ref_count(self):
        with self._lock:
            self.refs -= 1
            return self.refs

    def cas_ref_count(self, old, new):
        with self._lock:
            if self.refs != old:
                return False
            self.refs = new
            return True

    def store_ref_count(self, value):
        self.refs = value

    def is_doomed(self):
        return self.doomed

    def mark_as_doomed(self):
        if self.doomed:
            return False
        self.doomed = True
        return True


@pytest.mark.parametrize("key", [0, 1, 31, 32, 33, 2**64 - 1])
def test_map_shard_key_in_range(key):
    assert 0 <= map_shard_key(key) < SHARD_COUNT
    assert map_shard_key(key) == key % SHARD_COUNT


def test_shard_count_is_32():
    m = ShardedMap()
    assert len(m.shards) == 32


def test_set_and_get_tracks_references():
    m = ShardedMap()
    item = Item(77)
    releaser = m.set(item)
    assert item.refs == 1
    found = m.get(item.key, item.shard_key)
    assert found is not None
    value, get_releaser = found
    assert value is item
    assert item.refs == 2
    assert get_releaser.release() is True
    assert releaser.release() is True
    assert item.refs == 0


def test_get_miss_returns_none():
    m = ShardedMap()
    assert m.get(5, map_shard_key(5)) is None


def test_len_and_mem_follow_set_and_release():
    m = ShardedMap()
    a, b = Item(1, size=7), Item(40, size=5)
    m.set(a)
    m.set(b)
    assert len(m) == 2
    assert m.mem() == a.size + b.size
    freed, hit = m.release(a.key)
    assert hit is True
    assert freed == a.size
    assert len(m) == 1
    assert m.mem() == b.size


def test_release_missing_key():
    m = ShardedMap()
    assert m.release(123) == (0, False)
    assert len(m) == 0


def test_release_unreferenced_value_frees_it():
    m = ShardedMap()
    item = Item(3)
    m.set(item).release()
    m.release(item.key)
    assert item.doomed is True
    assert item.released == 1
    assert m.get(item.key, item.shard_key) is None


def test_release_referenced_value_waits_for_last_reference():
    m = ShardedMap()
    item = Item(9)
    releaser = m.set(item)
    m.release(item.key)
    assert item.doomed is True
    assert item.released == 0
    releaser.release()
    assert item.released == 1


def test_releaser_as_context_manager():
    item = Item(4)
    item.store_ref_count(1)
    with Releaser(item) as value:
        assert value is item
        assert item.refs == 1
    assert item.refs == 0


def test_shard_weight_includes_values():
    empty = Shard(0)
    shard = Shard(0)
    shard.set(1, Item(1, size=100))
    assert shard.weight() - empty.weight() == 100
    assert len(shard) == 1


def test_shard_lookup_matches_shard_key():
    m = ShardedMap()
    assert m.shard(65).id == map_shard_key(65)


def test_walk_visits_all_and_restores_refcounts():
    shard = Shard(0)
    items = [Item(k * SHARD_COUNT) for k in range(5)]
    for item in items:
        shard.set(item.key, item)
    seen = []
    refs_during_walk = []

    def visit(key, value):
        seen.append(key)
        refs_during_walk.append(value.ref_count())
        return True

    shard.walk(threading.Event(), visit, False)
    assert sorted(seen) == sorted(i.key for i in items)
    assert refs_during_walk == [2] * len(items)
    assert all(i.refs == 1 for i in items)
    assert len(shard) == len(items)


def test_walk_stops_when_callback_returns_false():
    shard = Shard(0)
    for k in range(5):
        shard.set(k, Item(k))
    seen = []
    shard.walk(None, lambda k, v: seen.append(k) or False, True)
    assert len(seen) == 1


def test_walk_with_stop_event_set_visits_nothing():
    shard = Shard(0)
    item = Item(2)
    shard.set(item.key, item)
    stop = threading.Event()
    stop.set()
    seen = []
    shard.walk(stop, lambda k, v: seen.append(k) or True, False)
    assert seen == []
    assert item.refs == 1


def test_walk_shards_calls_every_shard():
    m = ShardedMap()
    visited = {}
    lock = threading.Lock()

    def record(shard_id, shard):
        with lock:
            visited[shard_id] = shard

    m.walk_shards(record)
    assert sorted(visited) == list(range(SHARD_COUNT))
    for shard_id, shard in visited.items():
        assert shard is m.shard(shard_id)
        assert shard.id == shard_id


def test_update_leaves_memory_unchanged():
    m = ShardedMap()
    old = Item(8, size=10)
    m.set(old)
    m.update(old, Item(8, size=99))
    assert m.mem() == 10