import threading
import time
from collections import defaultdict

import pytest

from pagecache.balancer import PTR_BYTES_WEIGHT, Balancer
from pagecache.request import Request
from pagecache.response import Data, Response
from pagecache.sharded import SHARD_COUNT, ShardedMap


def _response(req):
    return Response(
        Data(200, {}, b"body"),
        req,
        lambda: Data(200, {}, b"fresh"),
        beta=40,
        revalidate_interval=10**12,
        min_stale_duration=10**12,
    )


def _grouped_requests(count=400):
    groups = defaultdict(list)
    for i in range(count):
        req = Request(f"p{i}".encode(), b"d", b"l")
        groups[req.shard_key].append(req)
    return groups


def _same_shard(n):
    for reqs in _grouped_requests().values():
        if len(reqs) >= n:
            return reqs[:n]
    raise AssertionError("no shard with enough requests")


@pytest.fixture
def balancer():
    smap = ShardedMap()
    b = Balancer(threading.Event(), smap)
    smap.walk_shards(lambda _id, shard: b.register(shard))
    return b


def test_register_indexes_nodes_by_shard_id(balancer):
    nodes = balancer.shards()
    assert len(balancer.mem_list) == SHARD_COUNT
    assert all(node.shard is balancer.sharded_map.shards[i] for i, node in enumerate(nodes))


def test_set_pushes_to_front_of_shard_list(balancer):
    first, second = (_response(r) for r in _same_shard(2))
    node = balancer.set(first)
    balancer.set(second)
    assert node is balancer.shards()[first.shard_key]
    assert node.length == 2
    assert list(node.lru_list) == [second, first]
    assert first.lru_element.value is first


def test_update_moves_to_front(balancer):
    first, second = (_response(r) for r in _same_shard(2))
    node = balancer.set(first)
    balancer.set(second)
    balancer.update(first)
    assert list(node.lru_list) == [first, second]


def test_move_moves_element_to_front(balancer):
    first, second = (_response(r) for r in _same_shard(2))
    node = balancer.set(first)
    balancer.set(second)
    balancer.move(first.shard_key, first.lru_element)
    assert list(node.lru_list) == [first, second]


def test_remove_decrements_length(balancer):
    (resp,) = (_response(r) for r in _same_shard(1))
    node = balancer.set(resp)
    balancer.remove(resp.shard_key)
    assert node.length == 0


def test_rebalance_puts_most_loaded_first(balancer):
    groups = [reqs for reqs in _grouped_requests().values() if len(reqs) >= 3]
    heavy, light = groups[0][:3], groups[1][:1]
    for req in heavy + light:
        balancer.set(_response(req))
    balancer.rebalance()
    assert balancer.most_loaded_sampled(0) is balancer.shards()[heavy[0].shard_key]
    assert balancer.most_loaded_sampled(1) is balancer.shards()[light[0].shard_key]


def test_most_loaded_sampled_out_of_range(balancer):
    assert balancer.most_loaded_sampled(SHARD_COUNT) is None
    assert balancer.most_loaded_sampled(-1) is None


def test_weight_grows_with_entries(balancer):
    (resp,) = (_response(r) for r in _same_shard(1))
    node = balancer.shards()[resp.shard_key]
    before_total, before_node = balancer.weight(), node.weight()
    balancer.set(resp)
    assert node.weight() - before_node == PTR_BYTES_WEIGHT
    assert balancer.weight() - before_total == PTR_BYTES_WEIGHT


def test_run_rebalancer_sorts_until_stopped():
    smap = ShardedMap()
    stop = threading.Event()
    b = Balancer(stop, smap)
    for shard in smap.shards:
        b.register(shard)
    reqs = _same_shard(2)
    for req in reqs:
        b.set(_response(req))
    target = b.shards()[reqs[0].shard_key]
    thread = b.run_rebalancer()
    deadline = time.monotonic() + 5
    while b.most_loaded_sampled(0) is not target and time.monotonic() < deadline:
        time.sleep(0.01)
    stop.set()
    thread.join(timeout=5)
    assert b.most_loaded_sampled(0) is target
    assert not thread.is_alive()