# pagecache

A memory-aware cache for HTTP page data. Entries are keyed by the project, domain, language and
choice tags of a request, spread over 32 shards, evicted least-recently-used first once their
estimated memory use reaches a threshold, and refreshed from the backend in background threads.
It uses only the standard library.

## What is inside

- `pagecache.request` – `Request`, built with `new_manual_request` or from query arguments
  (a query string, a mapping or pairs) with `new_request`. It hashes its fields into a 64-bit
  `key`, picks its `shard_key` and builds the query string sent to the backend
  (`Request.to_query`). `extract_tags` collects `choice…` arguments other than `null`, at most ten.
  A missing project, domain or language raises `ValueError`.
- `pagecache.response` – `Data` (status, headers, body; `new_data` gzip-compresses bodies over
  1024 bytes and sets `Content-Encoding: gzip`) and `Response`, the cached entry with reference
  counting, a "doomed" flag, a probabilistic `should_be_refreshed` check and `revalidate`.
  `new_response` takes its refresh parameters from a `CacheConfig`. `Response.marshal_binary` and
  `unmarshal_binary` give a compact little-endian, length-prefixed binary form.
- `pagecache.sharded` – `ShardedMap`, `Shard` and `Releaser`: a concurrent sharded map whose
  removed values are released once the last holder lets go. A `Releaser` also works as a context
  manager.
- `pagecache.linked_list` – `LinkedList`, a thread-safe doubly linked list with stable `Element`
  handles, moving to front, walking in either `Direction`, and sorting by value weight (`Order`).
- `pagecache.balancer` – `Balancer` and `ShardNode`: per-shard LRU lists and the choice of the
  most loaded shard to evict from.
- `pagecache.refresher` – `Refresher` with a token-bucket `RateLimiter`: samples random shards and
  revalidates entries that are due.
- `pagecache.lru` – `LruStorage`: `get`, `set`, `evict_until_within_limit`, and writing to or
  reading from a gzip-compressed `cache.dump` file (`dump_to_dir`, `load_from_dir`; errors raise
  `DumpError`). On construction it loads a dump from its dump directory (`public/dump` by default)
  if there is one and starts the refresher and evictor; `stop` writes the dump back.
- `pagecache.storage` – `new_storage` builds the storage for the configured `Algorithm`; only
  `LRU` is supported, others raise `ValueError`.
- `pagecache.backend` – `Backend`: fetches page data over HTTP with `urllib`, caches non-2xx
  answers too, and makes revalidators. Unreachable backends raise `BackendError`.
- `pagecache.server` – `HttpServer`, a threaded HTTP server with a `Router` (exact method and
  path, 404/405 otherwise), a `RequestContext` per request, `merge_middlewares`, and the helpers
  `extract_ctx`, `write` and `write_string`. Settings live in `ServerConfig`.
- `pagecache.middleware` – middlewares for JSON content type (`ApplicationJsonMiddleware`),
  a `Server-Timing` header (`DurationMiddleware`), request IDs (`ForwardIDsMiddleware`),
  per-request deadlines (`InitCtxMiddleware`) and an `X-Server-Name` header
  (`WatermarkMiddleware`).
- `pagecache.shutdown` – `Graceful`: waits for SIGINT, SIGTERM or a stop event, then for all
  counted workers, raising `GracefulTimeoutError` if they do not finish in time.
- `pagecache.status` – `validate_status_code` for HTTP status strings (100–599), raising
  `StatusCodeError` otherwise.
- `pagecache.utils` – `fmt_mem` for human-readable sizes and `ticker` for periodic ticks.

## Examples

Formatting sizes:

```python
from pagecache.utils import fmt_mem

fmt_mem(512)          # "512B"
fmt_mem(1536)         # "1KB 512B"
```

Checking a status string:

```python
from pagecache.status import StatusCodeError, validate_status_code

validate_status_code("200")   # 200
try:
    validate_status_code("700")
except StatusCodeError as exc:
    print(exc)
```

Building a cache request:

```python
from pagecache.request import new_manual_request, new_request

request = new_manual_request(b"285", b"example.com", b"en", [b"sport"])
print(request.to_query())
# b'?project[id]=285&domain=example.com&language=en&choice[name]=sport&choice[choice]=null'

same = new_request("project[id]=285&domain=example.com&language=en&choice=sport")
assert same.key == request.key
```

Caching an entry:

```python
import threading

from pagecache.backend import Backend
from pagecache.balancer import Balancer
from pagecache.refresher import Refresher
from pagecache.response import CacheConfig, new_data, new_response
from pagecache.sharded import ShardedMap
from pagecache.storage import new_storage

stop = threading.Event()
config = CacheConfig(backend_url="http://localhost:8080/pagedata")
sharded_map = ShardedMap()
balancer = Balancer(stop, sharded_map)
backend = Backend(config)
storage = new_storage(stop, config, balancer, Refresher(stop, config, balancer), backend, sharded_map)

response = new_response(new_data(200, {}, b"{}"), request, config, backend.revalidator_maker(request))
with storage.set(response):
    pass

found = storage.get(request)
if found is not None:
    entry, releaser = found
    with releaser:
        print(entry.data.body)
stop.set()
```

## What it does not do

- There is no command-line program; the pieces are meant to be wired together in your own code.
- No HTTP handler serves cached pages: `HttpServer` only routes to the controllers you give it,
  and the package ships no controller that reads from or fills the cache.
- There are no metrics: no counters, histograms or metrics endpoint.
- `LruStorage.used_mem` counts only the estimated weight of stored entries and their list
  pointers, not the memory of the Python process.

## Tests

The test suite uses pytest; install the `test` extra to get it.