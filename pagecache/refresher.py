"""Background probabilistic refreshing of cache entries."""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional, Protocol

from pagecache.balancer import Balancer, ShardNode
from pagecache.response import CacheConfig, Response
from pagecache.utils import ticker

logger = logging.getLogger(__name__)

SHARD_RATE_LIMIT = 16
SHARD_RATE_LIMIT_BURST = 8
REFRESH_RATE_LIMIT = 1000
REFRESH_RATE_LIMIT_BURST = 100
REFRESH_SAMPLES = 16

_NODE_TIMEOUT = 0.9
_LOG_INTERVAL = 5.0


class _Stoppable(Protocol):
    def is_set(self) -> bool: ...

    def wait(self, timeout: Optional[float] = None) -> bool: ...


class _Deadline:
    """Event-like view that is set when its parent is set or time runs out."""

    def __init__(self, parent: _Stoppable, timeout: float) -> None:
        self._parent = parent
        self._expires = time.monotonic() + timeout

    def is_set(self) -> bool:
        return self._parent.is_set() or time.monotonic() >= self._expires

    def wait(self, timeout: Optional[float] = None) -> bool:
        remaining = self._expires - time.monotonic()
        limit = remaining if timeout is None else min(timeout, remaining)
        if limit > 0:
            self._parent.wait(limit)
        return self.is_set()


class RateLimiter:
    """Token bucket allowing ``rate`` events per second with bursts of ``burst``."""

    def __init__(self, rate: float, burst: int) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self._rate = float(rate)
        self._burst = burst
        self._tokens = float(burst)
        self._last = time.monotonic()
        self._lock = threading.Lock()

    def wait(self, stop_event: Optional[_Stoppable] = None) -> bool:
        """Block until a token is available; False if ``stop_event`` fires first."""
        if stop_event is not None and stop_event.is_set():
            return False
        with self._lock:
            now = time.monotonic()
            self._tokens = min(self._burst, self._tokens + (now - self._last) * self._rate)
            self._last = now
            self._tokens -= 1
            delay = -self._tokens / self._rate if self._tokens < 0 else 0.0
        if delay <= 0:
            return True
        if stop_event is None:
            time.sleep(delay)
            return True
        if stop_event.wait(delay):
            with self._lock:
                self._tokens += 1
            return False
        return True


class Refresher:
    """Samples random shards and revalidates entries that are due."""

    def __init__(
        self, stop_event: threading.Event, config: CacheConfig, balancer: Balancer
    ) -> None:
        self.stop_event = stop_event
        self.config = config
        self.balancer = balancer
        self._shard_limiter = RateLimiter(SHARD_RATE_LIMIT, SHARD_RATE_LIMIT_BURST)
        self._refresh_limiter = RateLimiter(REFRESH_RATE_LIMIT, REFRESH_RATE_LIMIT_BURST)
        self._counts_lock = threading.Lock()
        self._succeeded = 0
        self._failed = 0

    def run_refresher(self) -> threading.Thread:
        """Start the background loop; it ends when the stop event is set."""
        thread = threading.Thread(target=self._loop, name="refresher", daemon=True)
        thread.start()
        return thread

    def _loop(self) -> None:
        if self.config.app_debug:
            self._run_logger()
        while self._shard_limiter.wait(self.stop_event):
            node = self.balancer.rand_shard_node()
            if node is not None:
                self.refresh_node(node)

    def refresh_node(self, node: ShardNode) -> int:
        """Start refreshes for up to :data:`REFRESH_SAMPLES` due entries of ``node``.

        Returns how many refreshes were started.
        """
        deadline = _Deadline(self.stop_event, _NODE_TIMEOUT)
        started = 0

        def visit(_key: int, response: Response) -> bool:
            nonlocal started
            if started >= REFRESH_SAMPLES:
                return False
            if response.should_be_refreshed():
                if deadline.is_set():
                    return False
                if not self._refresh_limiter.wait(deadline):
                    return False
                threading.Thread(
                    target=self._refresh_item, args=(response,), daemon=True
                ).start()
                started += 1
            return True

        node.shard.walk(deadline, visit, False)
        return started

    def _refresh_item(self, response: Response) -> None:
        try:
            response.revalidate()
        except Exception:  # a failed refresh keeps the old data
            if self.config.app_debug:
                with self._counts_lock:
                    self._failed += 1
            return
        if self.config.app_debug:
            with self._counts_lock:
                self._succeeded += 1

    def _run_logger(self) -> None:
        def loop() -> None:
            for _ in ticker(self.stop_event, _LOG_INTERVAL):
                if self.stop_event.is_set():
                    return
                with self._counts_lock:
                    succeeded, failed = self._succeeded, self._failed
                    self._succeeded = self._failed = 0
                logger.info("[refresher][5s] success %d, errors: %d", succeeded, failed)

        threading.Thread(target=loop, name="refresher-logger", daemon=True).start()