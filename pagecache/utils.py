"""Small helpers: human-readable memory sizes and a stoppable ticker."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import datetime

_KB = 1024
_MB = _KB * 1024
_GB = _MB * 1024
_TB = _GB * 1024


def fmt_mem(num_bytes: int) -> str:
    """Format a byte count as the largest unit plus the next smaller one."""
    if num_bytes >= _TB:
        whole, rem = divmod(num_bytes, _TB)
        return f"{whole}TB {rem // _GB}GB"
    if num_bytes >= _GB:
        whole, rem = divmod(num_bytes, _GB)
        return f"{whole}GB {rem // _MB}MB"
    if num_bytes >= _MB:
        whole, rem = divmod(num_bytes, _MB)
        return f"{whole}MB {rem // _KB}KB"
    if num_bytes >= _KB:
        whole, rem = divmod(num_bytes, _KB)
        return f"{whole}KB {rem}B"
    return f"{num_bytes}B"


def ticker(stop_event: threading.Event, interval: float) -> Iterator[datetime]:
    """Yield the current time at once, then every ``interval`` seconds until stopped.

    The first tick is delivered immediately even if ``stop_event`` is already set.
    """
    if interval <= 0:
        raise ValueError("non-positive interval for ticker")
    return _ticks(stop_event, interval)


def _ticks(stop_event: threading.Event, interval: float) -> Iterator[datetime]:
    yield datetime.now()
    while not stop_event.wait(interval):
        yield datetime.now()