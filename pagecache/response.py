"""Cached responses: payload, metadata, probabilistic refresh and binary form."""

from __future__ import annotations

import gzip
import math
import random
import struct
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Optional

from pagecache.linked_list import Element
from pagecache.request import Request

# Bodies larger than this are stored gzip-compressed.
_GZIP_THRESHOLD = 1024
_MAX_TAGS_ON_LOAD = 10
_MAX_TAGS_ON_WIRE = 255

# Approximate sizes of fixed struct parts used in weight estimates.
_DATA_STRUCT_SIZE = 64
_RESPONSE_STRUCT_SIZE = 96
_REQUEST_STRUCT_SIZE = 144

_NANOS_PER_SECOND = 1_000_000_000
_STATUS_OK = 200

Headers = dict[str, list[str]]
Revalidator = Callable[[], "Data"]
RevalidatorMaker = Callable[[Request], Revalidator]


def _canonical_header_key(key: str) -> str:
    return "-".join(part.capitalize() for part in key.split("-"))


def _seconds_to_nanos(seconds: float) -> int:
    return int(seconds * _NANOS_PER_SECOND)


@dataclass
class CacheConfig:
    """Cache settings. Durations are in seconds, the memory limit in bytes."""

    backend_url: str = ""
    revalidate_beta: float = 0.4
    revalidate_interval: float = 1800.0
    refresh_duration_threshold: float = 0.0
    init_storage_length_per_shard: int = 256
    eviction_algo: str = "LRU"
    memory_fill_threshold: float = 0.97
    memory_limit: int = 256 * 1024 * 1024
    app_env: str = "prod"
    app_debug: bool = False


@dataclass
class Data:
    """The stored payload: status code, headers and (possibly gzipped) body."""

    status_code: int
    headers: Headers = field(default_factory=dict)
    body: bytes = b""

    def weight(self) -> int:
        """Approximate memory taken by the payload."""
        return _DATA_STRUCT_SIZE + len(self.body)


def new_data(
    status_code: int, headers: Optional[Mapping[str, Sequence[str]]], body: bytes
) -> Data:
    """Build a payload, gzip-compressing bodies above the threshold.

    A compressed body gets a ``Content-Encoding: gzip`` header.
    """
    hdrs: Headers = {key: list(values) for key, values in (headers or {}).items()}
    body = bytes(body)
    if len(body) > _GZIP_THRESHOLD:
        body = gzip.compress(body, compresslevel=1)
        hdrs[_canonical_header_key("Content-Encoding")] = ["gzip"]
    return Data(status_code, hdrs, body)


class Response:
    """A cache entry: request, payload, refresh parameters and reference count.

    ``beta`` is a percentage; intervals and timestamps are in nanoseconds.
    """

    def __init__(
        self,
        data: Data,
        request: Request,
        revalidator: Revalidator,
        *,
        beta: int,
        revalidate_interval: int,
        min_stale_duration: int,
    ) -> None:
        self._lock = threading.Lock()
        self.data = data
        self.request = request
        self.revalidator = revalidator
        self.beta = int(beta)
        self.revalidate_interval = int(revalidate_interval)
        self.min_stale_duration = int(min_stale_duration)
        self.revalidated_at = time.time_ns()
        self.lru_element: Optional[Element] = None
        self._ref_count = 0
        self._doomed = False
        self._weight = self._compute_weight()

    @property
    def key(self) -> int:
        return self.request.key

    @property
    def shard_key(self) -> int:
        return self.request.shard_key

    def to_query(self) -> bytes:
        """The backend query of the associated request."""
        return self.request.to_query()

    def touch(self) -> "Response":
        """Mark the entry as just revalidated."""
        with self._lock:
            self.revalidated_at = time.time_ns()
        return self

    def is_doomed(self) -> bool:
        with self._lock:
            return self._doomed

    def mark_as_doomed(self) -> bool:
        """Mark for deletion; True only for the call that set the mark."""
        with self._lock:
            if self._doomed:
                return False
            self._doomed = True
            return True

    def ref_count(self) -> int:
        with self._lock:
            return self._ref_count

    def inc_ref_count(self) -> int:
        with self._lock:
            self._ref_count += 1
            return self._ref_count

    def dec_ref_count(self) -> int:
        with self._lock:
            self._ref_count -= 1
            return self._ref_count

    def cas_ref_count(self, old: int, new: int) -> bool:
        with self._lock:
            if self._ref_count != old:
                return False
            self._ref_count = new
            return True

    def store_ref_count(self, value: int) -> None:
        with self._lock:
            self._ref_count = value

    def should_be_refreshed(self) -> bool:
        """Decide probabilistically whether the entry is due for a refresh.

        Entries younger than the minimal stale duration are never refreshed;
        older ones are with a probability growing with their age. Non-200
        entries use a tenth of both durations.
        """
        with self._lock:
            if self._doomed:
                return False
            beta = self.beta
            interval = self.revalidate_interval
            min_stale = self.min_stale_duration
            revalidated_at = self.revalidated_at
            status = self.data.status_code

        if status != _STATUS_OK:
            interval //= 10
            min_stale //= 10

        age = time.time_ns() - revalidated_at
        if age <= min_stale:
            return False
        ratio = age / interval if interval else math.inf
        exponent = (-beta / 100) * ratio
        return random.random() >= math.exp(exponent)

    def revalidate(self) -> None:
        """Fetch fresh data via the revalidator; its errors propagate."""
        data = self.revalidator()
        with self._lock:
            self.data = data
            self.revalidated_at = time.time_ns()

    def weight(self) -> int:
        """Approximate memory taken by the entry, computed when it was set up."""
        return self._weight

    def _compute_weight(self) -> int:
        size = _RESPONSE_STRUCT_SIZE
        data = self.data
        if data is not None:
            for key, values in data.headers.items():
                size += len(key) + sum(len(v) for v in values)
            size += len(data.body)
        req = self.request
        if req is not None:
            size += _REQUEST_STRUCT_SIZE
            size += len(req.project) + len(req.domain) + len(req.language)
            size += sum(len(tag) for tag in req.tags)
        return size

    def release(self) -> bool:
        """Detach the entry from its LRU list."""
        element = self.lru_element
        if element is not None and element.list is not None:
            element.list.remove(element)
        self.lru_element = None
        return True

    def marshal_binary(self) -> bytes:
        """Serialize request, payload and metadata in little-endian, length-prefixed form."""
        req = self.request
        if len(req.tags) > _MAX_TAGS_ON_WIRE:
            raise ValueError(f"too many tags to serialize: {len(req.tags)}")
        out = bytearray()
        for part in (req.project, req.domain, req.language):
            _write_bytes(out, part)
        out += struct.pack("<B", len(req.tags))
        for tag in req.tags:
            _write_bytes(out, tag)
        out += struct.pack("<QQ", req.key, req.shard_key)

        with self._lock:
            data = self.data
            meta = (
                self.beta,
                self.min_stale_duration,
                self.revalidate_interval,
                self.revalidated_at,
            )
        out += struct.pack("<i", data.status_code)
        out += struct.pack("<I", len(data.headers))
        for key, values in data.headers.items():
            _write_bytes(out, key.encode())
            out += struct.pack("<I", len(values))
            for value in values:
                _write_bytes(out, value.encode())
        _write_bytes(out, data.body)
        out += struct.pack("<4q", *meta)
        return bytes(out)


def _write_bytes(out: bytearray, value: bytes) -> None:
    out += struct.pack("<I", len(value))
    out += value


class _Reader:
    def __init__(self, payload: bytes) -> None:
        self._view = memoryview(payload)
        self._pos = 0

    def take(self, n: int) -> bytes:
        end = self._pos + n
        if end > len(self._view):
            raise ValueError("unexpected end of serialized response")
        chunk = bytes(self._view[self._pos:end])
        self._pos = end
        return chunk

    def unpack(self, fmt: str) -> tuple:
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))

    def read_bytes(self) -> bytes:
        (length,) = self.unpack("<I")
        return self.take(length)

    def read_headers(self) -> Headers:
        (count,) = self.unpack("<I")
        headers: Headers = {}
        for _ in range(count):
            key = _canonical_header_key(self.read_bytes().decode())
            (values_count,) = self.unpack("<I")
            for _ in range(values_count):
                headers.setdefault(key, []).append(self.read_bytes().decode())
        return headers


def unmarshal_binary(payload: bytes, revalidator_maker: RevalidatorMaker) -> Response:
    """Rebuild a response from :meth:`Response.marshal_binary` output.

    The request key is recomputed and the entry counts as just revalidated.
    Raises ValueError on truncated or malformed input.
    """
    reader = _Reader(payload)
    project = reader.read_bytes()
    domain = reader.read_bytes()
    language = reader.read_bytes()
    (tags_count,) = reader.unpack("<B")
    if tags_count > _MAX_TAGS_ON_LOAD:
        raise ValueError(f"too many tags: {tags_count} (at most {_MAX_TAGS_ON_LOAD})")
    tags = tuple(reader.read_bytes() for _ in range(tags_count))
    reader.unpack("<QQ")  # stored key and shard key; recomputed from the fields
    (status_code,) = reader.unpack("<i")
    headers = reader.read_headers()
    body = reader.read_bytes()
    beta, min_stale, interval, _revalidated_at = reader.unpack("<4q")

    request = Request(project, domain, language, tags)
    return Response(
        Data(status_code, headers, body),
        request,
        revalidator_maker(request),
        beta=beta,
        revalidate_interval=interval,
        min_stale_duration=min_stale,
    )


def new_response(
    data: Data, request: Request, config: CacheConfig, revalidator: Revalidator
) -> Response:
    """Build a cache entry with refresh parameters taken from ``config``."""
    return Response(
        data,
        request,
        revalidator,
        beta=int(config.revalidate_beta * 100),
        revalidate_interval=_seconds_to_nanos(config.revalidate_interval),
        min_stale_duration=_seconds_to_nanos(config.refresh_duration_threshold),
    )