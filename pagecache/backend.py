"""Fetching page data from the upstream backend."""

from __future__ import annotations

import http.client
import urllib.error
import urllib.request
from email.message import Message
from urllib.parse import quote

from pagecache.request import Request
from pagecache.response import (
    CacheConfig,
    Data,
    Headers,
    Response,
    Revalidator,
    new_data,
    new_response,
)

REQUEST_TIMEOUT = 10.0

# Characters left as they are when the backend URL is assembled.
_URL_SAFE = "!#$%&'()*+,/:;=?@[]~"


class BackendError(Exception):
    """Raised when the backend cannot be asked or its answer cannot be used."""


def _canonical_header_key(key: str) -> str:
    return "-".join(part.capitalize() for part in key.split("-"))


def _collect_headers(message: Message) -> Headers:
    headers: Headers = {}
    for key, value in message.items():
        headers.setdefault(_canonical_header_key(key), []).append(value)
    return headers


class Backend:
    """Asks the configured backend for page data and builds cache entries."""

    def __init__(self, config: CacheConfig, timeout: float = REQUEST_TIMEOUT) -> None:
        self.config = config
        self.timeout = timeout

    def fetch(self, request: Request) -> Response:
        """Fetch data for ``request`` and wrap it in a cache entry with a revalidator.

        Raises BackendError if the backend cannot be reached.
        """
        try:
            data = self._request_external_backend(request)
        except (OSError, ValueError, http.client.HTTPException) as exc:
            raise BackendError(f"failed to request external backend: {exc}") from exc
        return new_response(data, request, self.config, self.revalidator_maker(request))

    def revalidator_maker(self, request: Request) -> Revalidator:
        """A callable that fetches fresh data for ``request`` when invoked."""

        def revalidate() -> Data:
            return self._request_external_backend(request)

        return revalidate

    def _build_url(self, request: Request) -> str:
        raw = self.config.backend_url.encode() + request.to_query()
        return quote(raw, safe=_URL_SAFE)

    def _request_external_backend(self, request: Request) -> Data:
        http_request = urllib.request.Request(self._build_url(request), method="GET")
        try:
            with urllib.request.urlopen(http_request, timeout=self.timeout) as response:
                status = response.status
                headers = _collect_headers(response.headers)
                body = response.read()
        except urllib.error.HTTPError as exc:
            # Non-2xx answers are data too: they are cached like any other.
            try:
                status = exc.code
                headers = _collect_headers(exc.headers) if exc.headers is not None else {}
                body = exc.read() if exc.fp is not None else b""
            finally:
                exc.close()
        return new_data(status, headers, body)