"""Request middlewares: content type, timing, request ids, request context, watermark."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import ChainMap
from collections.abc import Mapping

from pagecache.server import (
    CTX_CANCEL_KEY,
    CTX_KEY,
    REQ_GUID,
    REQ_ID,
    Handler,
    RequestContext,
    ServerConfig,
)

logger = logging.getLogger(__name__)

X_REQUEST_ID_HEADER = "X-Request-ID"
X_REQUEST_GUID_HEADER = "X-Request-GUID"

# Keys of the request context built by InitCtxMiddleware.
CTX_DEADLINE_KEY = "deadline"  # time.monotonic() value after which the request times out
CTX_DONE_KEY = "done"  # threading.Event set when the request is finished
CTX_PARENT_KEY = "parent"  # the server-wide stop event


class ApplicationJsonMiddleware:
    """Sets the response content type to JSON."""

    def middleware(self, next_handler: Handler) -> Handler:
        def handler(ctx: RequestContext) -> None:
            ctx.content_type = "application/json"
            next_handler(ctx)

        return handler


class DurationMiddleware:
    """Adds a ``Server-Timing`` header with the handling time in milliseconds."""

    def __init__(self, stop_event: threading.Event, config: ServerConfig) -> None:
        self.stop_event = stop_event
        self.config = config

    def middleware(self, next_handler: Handler) -> Handler:
        def handler(ctx: RequestContext) -> None:
            started = time.monotonic()
            next_handler(ctx)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            ctx.add_header("Server-Timing", f"p;dur={elapsed_ms}")

        return handler


class ForwardIDsMiddleware:
    """Forwards or generates request ids into the request context and response."""

    def __init__(self, stop_event: threading.Event, config: ServerConfig) -> None:
        self.stop_event = stop_event
        self.config = config

    def middleware(self, next_handler: Handler) -> Handler:
        def handler(ctx: RequestContext) -> None:
            request_id = ctx.request_header(X_REQUEST_ID_HEADER) or str(uuid.uuid4())
            request_guid = ctx.request_header(X_REQUEST_GUID_HEADER) or str(uuid.uuid4())

            request_ctx = ctx.user_values.get(CTX_KEY)
            if not isinstance(request_ctx, Mapping):
                logger.warning(
                    "[http] request context does not exist in the request "
                    "(unable to forward x-request-id and x-request-guid)"
                )
                next_handler(ctx)
                return

            ctx.user_values[CTX_KEY] = ChainMap(
                {REQ_ID: request_id, REQ_GUID: request_guid}, request_ctx
            )
            ctx.add_header(X_REQUEST_ID_HEADER, request_id)
            ctx.add_header(X_REQUEST_GUID_HEADER, request_guid)
            next_handler(ctx)

        return handler


class InitCtxMiddleware:
    """Puts a request context with a deadline and a cancel function into the request."""

    def __init__(self, stop_event: threading.Event, config: ServerConfig) -> None:
        self.stop_event = stop_event
        self.config = config

    def middleware(self, next_handler: Handler) -> Handler:
        def handler(ctx: RequestContext) -> None:
            done = threading.Event()
            request_ctx = ChainMap(
                {
                    CTX_DEADLINE_KEY: time.monotonic() + self.config.request_timeout,
                    CTX_DONE_KEY: done,
                    CTX_PARENT_KEY: self.stop_event,
                }
            )
            ctx.user_values[CTX_KEY] = request_ctx
            ctx.user_values[CTX_CANCEL_KEY] = done.set
            try:
                next_handler(ctx)
            finally:
                done.set()

        return handler


class WatermarkMiddleware:
    """Adds an ``X-Server-Name`` header with the configured server name."""

    def __init__(self, stop_event: threading.Event, config: ServerConfig) -> None:
        self.stop_event = stop_event
        self.config = config

    def middleware(self, next_handler: Handler) -> Handler:
        def handler(ctx: RequestContext) -> None:
            ctx.add_header("X-Server-Name", self.config.name)
            next_handler(ctx)

        return handler