"""A small threaded HTTP server with routing and middleware chains."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional, Protocol
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

# Keys of values kept in RequestContext.user_values and in the request context mapping.
CTX_KEY = "requestCtx"
CTX_CANCEL_KEY = "requestCtxCancel"
REQ_ID = "reqID"
REQ_GUID = "reqGUID"

WRITE_RESPONSE_MSG = "error occurred while writing data into the request context"
DEFAULT_CONTENT_TYPE = "text/plain; charset=utf-8"

Handler = Callable[["RequestContext"], None]


@dataclass
class ServerConfig:
    """Server settings. Timeouts are in seconds; ``port`` is ``[host]:port``."""

    name: str = "pagecache"
    port: str = ":8020"
    shutdown_timeout: float = 5.0
    request_timeout: float = 60.0


class ContextNotFoundError(LookupError):
    """Raised when a request carries no request context."""

    def __init__(self) -> None:
        super().__init__("request context was not found in the request")


class _Controller(Protocol):
    def add_route(self, router: "Router") -> None: ...


class _Middleware(Protocol):
    def middleware(self, next_handler: Handler) -> Handler: ...


class RequestContext:
    """One request being served: what came in and the response being built."""

    def __init__(
        self,
        method: str = "GET",
        path: str = "/",
        query: str = "",
        headers: Optional[Mapping[str, str]] = None,
        body: bytes = b"",
        remote_addr: str = "",
    ) -> None:
        self.method = method.upper()
        self.path = path
        self.query = query
        self.request_headers = {k.lower(): v for k, v in (headers or {}).items()}
        self.request_body = bytes(body)
        self.remote_addr = remote_addr
        self.status_code = 200
        self.content_type = DEFAULT_CONTENT_TYPE
        self.response_headers: list[tuple[str, str]] = []
        self.user_values: dict[str, Any] = {}
        self._body = bytearray()
        self._finished = False

    def request_header(self, name: str) -> str:
        """Value of a request header, or an empty string."""
        return self.request_headers.get(name.lower(), "")

    def add_header(self, name: str, value: str) -> None:
        """Add a response header, keeping earlier values of the same name."""
        self.response_headers.append((name, value))

    def set_header(self, name: str, value: str) -> None:
        """Set a response header, replacing earlier values of the same name."""
        lowered = name.lower()
        self.response_headers = [
            (k, v) for k, v in self.response_headers if k.lower() != lowered
        ]
        self.response_headers.append((name, value))

    def response_header_values(self, name: str) -> list[str]:
        """All values of a response header, in the order they were added."""
        lowered = name.lower()
        return [v for k, v in self.response_headers if k.lower() == lowered]

    @property
    def body(self) -> bytes:
        """The response body written so far."""
        return bytes(self._body)

    def write(self, data: bytes) -> int:
        """Append to the response body. Raises ValueError once the response is sent."""
        if self._finished:
            raise ValueError("response already sent")
        self._body += data
        return len(data)

    def error(self, message: str, status_code: int) -> None:
        """Replace the response with a plain-text error."""
        self._body = bytearray(message.encode())
        self.status_code = status_code
        self.content_type = DEFAULT_CONTENT_TYPE

    def finish(self) -> None:
        """Mark the response as sent; later writes fail."""
        self._finished = True


def extract_ctx(ctx: RequestContext) -> Mapping[str, Any]:
    """The request context stored in ``ctx``. Raises ContextNotFoundError."""
    value = ctx.user_values.get(CTX_KEY)
    if isinstance(value, Mapping):
        return value
    raise ContextNotFoundError()


def write(data: bytes, ctx: RequestContext) -> int:
    """Write ``data`` to the response; OSError on failure."""
    try:
        return ctx.write(bytes(data))
    except (ValueError, TypeError) as exc:
        raise OSError(f"{WRITE_RESPONSE_MSG} ({exc})") from exc


def write_string(text: str, ctx: RequestContext) -> int:
    """Write ``text`` (UTF-8) to the response; OSError on failure."""
    try:
        return ctx.write(text.encode())
    except (ValueError, TypeError, AttributeError) as exc:
        raise OSError(f"{WRITE_RESPONSE_MSG} ({exc})") from exc


def merge_middlewares(handler: Handler, middlewares: Sequence[_Middleware]) -> Handler:
    """Wrap ``handler`` so that the first middleware runs outermost."""
    for mw in reversed(middlewares):
        handler = mw.middleware(handler)
    return handler


class Router:
    """Dispatches requests by exact method and path."""

    def __init__(self) -> None:
        self._routes: dict[str, dict[str, Handler]] = {}

    def add(self, method: str, path: str, handler: Handler) -> None:
        """Register ``handler`` for ``method`` on ``path``."""
        self._routes.setdefault(path, {})[method.upper()] = handler

    def handle(self, ctx: RequestContext) -> None:
        """Run the matching handler; answer 404 or 405 when there is none."""
        by_method = self._routes.get(ctx.path)
        if not by_method:
            ctx.error("Not Found", 404)
            return
        handler = by_method.get(ctx.method)
        if handler is None:
            ctx.set_header("Allow", ", ".join(sorted(by_method)))
            ctx.error("Method Not Allowed", 405)
            return
        handler(ctx)


def _parse_address(port: str) -> tuple[str, int]:
    host, _, number = port.rpartition(":")
    return host, int(number)


def _make_handler_class(server: "HttpServer") -> type[BaseHTTPRequestHandler]:
    class _Handler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def _serve(self) -> None:
            parts = urlsplit(self.path)
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length) if length > 0 else b""
            ctx = RequestContext(
                self.command,
                parts.path or "/",
                parts.query,
                dict(self.headers.items()),
                body,
                self.client_address[0],
            )
            try:
                server.handle(ctx)
            except Exception:
                logger.exception("[http] handler failed for %s %s", ctx.method, ctx.path)
                ctx.error("Internal Server Error", 500)
            ctx.finish()
            payload = ctx.body
            self.send_response(ctx.status_code)
            self.send_header("Content-Type", ctx.content_type)
            for name, value in ctx.response_headers:
                self.send_header(name, value)
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            if self.command != "HEAD":
                self.wfile.write(payload)

        do_GET = do_POST = do_PUT = do_DELETE = _serve
        do_PATCH = do_HEAD = do_OPTIONS = _serve

        def log_message(self, format: str, *args: Any) -> None:
            logger.debug("[http] " + format, *args)

    return _Handler


class HttpServer:
    """Serves routes of the given controllers behind a middleware chain."""

    def __init__(
        self,
        stop_event: threading.Event,
        config: ServerConfig,
        controllers: Iterable[_Controller] = (),
        middlewares: Iterable[_Middleware] = (),
    ) -> None:
        self.stop_event = stop_event
        self.config = config
        self.router = Router()
        for controller in controllers:
            controller.add_route(self.router)
        self._handler = merge_middlewares(self.router.handle, list(middlewares))
        self.ready = threading.Event()
        self.bound_port: Optional[int] = None
        self._httpd: Optional[ThreadingHTTPServer] = None
        self._httpd_lock = threading.Lock()

    def handle(self, ctx: RequestContext) -> None:
        """Run one request through the middlewares and the router."""
        self._handler(ctx)

    def listen_and_serve(self) -> None:
        """Serve until the stop event is set, then shut down. Blocks."""
        name, port = self.config.name, self.config.port
        try:
            httpd = ThreadingHTTPServer(_parse_address(port), _make_handler_class(self))
        except (OSError, ValueError) as exc:
            logger.error("[http] %s failed to listen and serve port %s: %s", name, port, exc)
            return
        httpd.daemon_threads = True
        with self._httpd_lock:
            self._httpd = httpd
        self.bound_port = httpd.server_address[1]

        serving = threading.Thread(target=httpd.serve_forever, name=f"{name}-serve", daemon=True)
        serving.start()
        logger.info("[http] %s was started (port: %s)", name, port)
        self.ready.set()
        try:
            while not self.stop_event.wait(0.2):
                pass
        finally:
            self.shutdown()
            serving.join(self.config.shutdown_timeout)
            logger.info("[http] %s was stopped (port: %s)", name, port)

    def shutdown(self) -> None:
        """Stop serving, waiting at most the configured shutdown timeout."""
        with self._httpd_lock:
            httpd, self._httpd = self._httpd, None
        if httpd is None:
            return
        closer = threading.Thread(target=httpd.shutdown, daemon=True)
        closer.start()
        closer.join(self.config.shutdown_timeout)
        if closer.is_alive():
            logger.warning("[http] %s shutdown failed: timed out", self.config.name)
        httpd.server_close()