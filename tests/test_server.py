import threading
import urllib.error
import urllib.request

import pytest

from pagecache.server import (
    CTX_KEY,
    WRITE_RESPONSE_MSG,
    ContextNotFoundError,
    HttpServer,
    RequestContext,
    Router,
    ServerConfig,
    extract_ctx,
    merge_middlewares,
    write,
    write_string,
)


def test_server_config_defaults():
    cfg = ServerConfig()
    assert cfg.port == ":8020"
    assert cfg.shutdown_timeout == 5.0
    assert cfg.request_timeout == 60.0


def test_extract_ctx_missing_raises():
    with pytest.raises(ContextNotFoundError):
        extract_ctx(RequestContext())


def test_extract_ctx_rejects_non_mapping():
    ctx = RequestContext()
    ctx.user_values[CTX_KEY] = "not a context"
    with pytest.raises(ContextNotFoundError):
        extract_ctx(ctx)


def test_extract_ctx_returns_stored_mapping():
    ctx = RequestContext()
    stored = {"a": 1}
    ctx.user_values[CTX_KEY] = stored
    assert extract_ctx(ctx) is stored


def test_write_and_write_string_append_body():
    ctx = RequestContext()
    assert write(b"abc", ctx) == 3
    assert write_string("déf", ctx) == len("déf".encode())
    assert ctx.body == b"abc" + "déf".encode()


def test_write_after_finish_raises_oserror():
    ctx = RequestContext()
    ctx.finish()
    with pytest.raises(OSError, match=WRITE_RESPONSE_MSG):
        write(b"x", ctx)
    with pytest.raises(OSError, match=WRITE_RESPONSE_MSG):
        write_string("x", ctx)


def test_request_header_is_case_insensitive():
    ctx = RequestContext(headers={"X-Request-ID": "abc"})
    assert ctx.request_header("x-request-id") == "abc"
    assert ctx.request_header("missing") == ""


def test_set_header_replaces_and_add_header_keeps():
    ctx = RequestContext()
    ctx.add_header("X-A", "1")
    ctx.add_header("x-a", "2")
    assert ctx.response_header_values("X-A") == ["1", "2"]
    ctx.set_header("X-A", "3")
    assert ctx.response_header_values("x-a") == ["3"]


def test_merge_middlewares_first_is_outermost():
    calls = []

    class Recorder:
        def __init__(self, name):
            self.name = name

        def middleware(self, next_handler):
            def handler(ctx):
                calls.append(self.name)
                next_handler(ctx)

            return handler

    handler = merge_middlewares(lambda ctx: calls.append("handler"), [Recorder("a"), Recorder("b")])
    handler(RequestContext())
    assert calls == ["a", "b", "handler"]


def test_router_dispatches_by_method_and_path():
    router = Router()
    router.add("get", "/x", lambda ctx: write_string("hit", ctx))
    ctx = RequestContext("GET", "/x")
    router.handle(ctx)
    assert ctx.body == b"hit"
    assert ctx.status_code == 200


def test_router_not_found_and_method_not_allowed():
    router = Router()
    router.add("GET", "/x", lambda ctx: None)
    missing = RequestContext("GET", "/y")
    router.handle(missing)
    assert missing.status_code == 404

    wrong = RequestContext("POST", "/x")
    router.handle(wrong)
    assert wrong.status_code == 405
    assert wrong.response_header_values("Allow") == ["GET"]


def test_http_server_handle_uses_controllers_and_middlewares():
    class Controller:
        def add_route(self, router):
            router.add("GET", "/c", lambda ctx: write_string("ok", ctx))

    class Tag:
        def middleware(self, next_handler):
            def handler(ctx):
                ctx.add_header("X-Tag", "yes")
                next_handler(ctx)

            return handler

    server = HttpServer(threading.Event(), ServerConfig(), [Controller()], [Tag()])
    ctx = RequestContext("GET", "/c")
    server.handle(ctx)
    assert ctx.body == b"ok"
    assert ctx.response_header_values("X-Tag") == ["yes"]


def test_listen_and_serve_end_to_end():
    stop = threading.Event()

    class Ping:
        def add_route(self, router):
            router.add("GET", "/ping", lambda ctx: write_string("pong", ctx))

    class Tag:
        def middleware(self, next_handler):
            def handler(ctx):
                ctx.add_header("X-Tag", "yes")
                next_handler(ctx)

            return handler

    server = HttpServer(
        stop, ServerConfig(port="127.0.0.1:0", shutdown_timeout=2.0), [Ping()], [Tag()]
    )
    thread = threading.Thread(target=server.listen_and_serve, daemon=True)
    thread.start()
    assert server.ready.wait(5)
    opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
    base = f"http://127.0.0.1:{server.bound_port}"
    try:
        with opener.open(base + "/ping", timeout=5) as resp:
            status = resp.status
            body = resp.read()
            tag = resp.headers["X-Tag"]
        with pytest.raises(urllib.error.HTTPError) as info:
            opener.open(base + "/missing", timeout=5)
        missing_code = info.value.code
        info.value.close()
    finally:
        stop.set()
        thread.join(5)
    assert status == 200
    assert body == b"pong"
    assert tag == "yes"
    assert missing_code == 404
    assert not thread.is_alive()