import gzip
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from pagecache.backend import Backend, BackendError
from pagecache.request import new_manual_request
from pagecache.response import CacheConfig

LARGE_BODY = b"a" * 4096


class _Handler(BaseHTTPRequestHandler):
    paths: list = []
    counter = 0

    def do_GET(self):  # noqa: N802
        type(self).paths.append(self.path)
        type(self).counter += 1
        if self.path.startswith("/missing"):
            body = b"not here"
            status = 404
        elif self.path.startswith("/large"):
            body = LARGE_BODY
            status = 200
        else:
            body = f"page {type(self).counter}".encode()
            status = 200
        self.send_response(status)
        self.send_header("X-Test", "one")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, *args):
        pass


@pytest.fixture
def server():
    _Handler.paths = []
    _Handler.counter = 0
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{httpd.server_address[1]}"
    httpd.shutdown()
    httpd.server_close()


def _request():
    return new_manual_request("p", "d", "l", ["t1"])


def test_fetch_requests_backend_url_with_query(server):
    backend = Backend(CacheConfig(backend_url=server + "/pagedata"))
    req = _request()
    resp = backend.fetch(req)
    assert _Handler.paths == ["/pagedata" + req.to_query().decode()]
    assert resp.data.status_code == 200
    assert resp.data.body == b"page 1"
    assert resp.data.headers["X-Test"] == ["one"]
    assert resp.request is req


def test_fetch_keeps_error_status(server):
    backend = Backend(CacheConfig(backend_url=server + "/missing"))
    resp = backend.fetch(_request())
    assert resp.data.status_code == 404
    assert resp.data.body == b"not here"


def test_large_body_is_gzipped(server):
    backend = Backend(CacheConfig(backend_url=server + "/large"))
    resp = backend.fetch(_request())
    assert resp.data.headers["Content-Encoding"] == ["gzip"]
    assert gzip.decompress(resp.data.body) == LARGE_BODY


def test_fetch_uses_config_refresh_parameters(server):
    config = CacheConfig(backend_url=server + "/pagedata", revalidate_beta=0.5)
    resp = Backend(config).fetch(_request())
    assert resp.beta == 50


def test_revalidator_fetches_fresh_data(server):
    backend = Backend(CacheConfig(backend_url=server + "/pagedata"))
    resp = backend.fetch(_request())
    resp.revalidate()
    assert resp.data.body == b"page 2"
    assert len(_Handler.paths) == 2
    assert _Handler.paths[0] == _Handler.paths[1]


def test_revalidator_maker_returns_data(server):
    backend = Backend(CacheConfig(backend_url=server + "/pagedata"))
    data = backend.revalidator_maker(_request())()
    assert data.body == b"page 1"
    assert data.status_code == 200


def test_unreachable_backend_raises():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    backend = Backend(CacheConfig(backend_url=f"http://127.0.0.1:{port}/x"), timeout=2)
    with pytest.raises(BackendError) as info:
        backend.fetch(_request())
    assert str(info.value).startswith("failed to request external backend: ")


def test_invalid_url_raises():
    backend = Backend(CacheConfig(backend_url="not-a-url"))
    with pytest.raises(BackendError):
        backend.fetch(_request())