import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from egress import fetch_upstream
from egress.fetch_delegate import FetchDescriptor


class EchoHandler(BaseHTTPRequestHandler):
    protocol_version = 'HTTP/1.1'

    def do_GET(self):
        self.reply()

    def do_POST(self):
        self.reply()

    def reply(self):
        length = int(self.headers.get('Content-Length', 0))
        body = json.dumps({
            'method': self.command,
            'path': self.path,
            'headers': dict(self.headers.items()),
            'body': self.rfile.read(length).decode(),
        }).encode()
        self.send_response(203)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def echo_origin():
    server = ThreadingHTTPServer(('127.0.0.1', 0), EchoHandler)
    threading.Thread(target=server.serve_forever, daemon=True).start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


def test_get(echo_origin):
    status, headers, body = fetch_upstream.fetch(
        FetchDescriptor(1, 'GET', f"{echo_origin}/echo?x=1", [(b'Accept', b'application/json')]),
        timeout=5,
    )
    echoed = json.loads(body)

    assert status == 203
    assert (b'Content-Type', b'application/json') in headers
    assert echoed['method'] == 'GET'
    assert echoed['path'] == '/echo?x=1'
    assert echoed['headers']['Accept'] == 'application/json'
    assert echoed['headers']['User-Agent'] == 'egress/0.1'
    assert echoed['headers']['Host'] == echo_origin.removeprefix('http://')


def test_post_body(echo_origin):
    status, _, body = fetch_upstream.fetch(
        FetchDescriptor(1, 'POST', f"{echo_origin}/upload", body=b'1234567890'),
        timeout=5,
    )
    echoed = json.loads(body)

    assert status == 203
    assert echoed['body'] == '1234567890'
    assert echoed['headers']['Content-Length'] == '10'


def test_hop_by_hop_headers_not_forwarded(echo_origin):
    _, _, body = fetch_upstream.fetch(
        FetchDescriptor(1, 'GET', f"{echo_origin}/", [(b'Connection', b'keep-alive'), (b'Upgrade', b'h2c')]),
        timeout=5,
    )
    echoed = json.loads(body)

    assert echoed['headers']['Connection'] == 'close'
    assert 'Upgrade' not in echoed['headers']


def test_unsupported_url():
    with pytest.raises(ValueError):
        fetch_upstream.fetch(FetchDescriptor(1, 'GET', 'ftp://example.test/file'))


def test_connection_refused():
    with pytest.raises(OSError):
        fetch_upstream.fetch(FetchDescriptor(1, 'GET', 'http://127.0.0.1:1/'), timeout=5)


def test_upstream_connection_headers_are_not_returned(origin):
    status, headers, body = fetch_upstream.fetch(FetchDescriptor(1, 'GET', f"http://{origin}/"), timeout=5)

    assert status == 200
    assert body == b'origin body'
    names = [k.lower() for k, _ in headers]
    assert b'connection' not in names
    assert b'content-type' in names


def test_failed_tls_handshake_raises(origin):
    # the origin speaks plain HTTP only
    with pytest.raises(OSError):
        fetch_upstream.fetch(FetchDescriptor(1, 'GET', f"https://{origin}/"), timeout=5)
