import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional

import pytest

from egress.certs import CertStore
from egress.fetch_delegate import FetchDelegate, FetchDescriptor, FetchExecutor, FetchResult
from egress.proxy import ProxyServer
from egress.tls import TlsTerminator


class FakeExecutor(FetchExecutor):
    """ Executor answering every request with a canned response """

    def __init__(self, status=200, headers=None, body=b'hello', submit_ok=True, short_body=False):
        self.status = status
        self.headers = headers if headers is not None else [(b'Content-Type', b'text/plain')]
        self.body = body
        self.submit_ok = submit_ok
        self.short_body = short_body
        self.descriptors: list[FetchDescriptor] = []
        self.polled: list[int] = []

    def submit(self, descriptor: FetchDescriptor) -> bool:
        if not self.submit_ok:
            return False
        self.descriptors.append(descriptor)
        return True

    def poll_headers(self, correlation_id: int) -> Optional[FetchResult]:
        self.polled.append(correlation_id)
        return FetchResult(
            correlation_id=correlation_id,
            status=self.status,
            headers=self.headers,
            body_length=len(self.body),
        )

    def poll_body(self, correlation_id: int) -> Optional[bytes]:
        if self.short_body:
            return self.body[:-1]
        return self.body


@pytest.fixture
def store(tmp_path) -> CertStore:
    return CertStore(str(tmp_path / 'ca' / 'mitm-ca.crt'), str(tmp_path / 'ca' / 'mitm-ca.key'))


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def proxy_factory(store):
    servers = []

    def start(executor: FetchExecutor, default_server_name: Optional[str] = None) -> ProxyServer:
        store.ensure_ca()
        terminator = TlsTerminator(store, default_server_name)
        server = ProxyServer('127.0.0.1', 0, terminator, FetchDelegate(executor))
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.shutdown()


@pytest.fixture
def proxy(proxy_factory, executor) -> ProxyServer:
    return proxy_factory(executor)


class OriginHandler(BaseHTTPRequestHandler):
    """ Origin server that answers every request with 'origin body' and closes """
    protocol_version = 'HTTP/1.1'

    def do_GET(self):
        self.reply(b'origin body')

    def do_HEAD(self):
        self.reply(b'origin body', send_body=False)

    def reply(self, body: bytes, send_body: bool = True):
        self.send_response(200)
        self.send_header('Content-Type', 'text/plain')
        self.send_header('Content-Length', str(len(body)))
        self.send_header('Connection', 'close')
        self.end_headers()
        if send_body:
            self.wfile.write(body)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def origin():
    """ host:port of a local OriginHandler server """
    server = ThreadingHTTPServer(('127.0.0.1', 0), OriginHandler)
    threading.Thread(target=server.serve_forever, daemon=True).start()
    yield f"127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


@pytest.fixture
def tcp_pair():
    """ Connected (server side, client side) loopback TCP sockets """
    listener = socket.create_server(('127.0.0.1', 0))
    client = socket.create_connection(listener.getsockname())
    server, _ = listener.accept()
    listener.close()
    yield server, client
    server.close()
    client.close()
