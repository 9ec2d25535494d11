import logging
import socket
import ssl
import socks
import h11
from typing import Optional
from urllib.parse import urlparse

from egress.fetch_delegate import FetchDescriptor
from egress.interface import Headers

logger = logging.getLogger(__name__)

USER_AGENT = b'egress/0.1'
HOP_BY_HOP = {b'connection', b'keep-alive', b'proxy-connection', b'transfer-encoding', b'te', b'upgrade'}

def fetch(
    descriptor: FetchDescriptor,
    proxy_config: Optional[tuple[str, int]] = None,
    timeout: Optional[float] = None,
) -> tuple[int, Headers, bytes]:
    """
    Perform the request described by descriptor over the real network.
    Returns (status, headers, body); raises OSError, h11.ProtocolError or ValueError.
    """
    url = urlparse(descriptor.url)
    if url.scheme not in ('http', 'https') or not url.hostname:
        raise ValueError(f"unsupported url {descriptor.url!r}")
    is_https = url.scheme == 'https'
    port = url.port or (443 if is_https else 80)

    # prepare socket and connection
    if proxy_config is not None:
        sock = socks.create_connection(
            (url.hostname, port),
            timeout=timeout,
            proxy_type=socks.SOCKS5,
            proxy_addr=proxy_config[0],
            proxy_port=proxy_config[1],
        )
    else:
        sock = socket.create_connection((url.hostname, port), timeout=timeout)
    conn = h11.Connection(our_role=h11.CLIENT)

    try:
        if is_https:
            ctx = ssl.create_default_context()
            sock = ctx.wrap_socket(sock, server_hostname=url.hostname)

        # send request
        host = url.hostname if url.port is None else f"{url.hostname}:{url.port}"
        headers = [
            (b'Host', host.encode('idna')),
            (b'User-Agent', USER_AGENT),
            (b'Connection', b'close'),
        ]
        headers += [(k, v) for k, v in descriptor.headers if k.lower() not in HOP_BY_HOP]
        if descriptor.body:
            headers.append((b'Content-Length', str(len(descriptor.body)).encode()))
        target = url.path or '/'
        if len(url.query) > 0:
            target += '?' + url.query
        request = h11.Request(method=descriptor.method, headers=headers, target=target)
        sock.sendall(conn.send(request))

        # send request body if exists
        if descriptor.body:
            sock.sendall(conn.send(h11.Data(data=descriptor.body)))
        sock.sendall(conn.send(h11.EndOfMessage()))

        # receive response
        response = None
        body_parts = []
        while True:
            event = conn.next_event()
            if event is h11.NEED_DATA:
                conn.receive_data(sock.recv(65535))
            elif isinstance(event, h11.Response):
                response = event
            elif isinstance(event, h11.Data):
                body_parts.append(event.data)
            elif isinstance(event, (h11.EndOfMessage, h11.ConnectionClosed)):
                break
    finally:
        sock.close()

    if response is None:
        raise ValueError(f"no response from {url.hostname}")
    # hop-by-hop headers describe our upstream connection, not the client's
    headers = [(k, v) for k, v in response.headers.raw_items() if k.lower() not in HOP_BY_HOP]
    return response.status_code, headers, b''.join(body_parts)
