import logging
import socket
import ssl
from typing import Optional

from egress.detect import TransportKind

logger = logging.getLogger(__name__)

BUFFER = 65536
TLS_SHUTDOWN_TIMEOUT = 1.0

class SessionError(Exception):
    category = 'session'

class ReadError(SessionError):
    category = 'read'

class HandshakeError(SessionError):
    category = 'handshake'

class DelegateError(SessionError):
    category = 'delegate'

class WriteError(SessionError):
    category = 'write'

class Transport:
    """ Byte stream a session runs on: read, write and shutdown """
    kind: TransportKind
    scheme: str

    def __init__(self, sock: socket.socket):
        self.sock = sock

    def read(self, size: int = BUFFER) -> bytes:
        return self.sock.recv(size)

    def write(self, data: bytes):
        self.sock.sendall(data)

    def shutdown(self):
        raise NotImplementedError

    def close(self):
        self.sock.close()

class PlainTransport(Transport):
    kind = TransportKind.PLAIN
    scheme = 'http'

    def shutdown(self):
        try:
            self.sock.shutdown(socket.SHUT_WR)
        except OSError as e:
            logger.debug(f"shutdown: {e}")

class TlsTransport(Transport):
    kind = TransportKind.TLS
    scheme = 'https'

    def __init__(self, sock: ssl.SSLSocket, server_name: Optional[str] = None):
        super().__init__(sock)
        self.server_name = server_name

    def read(self, size: int = BUFFER) -> bytes:
        try:
            return self.sock.recv(size)
        except ssl.SSLEOFError:
            # peer closed without close_notify; HTTP is self-delimiting so this is a plain EOF
            return b''

    def shutdown(self):
        # send close_notify but don't wait long for the peer's
        self.sock.settimeout(TLS_SHUTDOWN_TIMEOUT)
        try:
            self.sock.unwrap()
        except (ssl.SSLError, OSError) as e:
            logger.debug(f"TLS shutdown: {e}")
