import enum
import logging
import socket
from typing import Optional

logger = logging.getLogger(__name__)

TLS_HANDSHAKE = 0x16
TLS_CLIENT_HELLO = 0x01
# record header (5 bytes) followed by the handshake message type
TLS_PEEK_LENGTH = 6

class TransportKind(enum.Enum):
    PLAIN = 'plain'
    TLS = 'tls'

def looks_like_tls(data: bytes) -> bool:
    """ Check whether data starts with a TLS record carrying a ClientHello """
    if len(data) < 1 or data[0] != TLS_HANDSHAKE:
        return False
    if len(data) >= 2 and data[1] != 0x03:
        return False
    if len(data) >= TLS_PEEK_LENGTH and data[5] != TLS_CLIENT_HELLO:
        return False
    return True

def detect(sock: socket.socket) -> Optional[TransportKind]:
    """
    Classify a freshly accepted connection without consuming any bytes.
    Returns None if the peer closed before sending anything.
    """
    first = sock.recv(1, socket.MSG_PEEK)
    if not first:
        return None
    if first[0] != TLS_HANDSHAKE:
        return TransportKind.PLAIN

    # a ClientHello is far longer than the record header, so waiting for it never stalls a real client
    head = sock.recv(TLS_PEEK_LENGTH, socket.MSG_PEEK | socket.MSG_WAITALL)
    kind = TransportKind.TLS if looks_like_tls(head) else TransportKind.PLAIN
    logger.debug(f"detected {kind.value} connection ({head.hex()})")
    return kind
