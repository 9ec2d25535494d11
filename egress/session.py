import enum
import logging
import socket
import threading
from http import HTTPStatus
from typing import Optional

import h11

from egress.detect import TransportKind, detect
from egress.fetch_delegate import FetchDelegate
from egress.interface import Request, Response, header_value
from egress.tls import TlsTerminator
from egress.transport import (
    HandshakeError, PlainTransport, ReadError, SessionError, Transport, WriteError,
)

logger = logging.getLogger(__name__)

# statuses that never carry a body
BODYLESS_STATUS = {204, 304}

class SessionState(enum.Enum):
    ACCEPTED = 'accepted'
    DETECTING = 'detecting'
    PLAIN = 'plain'
    TLS_HANDSHAKING = 'tls_handshaking'
    READING_REQUEST = 'reading_request'
    DELEGATING = 'delegating'
    WRITING_RESPONSE = 'writing_response'
    CLOSED = 'closed'

class Session(threading.Thread):
    """
    One accepted connection: detect the protocol, terminate TLS if needed, then
    read request -> delegate -> write response until either side wants to close.
    """

    def __init__(
        self,
        client_socket: socket.socket,
        address,
        terminator: TlsTerminator,
        delegate: FetchDelegate,
    ):
        super().__init__()
        self.client_socket = client_socket
        self.address = address
        self.terminator = terminator
        self.delegate = delegate
        self.daemon = True
        self.state = SessionState.ACCEPTED
        self.transport: Optional[Transport] = None
        self.request: Optional[Request] = None

    def run(self):
        try:
            self.handle_client()
        except SessionError as e:
            logger.log(logging.WARNING, f"[{self.address}] {e.category} error: {e}")
        except Exception:
            logger.exception(f"[{self.address}] session failed in state {self.state.value}")
        finally:
            self.close()

    def close(self):
        if self.transport is not None:
            self.transport.close()
        else:
            self.client_socket.close()
        self.state = SessionState.CLOSED

    def handle_client(self):
        self.state = SessionState.DETECTING
        try:
            kind = detect(self.client_socket)
        except OSError as e:
            raise ReadError(f"detect: {e}") from e
        if kind is None:
            return

        if kind is TransportKind.TLS:
            self.state = SessionState.TLS_HANDSHAKING
            self.transport = self.terminator.wrap(self.client_socket)
            logger.log(logging.DEBUG, f"[{self.address}] TLS established for {self.transport.server_name}")
        else:
            self.state = SessionState.PLAIN
            self.transport = PlainTransport(self.client_socket)

        conn = h11.Connection(our_role=h11.SERVER)
        while True:
            self.state = SessionState.READING_REQUEST
            self.request = self._read_request(conn)
            if self.request is None:
                break

            self.state = SessionState.DELEGATING
            response = self.delegate.fetch(self.request)

            self.state = SessionState.WRITING_RESPONSE
            keep_alive = self.request.keep_alive and response.keep_alive
            self._send_response(conn, self.request, response, keep_alive)

            if not keep_alive or conn.our_state is h11.MUST_CLOSE:
                break
            try:
                conn.start_next_cycle()
            except h11.LocalProtocolError as e:
                # the client is still sending a body we never read
                logger.log(logging.DEBUG, f"[{self.address}] cannot reuse connection: {e}")
                break

        self.transport.shutdown()

    def _next_event(self, conn: h11.Connection):
        while True:
            event = conn.next_event()
            if event is not h11.NEED_DATA:
                return event
            conn.receive_data(self.transport.read())

    def _read_request(self, conn: h11.Connection) -> Optional[Request]:
        """ Read a full request; None if the client closed between requests """
        try:
            event = self._next_event(conn)
            if isinstance(event, h11.ConnectionClosed):
                return None
            if not isinstance(event, h11.Request):
                raise ReadError(f"unexpected event {event!r}")
            if conn.they_are_waiting_for_100_continue:
                self.transport.write(conn.send(h11.InformationalResponse(status_code=100, headers=[])))

            body = []
            while True:
                part = self._next_event(conn)
                if isinstance(part, h11.Data):
                    body.append(part.data)
                elif isinstance(part, h11.EndOfMessage):
                    break
                else:
                    raise ReadError(f"unexpected event {part!r}")
        except h11.RemoteProtocolError as e:
            raise ReadError(f"malformed request: {e}") from e
        except OSError as e:
            raise ReadError(str(e)) from e

        return Request(
            method=event.method.decode('latin-1'),
            target=event.target.decode('latin-1'),
            headers=list(event.headers.raw_items()),
            scheme=self.transport.scheme,
            http_version=event.http_version,
            body=b''.join(body),
        )

    def _send_response(self, conn: h11.Connection, req: Request, response: Response, keep_alive: bool):
        status = response.status_code
        with_body = req.method.upper() != 'HEAD' and status not in BODYLESS_STATUS

        headers = list(response.headers)
        if status in BODYLESS_STATUS:
            headers = [(k, v) for k, v in headers if k.lower() != b'content-length']
        elif header_value(headers, b'content-length') is None:
            # HEAD responses may already carry the length reported by the executor
            headers.append((b'Content-Length', str(len(response.body)).encode()))
        if not keep_alive:
            headers.append((b'Connection', b'close'))

        try:
            reason = HTTPStatus(status).phrase.encode()
        except ValueError:
            reason = b''

        try:
            data = conn.send(h11.Response(status_code=status, headers=headers, reason=reason))
            if with_body and response.body:
                data += conn.send(h11.Data(data=response.body))
            data += conn.send(h11.EndOfMessage())
            self.transport.write(data)
        except h11.LocalProtocolError as e:
            raise WriteError(f"cannot encode response: {e}") from e
        except OSError as e:
            raise WriteError(str(e)) from e
