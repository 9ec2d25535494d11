#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import argparse
import logging
import socket
import struct
import threading
from typing import Optional

from egress.config import conf
from egress.executor import LocalFetchExecutor
from egress.fetch_delegate import FetchDescriptor, FetchExecutor, FetchResult

logger = logging.getLogger(__name__)

OP_REQUEST = 1
OP_POLL_RESPONSE = 2
OP_POLL_RESPONSE_BODY = 3

RC_OK = 0
RC_FAILED = 1

# call: op, correlation id, payload length; reply: return code, payload length
FRAME = struct.Struct('<QQQ')
REPLY = struct.Struct('<QQ')

class FetchRpcError(Exception):
    pass

def recv_exact(sock: socket.socket, size: int, allow_eof: bool = False) -> Optional[bytes]:
    data = b''
    while len(data) < size:
        chunk = sock.recv(min(65536, size - len(data)))
        if not chunk:
            if allow_eof and not data:
                return None
            raise FetchRpcError(f"connection closed after {len(data)} of {size} bytes")
        data += chunk
    return data

def parse_address(value: str) -> tuple[str, int]:
    host, sep, port = value.rpartition(':')
    if not sep or not host:
        raise ValueError(f"expected HOST:PORT, got {value!r}")
    return host.strip('[]'), int(port)

class RemoteFetchExecutor(FetchExecutor):
    """ Client side: forwards the three calls to a FetchExecutorServer """

    def __init__(self, address: tuple[str, int]):
        self.address = address

    def submit(self, descriptor: FetchDescriptor) -> bool:
        return self._call(OP_REQUEST, descriptor.correlation_id, descriptor.pack()) is not None

    def poll_headers(self, correlation_id: int) -> Optional[FetchResult]:
        payload = self._call(OP_POLL_RESPONSE, correlation_id)
        if payload is None:
            return None
        try:
            return FetchResult.unpack(correlation_id, payload)
        except ValueError as e:
            logger.error(f"bad result block for request {correlation_id}: {e}")
            return None

    def poll_body(self, correlation_id: int) -> Optional[bytes]:
        return self._call(OP_POLL_RESPONSE_BODY, correlation_id)

    def _call(self, op: int, correlation_id: int, payload: bytes = b'') -> Optional[bytes]:
        # no timeout: polls block until the executor answers
        try:
            with socket.create_connection(self.address) as sock:
                sock.sendall(FRAME.pack(op, correlation_id, len(payload)) + payload)
                rc, length = REPLY.unpack(recv_exact(sock, REPLY.size))
                reply = recv_exact(sock, length)
        except (OSError, FetchRpcError) as e:
            logger.log(logging.WARNING, f"executor call {op} for request {correlation_id} failed: {e}")
            return None
        if rc != RC_OK:
            return None
        return reply

class FetchExecutorServer:
    """ Serves any FetchExecutor to RemoteFetchExecutor clients, one thread per connection """

    def __init__(self, executor: FetchExecutor, host: str, port: int):
        self.executor = executor
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server_socket.bind((host, port))
        self.server_socket.listen(128)
        self.address = self.server_socket.getsockname()
        logger.info(f"fetch executor listening on {self.address[0]}:{self.address[1]}")

    def serve_forever(self):
        while True:
            try:
                conn, addr = self.server_socket.accept()
            except OSError:
                break
            threading.Thread(target=self.handle, args=(conn, addr), daemon=True).start()

    def shutdown(self):
        # wakes up the thread blocked in accept()
        try:
            self.server_socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.server_socket.close()

    def handle(self, conn: socket.socket, addr):
        try:
            while (header := recv_exact(conn, FRAME.size, allow_eof=True)) is not None:
                op, correlation_id, length = FRAME.unpack(header)
                payload = recv_exact(conn, length)
                rc, reply = self.dispatch(op, correlation_id, payload)
                conn.sendall(REPLY.pack(rc, len(reply)) + reply)
        except (OSError, FetchRpcError) as e:
            logger.log(logging.WARNING, f"[{addr}] executor connection failed: {e}")
        finally:
            conn.close()

    def dispatch(self, op: int, correlation_id: int, payload: bytes) -> tuple[int, bytes]:
        if op == OP_REQUEST:
            try:
                descriptor = FetchDescriptor.unpack(payload)
            except ValueError as e:
                logger.error(f"bad request block for request {correlation_id}: {e}")
                return RC_FAILED, b''
            if descriptor.correlation_id != correlation_id:
                logger.error(f"request block id {descriptor.correlation_id} does not match {correlation_id}")
                return RC_FAILED, b''
            return (RC_OK if self.executor.submit(descriptor) else RC_FAILED), b''

        if op == OP_POLL_RESPONSE:
            result = self.executor.poll_headers(correlation_id)
            if result is None:
                return RC_FAILED, b''
            return RC_OK, result.pack()

        if op == OP_POLL_RESPONSE_BODY:
            body = self.executor.poll_body(correlation_id)
            if body is None:
                return RC_FAILED, b''
            return RC_OK, body

        logger.error(f"invalid executor call {op}")
        return RC_FAILED, b''

def parse_args():
    parser = argparse.ArgumentParser(
        prog='egress-executor',
        description='Fetch executor serving delegated requests from egress'
    )
    parser.add_argument('address', help='Address to listen on')
    parser.add_argument('port', type=int, help='Port to listen on')
    parser.add_argument('--socks', help='Upstream SOCKS5 proxy as HOST:PORT', required=False)
    parser.add_argument('--loglevel', help='Log level', default='INFO')
    return parser.parse_args()

def main():
    args = parse_args()
    logging.basicConfig(level=args.loglevel)

    proxy_config = parse_address(args.socks) if args.socks else None
    executor = LocalFetchExecutor(proxy_config=proxy_config, timeout=conf.upstream_timeout)
    server = FetchExecutorServer(executor, args.address, args.port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("executor shutting down")
    finally:
        server.shutdown()

if __name__ == "__main__":
    main()
