#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import argparse
import ipaddress
import logging
import socket
import sys
import threading
from egress import config, stat
from egress.config import conf
from egress.certs import CertStore, CertStoreError
from egress.dns import DNSRedirector
from egress.executor import LocalFetchExecutor
from egress.fetch_delegate import FetchDelegate, FetchExecutor
from egress.fetch_rpc import RemoteFetchExecutor, parse_address
from egress.session import Session
from egress.tls import TlsTerminator

logger = logging.getLogger(__name__)

class ProxyServer:
    """
    Accepts connections on one port and hands each to its own Session thread.
    Protocol detection happens in the session, so accepting never blocks on a client.
    """
    def __init__(self, host: str, port: int, terminator: TlsTerminator, delegate: FetchDelegate, backlog: int = 128):
        self.terminator = terminator
        self.delegate = delegate
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server_socket.bind((host, port))
        self.server_socket.listen(backlog)
        self.address = self.server_socket.getsockname()
        logger.info(f"Proxy listening on {self.address[0]}:{self.address[1]}")

    def serve_forever(self):
        while True:
            try:
                client_sock, client_addr = self.server_socket.accept()
            except OSError:
                break
            Session(client_sock, client_addr, self.terminator, self.delegate).start()

    def shutdown(self):
        # wakes up the thread blocked in accept()
        try:
            self.server_socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.server_socket.close()

def make_executor() -> FetchExecutor:
    if conf.executor_addr is not None:
        address = parse_address(conf.executor_addr)
        logger.info(f"delegating fetches to executor at {address[0]}:{address[1]}")
        return RemoteFetchExecutor(address)
    proxy_config = None
    if conf.upstream_proxy_addr is not None:
        proxy_config = (conf.upstream_proxy_addr, conf.upstream_proxy_port)
    return LocalFetchExecutor(proxy_config=proxy_config, timeout=conf.upstream_timeout)

def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='egress',
        description='A TLS-intercepting proxy delegating every request to a fetch executor',
        epilog='Example: egress 127.254.254.254 80 443 '
               '(also answers DNS on port 53 of the address, resolving every name to it)',
    )
    parser.add_argument('address', help='IPv4 address to bind and to answer DNS queries with')
    parser.add_argument('port1', type=int, help='First HTTP/HTTPS port')
    parser.add_argument('port2', type=int, help='Second HTTP/HTTPS port')
    parser.add_argument('--config', help='Path to a config file (.toml)', required=False)
    parser.add_argument('--loglevel', help='Log level', default='INFO')
    parser.add_argument('--no-dns', help='Do not start the DNS redirector', action='store_true')
    parser.add_argument('--executor', help='Remote fetch executor as HOST:PORT', required=False)
    return parser.parse_args(argv)

def main(argv=None):
    # configure logging & proxy-wide settings
    args = parse_args(argv)
    logging.basicConfig(level=args.loglevel)
    config.configure_from_file(args.config)
    conf.host = args.address
    conf.ports = [args.port1, args.port2]
    if args.no_dns:
        conf.dns_enabled = False
    if args.executor:
        conf.executor_addr = args.executor

    try:
        ipaddress.IPv4Address(conf.host)
    except ValueError:
        print("Only IPv4 addresses are supported", file=sys.stderr)
        return 1

    # the CA must exist before anything accepts connections
    store = CertStore.from_config(conf)
    try:
        store.ensure_ca()
    except CertStoreError as e:
        logger.error(f"Failed to initialize certificate store: {e}")
        return 1

    terminator = TlsTerminator(store, conf.default_server_name)
    delegate = FetchDelegate(make_executor())

    dns = None
    servers = []
    try:
        if conf.dns_enabled:
            dns = DNSRedirector(conf.host, conf.dns_port, conf.host, conf.dns_ttl)
            dns.start()
        for port in conf.ports:
            servers.append(ProxyServer(conf.host, port, terminator, delegate, conf.listen_backlog))
    except OSError as e:
        logger.error(f"Failed to bind: {e}")
        for server in servers:
            server.shutdown()
        if dns is not None:
            dns.stop()
        return 1

    threads = [threading.Thread(target=s.serve_forever, daemon=True) for s in servers]
    for t in threads:
        t.start()
    try:
        for t in threads:
            t.join()
    except KeyboardInterrupt:
        print("Proxy shutting down")
    finally:
        for server in servers:
            server.shutdown()
        if dns is not None:
            dns.stop()
        stat.log_stats()
    return 0

if __name__ == "__main__":
    sys.exit(main())
