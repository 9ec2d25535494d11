import atexit
import logging
import shutil
import socket
import ssl
import tempfile
import threading
from pathlib import Path
from typing import Optional

from egress.certs import CertStore, LeafCertificate
from egress.transport import HandshakeError, TlsTransport

logger = logging.getLogger(__name__)

ALPN_PROTOCOLS = ['http/1.1']

def _server_context() -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.set_alpn_protocols(ALPN_PROTOCOLS)
    return ctx

class TlsTerminator:
    """
    Server side of the TLS interception: picks a forged certificate from the SNI
    server name while the handshake is in progress.
    """

    def __init__(self, store: CertStore, default_server_name: Optional[str] = None):
        self.store = store
        self._contexts: dict[str, ssl.SSLContext] = {}
        self._lock = threading.Lock()

        # ssl.SSLContext.load_cert_chain() only reads files
        self._tmp_dir = Path(tempfile.mkdtemp(prefix='egress-leaf-'))
        atexit.register(shutil.rmtree, str(self._tmp_dir), True)

        self.context = _server_context()
        self.context.sni_callback = self._on_server_name

        self.default_server_name = default_server_name
        if default_server_name is not None:
            leaf = store.issue_for_host(default_server_name)
            if leaf is None:
                logger.warning(f"no default certificate for {default_server_name}")
            else:
                self._load_leaf(self.context, leaf)
                self.context.leaf_hostname = leaf.hostname
                logger.info(f"clients without SNI get the certificate for {default_server_name}")

    def certificate_for(self, server_name: Optional[str]) -> Optional[LeafCertificate]:
        if not server_name:
            return None
        return self.store.issue_for_host(server_name)

    def wrap(self, sock: socket.socket) -> TlsTransport:
        """ Run the server handshake on sock. Raises HandshakeError. """
        try:
            tls_sock = self.context.wrap_socket(sock, server_side=True)
        except (ssl.SSLError, OSError) as e:
            raise HandshakeError(f"handshake failed: {e}") from e
        # the SNI callback swapped in the context of the issued leaf
        return TlsTransport(tls_sock, getattr(tls_sock.context, "leaf_hostname", None))

    def _on_server_name(self, sslobj, server_name, ctx):
        if not server_name:
            logger.debug(f"client sent no server name, using default identity ({self.default_server_name})")
            return None

        leaf = self.certificate_for(server_name)
        if leaf is None:
            logger.warning(f"no certificate available for {server_name}")
            return None

        try:
            sslobj.context = self._context_for(leaf)
        except (ssl.SSLError, OSError) as e:
            logger.error(f"failed to install certificate for {server_name}: {e}")
            return ssl.ALERT_DESCRIPTION_INTERNAL_ERROR
        return None

    def _context_for(self, leaf: LeafCertificate) -> ssl.SSLContext:
        with self._lock:
            ctx = self._contexts.get(leaf.hostname)
            if ctx is None:
                ctx = _server_context()
                self._load_leaf(ctx, leaf)
                ctx.leaf_hostname = leaf.hostname
                self._contexts[leaf.hostname] = ctx
            return ctx

    def _load_leaf(self, ctx: ssl.SSLContext, leaf: LeafCertificate):
        # name files by serial; server names come from the client
        stem = f"{leaf.certificate.serial_number:x}"
        cert_path = self._tmp_dir / f"{stem}.crt"
        key_path = self._tmp_dir / f"{stem}.key"
        cert_path.write_bytes(leaf.cert_pem())
        key_path.write_bytes(leaf.key_pem())
        key_path.chmod(0o600)
        ctx.load_cert_chain(str(cert_path), str(key_path))
