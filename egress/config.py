import logging
import tomllib
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

@dataclass
class Config:
    host: str = '127.254.254.254'
    ports: list[int] = field(default_factory=lambda: [80, 443])
    listen_backlog: int = 128

    # DNS redirection
    dns_enabled: bool = True
    dns_port: int = 53
    dns_ttl: int = 60

    # root CA material and trust store installation
    ca_cert_file: str = '/etc/ssl/egress/mitm-ca.crt'
    ca_key_file: str = '/etc/ssl/egress/mitm-ca.key'
    install_trust: bool = True
    trust_source_file: str = '/usr/local/share/ca-certificates/egress-mitm-ca.crt'
    trust_bundle_file: str = '/etc/ssl/cert.pem'
    system_cert_dir: str = '/etc/ssl/certs'

    # identity presented to TLS clients that send no SNI (None: no identity)
    default_server_name: Optional[str] = None

    # fetch executor; None runs the local executor in-process
    executor_addr: Optional[str] = None
    upstream_proxy_addr: Optional[str] = None
    upstream_proxy_port: int = 1080
    upstream_timeout: float = 30.0

conf = Config()

def configure_from_file(path: Optional[str]):
    if path is not None:
        with open(path, "rb") as f:
            conf_override = tomllib.load(f)
    else:
        conf_override = {}

    for k, v in conf_override.items():
        if not hasattr(conf, k):
            logger.warning(f"config: ignoring unknown key {k!r}")
            continue
        setattr(conf, k, v)

    logger.log(logging.DEBUG, f"config: {conf}")
