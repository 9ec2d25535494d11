import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from egress.config import Config

logger = logging.getLogger(__name__)

CA_VALIDITY = timedelta(days=3650)
LEAF_VALIDITY = timedelta(days=365)
ORGANIZATION = "Egress"
CA_COMMON_NAME = "Egress MITM CA"


class CertStoreError(Exception):
    pass


@dataclass(frozen=True)
class LeafCertificate:
    hostname: str
    certificate: x509.Certificate
    key: ec.EllipticCurvePrivateKey

    def cert_pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    def key_pem(self) -> bytes:
        return self.key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )


class CertStore:
    def __init__(
        self,
        ca_cert_file: str,
        ca_key_file: str,
        trust_source_file: Optional[str] = None,
        trust_bundle_file: Optional[str] = None,
        system_cert_dir: Optional[str] = None,
    ):
        self.ca_cert_path = Path(ca_cert_file)
        self.ca_key_path = Path(ca_key_file)
        self.trust_source_path = Path(trust_source_file) if trust_source_file else None
        self.trust_bundle_path = Path(trust_bundle_file) if trust_bundle_file else None
        self.system_cert_dir = Path(system_cert_dir) if system_cert_dir else None

        self.ca_cert: Optional[x509.Certificate] = None
        self.ca_key: Optional[ec.EllipticCurvePrivateKey] = None
        self.ca_loaded = False

        # one lock for CA bootstrap and the leaf cache; ensure_ca() is re-entered from issue_for_host()
        self._lock = threading.RLock()
        self._cache: dict[str, LeafCertificate] = {}

    @classmethod
    def from_config(cls, conf: Config) -> "CertStore":
        if not conf.install_trust:
            return cls(conf.ca_cert_file, conf.ca_key_file)
        return cls(
            conf.ca_cert_file,
            conf.ca_key_file,
            trust_source_file=conf.trust_source_file,
            trust_bundle_file=conf.trust_bundle_file,
            system_cert_dir=conf.system_cert_dir,
        )

    def ensure_ca(self):
        """Load the persisted CA or create a new one, then install it as a trust anchor.

        Raises CertStoreError when neither works.
        """
        with self._lock:
            if self.ca_loaded:
                return

            if self._load_ca():
                logger.info(f"loaded CA from {self.ca_cert_path}")
            else:
                try:
                    self._create_ca()
                    self._save_ca()
                except (OSError, ValueError, UnsupportedAlgorithm) as e:
                    self.ca_cert = self.ca_key = None
                    raise CertStoreError(f"failed to create CA at {self.ca_cert_path}: {e}") from e
                logger.info(f"generated new CA at {self.ca_cert_path}")

            self.ca_loaded = True
            self.install_ca_to_trust_store()

    def issue_for_host(self, hostname: str) -> Optional[LeafCertificate]:
        """Return the leaf certificate for hostname, creating it on first use.

        None means no certificate is available for this host.
        """
        with self._lock:
            if (leaf := self._cache.get(hostname)) is not None:
                return leaf

            if not self.ca_loaded:
                try:
                    self.ensure_ca()
                except CertStoreError as e:
                    logger.error(f"cannot issue certificate for {hostname}: {e}")
                    return None

            try:
                leaf = self._create_leaf(hostname)
            except (ValueError, TypeError, UnsupportedAlgorithm) as e:
                logger.error(f"cannot issue certificate for {hostname}: {e}")
                return None

            self._cache[hostname] = leaf
            logger.debug(f"issued certificate for {hostname} (serial {leaf.certificate.serial_number:x})")
            return leaf

    def install_ca_to_trust_store(self):
        if self.ca_cert is None or self.trust_source_path is None:
            return

        try:
            source_mtime = self.ca_cert_path.stat().st_mtime
            if self._is_current(self.trust_source_path, source_mtime) and (
                self.trust_bundle_path is None or self._is_current(self.trust_bundle_path, source_mtime)
            ):
                logger.debug("CA already installed in trust store")
                return

            cert_pem = self.ca_cert_path.read_bytes()
            self.trust_source_path.parent.mkdir(parents=True, exist_ok=True)
            self.trust_source_path.write_bytes(cert_pem)

            # only one CA matters inside the client environment
            if self.trust_bundle_path is not None:
                self.trust_bundle_path.parent.mkdir(parents=True, exist_ok=True)
                self.trust_bundle_path.write_bytes(cert_pem)

            if self.system_cert_dir is not None and self.system_cert_dir.is_dir():
                link = self.system_cert_dir / self.trust_source_path.name
                if link.is_symlink() or link.exists():
                    link.unlink()
                link.symlink_to(self.trust_source_path)
        except OSError as e:
            logger.warning(f"failed to install CA into trust store: {e}")
            return

        logger.info(f"installed CA into trust store at {self.trust_source_path}")

    @staticmethod
    def _is_current(path: Path, source_mtime: float) -> bool:
        try:
            return path.stat().st_mtime >= source_mtime
        except OSError:
            return False

    def _load_ca(self) -> bool:
        try:
            cert = x509.load_pem_x509_certificate(self.ca_cert_path.read_bytes())
            key = serialization.load_pem_private_key(self.ca_key_path.read_bytes(), password=None)
        except (OSError, ValueError, TypeError, UnsupportedAlgorithm) as e:
            logger.debug(f"no usable CA at {self.ca_cert_path}: {e}")
            return False

        self.ca_cert = cert
        self.ca_key = key
        return True

    def _create_ca(self):
        key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([
            x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
            x509.NameAttribute(NameOID.COMMON_NAME, CA_COMMON_NAME),
        ])
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + CA_VALIDITY)
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(x509.KeyUsage(
                digital_signature=False, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False,
            ), critical=True)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
            .sign(key, hashes.SHA256())
        )
        self.ca_cert = cert
        self.ca_key = key

    def _save_ca(self):
        for directory in {self.ca_cert_path.parent, self.ca_key_path.parent}:
            directory.mkdir(mode=0o700, parents=True, exist_ok=True)

        self.ca_cert_path.write_bytes(self.ca_cert.public_bytes(serialization.Encoding.PEM))

        key_pem = self.ca_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        fd = os.open(self.ca_key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(key_pem)
        os.chmod(self.ca_key_path, 0o600)

    def _create_leaf(self, hostname: str) -> LeafCertificate:
        key = ec.generate_private_key(ec.SECP256R1())
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([
                x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
                x509.NameAttribute(NameOID.COMMON_NAME, hostname),
            ]))
            .issuer_name(self.ca_cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + LEAF_VALIDITY)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(self.ca_key.public_key()),
                critical=False,
            )
            .sign(self.ca_key, hashes.SHA256())
        )
        return LeafCertificate(hostname=hostname, certificate=cert, key=key)
