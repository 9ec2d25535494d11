import os
import stat

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtensionOID, NameOID

from egress.certs import CertStore, CertStoreError


def common_name(cert: x509.Certificate) -> str:
    return cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value


def public_key_bytes(key) -> bytes:
    return key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )


def test_ensure_ca_generates_and_persists(store):
    store.ensure_ca()

    assert store.ca_loaded
    assert store.ca_cert_path.exists()
    assert store.ca_key_path.exists()
    assert stat.S_IMODE(os.stat(store.ca_key_path).st_mode) == 0o600
    assert stat.S_IMODE(os.stat(store.ca_key_path.parent).st_mode) == 0o700

    assert isinstance(store.ca_key, ec.EllipticCurvePrivateKey)
    assert store.ca_key.curve.name == 'secp256r1'

    constraints = store.ca_cert.extensions.get_extension_for_oid(ExtensionOID.BASIC_CONSTRAINTS)
    assert constraints.value.ca is True
    usage = store.ca_cert.extensions.get_extension_for_oid(ExtensionOID.KEY_USAGE).value
    assert usage.key_cert_sign and usage.crl_sign
    assert (store.ca_cert.not_valid_after_utc - store.ca_cert.not_valid_before_utc).days == 3650


def test_ensure_ca_loads_existing_material(store, tmp_path):
    store.ensure_ca()

    again = CertStore(str(store.ca_cert_path), str(store.ca_key_path))
    again.ensure_ca()

    assert again.ca_cert == store.ca_cert
    assert public_key_bytes(again.ca_key) == public_key_bytes(store.ca_key)


def test_ensure_ca_replaces_unreadable_material(store):
    store.ca_cert_path.parent.mkdir(parents=True)
    store.ca_cert_path.write_bytes(b'not a certificate')
    store.ca_key_path.write_bytes(b'not a key')

    store.ensure_ca()

    cert = x509.load_pem_x509_certificate(store.ca_cert_path.read_bytes())
    assert cert == store.ca_cert


def test_ensure_ca_failure_raises(tmp_path):
    blocker = tmp_path / 'blocker'
    blocker.write_text('regular file')
    store = CertStore(str(blocker / 'ca.crt'), str(blocker / 'ca.key'))

    with pytest.raises(CertStoreError):
        store.ensure_ca()
    assert not store.ca_loaded


def test_issue_for_distinct_hosts(store):
    store.ensure_ca()

    a = store.issue_for_host('a.example.test')
    b = store.issue_for_host('b.example.test')

    assert common_name(a.certificate) == 'a.example.test'
    assert common_name(b.certificate) == 'b.example.test'
    assert a.certificate.subject != b.certificate.subject
    assert public_key_bytes(a.key) != public_key_bytes(b.key)


def test_issue_for_host_is_stable(store):
    store.ensure_ca()

    first = store.issue_for_host('example.test')
    second = store.issue_for_host('example.test')

    assert first.certificate == second.certificate
    assert common_name(second.certificate) == 'example.test'
    second.certificate.verify_directly_issued_by(store.ca_cert)


def test_leaf_certificate_properties(store):
    store.ensure_ca()
    leaf = store.issue_for_host('example.test')
    cert = leaf.certificate

    cert.verify_directly_issued_by(store.ca_cert)
    assert cert.issuer == store.ca_cert.subject

    san = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME).value
    assert san.get_values_for_type(x509.DNSName) == ['example.test']

    constraints = cert.extensions.get_extension_for_oid(ExtensionOID.BASIC_CONSTRAINTS).value
    assert constraints.ca is False

    assert isinstance(leaf.key, ec.EllipticCurvePrivateKey)
    assert public_key_bytes(leaf.key) == cert.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    assert (cert.not_valid_after_utc - cert.not_valid_before_utc).days == 365
    assert 0 < cert.serial_number < 2 ** 159


def test_issue_bootstraps_ca_on_first_use(store):
    leaf = store.issue_for_host('example.test')

    assert store.ca_loaded
    leaf.certificate.verify_directly_issued_by(store.ca_cert)


def test_issue_without_usable_ca_returns_none(tmp_path):
    blocker = tmp_path / 'blocker'
    blocker.write_text('regular file')
    store = CertStore(str(blocker / 'ca.crt'), str(blocker / 'ca.key'))

    assert store.issue_for_host('example.test') is None


def trusting_store(tmp_path) -> CertStore:
    (tmp_path / 'certs').mkdir(exist_ok=True)
    return CertStore(
        str(tmp_path / 'ca' / 'mitm-ca.crt'),
        str(tmp_path / 'ca' / 'mitm-ca.key'),
        trust_source_file=str(tmp_path / 'share' / 'egress-mitm-ca.crt'),
        trust_bundle_file=str(tmp_path / 'cert.pem'),
        system_cert_dir=str(tmp_path / 'certs'),
    )


def test_ca_installed_into_trust_store(tmp_path):
    store = trusting_store(tmp_path)
    store.ensure_ca()

    ca_pem = store.ca_cert_path.read_bytes()
    assert (tmp_path / 'share' / 'egress-mitm-ca.crt').read_bytes() == ca_pem
    assert (tmp_path / 'cert.pem').read_bytes() == ca_pem

    link = tmp_path / 'certs' / 'egress-mitm-ca.crt'
    assert link.is_symlink()
    assert os.readlink(link) == str(tmp_path / 'share' / 'egress-mitm-ca.crt')


def test_trust_store_installation_skipped_when_current(tmp_path):
    trusting_store(tmp_path).ensure_ca()

    bundle = tmp_path / 'cert.pem'
    bundle.write_bytes(b'left alone')
    source_mtime = (tmp_path / 'ca' / 'mitm-ca.crt').stat().st_mtime
    os.utime(bundle, (source_mtime + 10, source_mtime + 10))

    trusting_store(tmp_path).ensure_ca()

    assert bundle.read_bytes() == b'left alone'


def test_trust_store_reinstalled_when_stale(tmp_path):
    trusting_store(tmp_path).ensure_ca()

    bundle = tmp_path / 'cert.pem'
    bundle.write_bytes(b'stale')
    source_mtime = (tmp_path / 'ca' / 'mitm-ca.crt').stat().st_mtime
    os.utime(bundle, (source_mtime - 10, source_mtime - 10))

    trusting_store(tmp_path).ensure_ca()

    assert bundle.read_bytes() == (tmp_path / 'ca' / 'mitm-ca.crt').read_bytes()
