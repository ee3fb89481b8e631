"""Shared fixtures: throwaway certificates written to tmp_path."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.ec import EllipticCurvePrivateKey
from cryptography.x509.oid import NameOID


def make_certificate(
    common_name: str,
    issuer_key: EllipticCurvePrivateKey | None = None,
    issuer_name: str | None = None,
    is_ca: bool = False,
) -> tuple[x509.Certificate, EllipticCurvePrivateKey]:
    """Create a certificate, self-signed unless an issuer key and name are given."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_name or common_name)])
    now = datetime.now(tz=timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
        .sign(issuer_key or private_key, hashes.SHA256())
    )
    return cert, private_key


def write_pem(path: Path, certs: list[x509.Certificate]) -> str:
    path.write_bytes(b"".join(cert.public_bytes(serialization.Encoding.PEM) for cert in certs))
    return str(path)


def write_key(path: Path, private_key: EllipticCurvePrivateKey) -> str:
    path.write_bytes(
        private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    return str(path)


@pytest.fixture
def root_ca(tmp_path: Path) -> tuple[x509.Certificate, EllipticCurvePrivateKey, str]:
    """Root CA certificate, its key, and the PEM path."""
    cert, key = make_certificate("Test Edge Root CA", is_ca=True)
    return cert, key, write_pem(tmp_path / "root.ca.cert.pem", [cert])


@pytest.fixture
def ca_signed_leaf(tmp_path: Path, root_ca: tuple[x509.Certificate, EllipticCurvePrivateKey, str]) -> dict[str, object]:
    """Leaf certificate signed by an intermediate, written as leaf + intermediate chain."""
    root_cert, root_key, _ = root_ca
    intermediate_cert, intermediate_key = make_certificate(
        "Test Intermediate CA", issuer_key=root_key, issuer_name="Test Edge Root CA", is_ca=True
    )
    leaf_cert, leaf_key = make_certificate("leaf-01", issuer_key=intermediate_key, issuer_name="Test Intermediate CA")
    return {
        "cert": leaf_cert,
        "chain": [intermediate_cert],
        "cert_path": write_pem(tmp_path / "leaf-01.cert.pem", [leaf_cert, intermediate_cert]),
        "key_path": write_key(tmp_path / "leaf-01.key.pem", leaf_key),
    }


@pytest.fixture
def self_signed_pair(tmp_path: Path) -> dict[str, object]:
    """Primary and secondary self-signed certificates for thumbprint authentication."""
    primary_cert, primary_key = make_certificate("leaf-01-primary")
    secondary_cert, _ = make_certificate("leaf-01-secondary")
    return {
        "primary": primary_cert,
        "secondary": secondary_cert,
        "primary_path": write_pem(tmp_path / "primary.cert.pem", [primary_cert]),
        "primary_key_path": write_key(tmp_path / "primary.key.pem", primary_key),
        "secondary_path": write_pem(tmp_path / "secondary.cert.pem", [secondary_cert]),
    }


@pytest.fixture
def unrelated_key_path(tmp_path: Path) -> str:
    """Private key that belongs to no certificate under test."""
    _, other_key = make_certificate("someone-else")
    return write_key(tmp_path / "other.key.pem", other_key)
