"""Certificate handling for leaf device authentication.

Loads client certificates and their chains, derives X.509 thumbprints for
self-signed devices, and assembles the PEM trust bundle handed to the device
client in place of an OS certificate store.
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization

logger = logging.getLogger("leafdevice.certificates")


class AuthenticationType(Enum):
    NONE = "none"
    SAS = "sas"
    CERTIFICATE_AUTHORITY = "certificateAuthority"
    SELF_SIGNED = "selfSigned"


@dataclass
class DeviceCertificate:
    """Paths to a client certificate (optionally followed by its chain) and its private key."""

    certificate_file_path: str
    certificate_key_file_path: str


def load_pem_certificates(path: str) -> list[x509.Certificate]:
    """Load every certificate from a PEM file.

    Raises:
        ValueError: If the file does not exist or holds no PEM certificate.
    """
    if not path or not os.path.isfile(path):
        raise ValueError(f"'{path}' is not a path to a certificate file")

    with open(path, "rb") as f:
        data = f.read()

    try:
        certs = x509.load_pem_x509_certificates(data)
    except ValueError as e:
        raise ValueError(f"Could not load certificates from '{path}': {e}") from e

    logger.debug(f"Loaded {len(certs)} certificate(s) from {path}")
    return certs


def load_client_certificate(
    device_certificate: DeviceCertificate,
) -> tuple[x509.Certificate, list[x509.Certificate]]:
    """Load a client certificate with its chain and check the private key matches.

    The first certificate in the file is the client certificate; any that
    follow form its chain.

    Args:
        device_certificate: Certificate and key file paths

    Returns:
        Tuple of (client certificate, chain certificates)

    Raises:
        ValueError: If either file is missing or unreadable, or the key does not
            belong to the certificate.
    """
    certs = load_pem_certificates(device_certificate.certificate_file_path)
    client_cert, chain = certs[0], certs[1:]

    key_path = device_certificate.certificate_key_file_path
    if not key_path or not os.path.isfile(key_path):
        raise ValueError(f"'{key_path}' is not a path to a certificate key file")

    with open(key_path, "rb") as f:
        try:
            private_key = serialization.load_pem_private_key(f.read(), password=None)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Could not load private key from '{key_path}': {e}") from e

    if _public_key_bytes(private_key.public_key()) != _public_key_bytes(client_cert.public_key()):
        raise ValueError(
            f"Private key '{key_path}' does not match certificate '{device_certificate.certificate_file_path}'"
        )

    subject = client_cert.subject.rfc4514_string()
    logger.info(f"Loaded client certificate {subject} with {len(chain)} chain certificate(s)")
    return client_cert, chain


def _public_key_bytes(public_key: object) -> bytes:
    return public_key.public_bytes(  # type: ignore[attr-defined, no-any-return]
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def compute_thumbprint(cert: x509.Certificate) -> str:
    """Upper-case hex SHA-1 fingerprint, the form IoT Hub stores for self-signed devices."""
    return cert.fingerprint(hashes.SHA1()).hex().upper()


def load_thumbprints(certificate_paths: list[str]) -> list[str]:
    """Compute the primary and secondary thumbprints for a self-signed device.

    Args:
        certificate_paths: Exactly two PEM certificate paths (primary, secondary)

    Returns:
        The two thumbprints in the same order

    Raises:
        ValueError: If the count is not two, a path is blank or missing, or a file
            holds no certificate.
    """
    if len(certificate_paths) != 2:
        raise ValueError("Exactly two client thumbprint certificates expected")

    for path in certificate_paths:
        if not path or not path.strip() or not os.path.isfile(path):
            raise ValueError(f"'{path}' is not a path to a thumbprint certificate file")

    return [compute_thumbprint(load_pem_certificates(path)[0]) for path in certificate_paths]


def certificates_to_pem(certs: list[x509.Certificate]) -> str:
    return "".join(cert.public_bytes(serialization.Encoding.PEM).decode("ascii") for cert in certs)


def build_trust_bundle(trusted_ca_certificate_path: str | None, chain: list[x509.Certificate]) -> str | None:
    """Assemble the PEM trust bundle for the device client.

    Args:
        trusted_ca_certificate_path: Edge gateway's trusted CA certificate, or empty for platform defaults
        chain: Extra certificates to trust (the client chain for CA auth)

    Returns:
        The PEM bundle, or None when there is nothing to add to the platform defaults
    """
    trusted: list[x509.Certificate] = []
    if trusted_ca_certificate_path:
        trusted.extend(load_pem_certificates(trusted_ca_certificate_path)[:1])
    trusted.extend(chain)

    if not trusted:
        return None

    logger.info(f"Trusting {len(trusted)} certificate(s) for the gateway connection")
    return certificates_to_pem(trusted)
