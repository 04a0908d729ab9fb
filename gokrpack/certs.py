"""Self-signed TLS certificates for the web interface of an installation."""

from __future__ import annotations

import datetime
import hashlib
import os
import secrets

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

_VALIDITY = datetime.timedelta(days=2 * 365)
_KEY_SIZE = 4096


class CertificateError(ValueError):
    """Raised when a certificate or key cannot be loaded or do not match."""


def generate_and_sign_cert(hostname: str) -> tuple[bytes, rsa.RSAPrivateKey]:
    """A DER-encoded self-signed server certificate for hostname and its key."""
    not_before = datetime.datetime.now(datetime.timezone.utc)
    not_after = not_before + _VALIDITY
    serial_number = secrets.randbelow((1 << 128) - 1) + 1
    key = rsa.generate_private_key(public_exponent=65537, key_size=_KEY_SIZE)
    name = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, "gokrazy")])

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(serial_number)
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
    )
    if hostname:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False
        )
    cert = builder.sign(key, hashes.SHA256())
    return cert.public_bytes(serialization.Encoding.DER), key


def _write_file(path: str, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


def generate_and_store_self_signed_certificate(
    hostname: str, host_config_path: str, cert_path: str, key_path: str
) -> None:
    """Generate a certificate for hostname and store it and its key as PEM files."""
    print("Generating new self-signed certificate...")
    os.makedirs(host_config_path, mode=0o755, exist_ok=True)
    der, key = generate_and_sign_cert(hostname)

    cert = x509.load_der_x509_certificate(der)
    _write_file(cert_path, cert.public_bytes(serialization.Encoding.PEM), 0o644)

    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    _write_file(key_path, key_pem, 0o600)


def _public_der(public_key) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )


def validate_certificate(cert_path: str, key_path: str) -> None:
    """Check that the certificate and key files form a pair; empty paths pass."""
    if not cert_path and not key_path:
        return
    try:
        with open(cert_path, "rb") as f:
            cert = x509.load_pem_x509_certificate(f.read())
        with open(key_path, "rb") as f:
            key = serialization.load_pem_private_key(f.read(), password=None)
    except (OSError, ValueError, TypeError) as exc:
        raise CertificateError(f"loading key pair {cert_path}, {key_path}: {exc}") from exc
    if _public_der(cert.public_key()) != _public_der(key.public_key()):
        raise CertificateError("private key does not match public key")


def certificate_from_string(certstr: str) -> x509.Certificate:
    """Parse the first PEM certificate in certstr."""
    try:
        return x509.load_pem_x509_certificate(certstr.encode("utf-8"))
    except ValueError as exc:
        raise CertificateError(f"parsing certificate: {exc}") from exc


def certificate_fingerprint_sha1(certificate: x509.Certificate) -> bytes:
    """SHA-1 over the DER encoding of certificate."""
    return hashlib.sha1(certificate.public_bytes(serialization.Encoding.DER)).digest()