import hashlib
import os
import stat

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from gokrpack.certs import (
    CertificateError,
    certificate_fingerprint_sha1,
    certificate_from_string,
    generate_and_sign_cert,
    generate_and_store_self_signed_certificate,
    validate_certificate,
)


@pytest.fixture(scope="module")
def pairs(tmp_path_factory):
    base = tmp_path_factory.mktemp("gokrazy-test")
    result = []
    for idx in range(2):
        cert_path = str(base / f"gokrazy-cert.{idx}.pem")
        key_path = str(base / f"gokrazy-key.{idx}.pem")
        generate_and_store_self_signed_certificate("", str(base), cert_path, key_path)
        result.append((cert_path, key_path))
    return result


def _validity(cert):
    after = getattr(cert, "not_valid_after_utc", None) or cert.not_valid_after
    before = getattr(cert, "not_valid_before_utc", None) or cert.not_valid_before
    return after - before


def test_validate_certificate_valid(pairs):
    (c1, k1), _ = pairs
    validate_certificate(c1, k1)
    with open(c1) as f:
        cert = certificate_from_string(f.read())
    assert cert.subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)[0].value == "gokrazy"


def test_validate_certificate_wrong_key(pairs):
    (c1, _), (_, k2) = pairs
    with pytest.raises(CertificateError):
        validate_certificate(c1, k2)


def test_validate_certificate_missing_file(tmp_path, pairs):
    (c1, _), _ = pairs
    with pytest.raises(CertificateError):
        validate_certificate(c1, str(tmp_path / "missing.pem"))


def test_key_file_is_private(pairs):
    (_, k1), _ = pairs
    assert stat.S_IMODE(os.stat(k1).st_mode) & 0o077 == 0


def test_certificate_properties(pairs):
    (c1, _), _ = pairs
    with open(c1) as f:
        cert = certificate_from_string(f.read())
    assert _validity(cert).days == 2 * 365
    eku = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    assert list(eku) == [ExtendedKeyUsageOID.SERVER_AUTH]
    assert cert.public_key().key_size == 4096


def test_fingerprint_is_sha1_of_der(pairs):
    (c1, _), (c2, _) = pairs
    with open(c1) as f:
        cert1 = certificate_from_string(f.read())
    with open(c2) as f:
        cert2 = certificate_from_string(f.read())
    fp = certificate_fingerprint_sha1(cert1)
    assert len(fp) == 20
    assert fp == hashlib.sha1(cert1.public_bytes(serialization.Encoding.DER)).digest()
    assert fp != certificate_fingerprint_sha1(cert2)


def test_generate_and_sign_cert_hostname():
    der, key = generate_and_sign_cert("gokrazy.example.com")
    cert = x509.load_der_x509_certificate(der)
    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert san.get_values_for_type(x509.DNSName) == ["gokrazy.example.com"]
    assert cert.public_key().public_numbers() == key.public_key().public_numbers()


def test_certificate_from_string_invalid():
    with pytest.raises(CertificateError):
        certificate_from_string("not a certificate")