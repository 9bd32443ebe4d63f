# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""X.509 helpers shared by chain verification and OCSP validation."""

from __future__ import annotations

import base64
import binascii
from typing import List, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa

from app_store_verification.verification.exceptions import VerificationException

__all__ = [
    "decode_x5c",
    "load_certificate",
    "public_key_bits",
    "public_key_pem",
    "subject_label",
    "verify_signed_by",
]


def decode_x5c(certificates: Sequence[object]) -> List[bytes]:
    """Decode standard-base64 ``x5c`` entries to DER bytes.

    Raises:
        VerificationException: ``invalid_certificate`` on any entry that is
            not a base64 string.
    """
    decoded: List[bytes] = []
    for index, entry in enumerate(certificates):
        if not isinstance(entry, str):
            raise VerificationException.invalid_certificate(
                f"x5c[{index}] must be a base64 string, got {type(entry).__name__}"
            )
        try:
            decoded.append(base64.b64decode(entry, validate=True))
        except (binascii.Error, ValueError) as exc:
            raise VerificationException.invalid_certificate(
                f"Failed to decode certificate x5c[{index}] from Base64: {exc}"
            ) from exc
    return decoded


def load_certificate(der: bytes, label: str) -> x509.Certificate:
    """Parse DER bytes as an X.509 certificate.

    Raises:
        VerificationException: ``invalid_certificate`` when the bytes are
            not a well-formed certificate.
    """
    try:
        return x509.load_der_x509_certificate(der)
    except ValueError as exc:
        raise VerificationException.invalid_certificate(
            f"Failed to parse {label} certificate: {exc}"
        ) from exc


def verify_signed_by(
    public_key: object,
    signature: bytes,
    data: bytes,
    hash_algorithm: hashes.HashAlgorithm | None,
) -> None:
    """Verify *signature* over *data* with an EC or RSA issuer key.

    Raises:
        cryptography.exceptions.InvalidSignature: On mismatch.
        ValueError: On an unsupported key type or missing hash algorithm.
    """
    if hash_algorithm is None:
        raise ValueError("signature hash algorithm is not supported")
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        public_key.verify(signature, data, ec.ECDSA(hash_algorithm))
    elif isinstance(public_key, rsa.RSAPublicKey):
        public_key.verify(signature, data, padding.PKCS1v15(), hash_algorithm)
    else:
        raise ValueError(f"unsupported issuer key type {type(public_key).__name__}")


def public_key_bits(cert: x509.Certificate) -> bytes:
    """Raw ``subjectPublicKey`` bits of *cert* (input to OCSP key hashes).

    For EC keys this is the uncompressed X9.62 point, for RSA keys the
    PKCS#1 ``RSAPublicKey`` encoding.
    """
    key = cert.public_key()
    if isinstance(key, ec.EllipticCurvePublicKey):
        return key.public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.UncompressedPoint,
        )
    if isinstance(key, rsa.RSAPublicKey):
        return key.public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.PKCS1,
        )
    raise ValueError(f"unsupported key type {type(key).__name__}")


def public_key_pem(cert: x509.Certificate) -> str:
    """SubjectPublicKeyInfo of *cert* as a PEM public key block."""
    return cert.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def subject_label(cert: x509.Certificate) -> str:
    """Short human-readable subject for log and error messages."""
    try:
        return cert.subject.rfc4514_string()
    except ValueError:
        return f"serial={cert.serial_number:x}"
