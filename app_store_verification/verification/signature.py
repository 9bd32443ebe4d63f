# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""ES256 signature verification for App Store signed data.

Verifies the JWS signature using the leaf public key produced by chain
verification.  Only ECDSA P-256 with SHA-256 is accepted; the JWS carries
the signature as the 64-byte concatenation ``R || S`` (RFC 7518 §3.4),
which is converted to DER before handing it to ``cryptography``.

References
----------
- RFC 7515 §5.2 — Message signature validation
- RFC 7518 §3.4 — ECDSA digital signatures
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from app_store_verification.verification.exceptions import VerificationException

if TYPE_CHECKING:
    from app_store_verification.verification.token import SignedToken

logger = logging.getLogger("asv.verifier")

__all__ = ["verify_signature"]

# R and S are 32 bytes each for P-256.
_ES256_SIGNATURE_LEN = 64
_COORDINATE_LEN = 32


def _load_p256_key(public_key_pem: str) -> ec.EllipticCurvePublicKey:
    try:
        key = serialization.load_pem_public_key(public_key_pem.encode("ascii"))
    except (ValueError, TypeError, UnicodeEncodeError, UnsupportedAlgorithm) as exc:
        raise VerificationException.signature_failed(
            "Signature verification failed: invalid key"
        ) from exc
    if not isinstance(key, ec.EllipticCurvePublicKey) or not isinstance(key.curve, ec.SECP256R1):
        raise VerificationException.signature_failed(
            "Signature verification failed: key is not an EC P-256 key"
        )
    return key


def verify_signature(token: "SignedToken", public_key_pem: str) -> None:
    """Verify the ES256 signature on *token* with *public_key_pem*.

    Parameters
    ----------
    token : SignedToken
        The peeked token; supplies ``signing_input`` and the raw signature.
    public_key_pem : str
        Leaf SubjectPublicKeyInfo as a PEM block.

    Raises
    ------
    VerificationException
        ``verification_failure`` on a malformed or non-P-256 key, a
        signature that is not 64 bytes, or a signature mismatch.
    """
    key = _load_p256_key(public_key_pem)

    raw = token.signature
    if len(raw) != _ES256_SIGNATURE_LEN:
        raise VerificationException.signature_failed(
            f"Signature verification failed: expected {_ES256_SIGNATURE_LEN}-byte "
            f"signature, got {len(raw)}"
        )

    r = int.from_bytes(raw[:_COORDINATE_LEN], "big")
    s = int.from_bytes(raw[_COORDINATE_LEN:], "big")

    try:
        key.verify(
            encode_dss_signature(r, s),
            token.signing_input,
            ec.ECDSA(hashes.SHA256()),
        )
    except InvalidSignature as exc:
        raise VerificationException.signature_failed() from exc

    logger.debug("ES256 signature verified")
