# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Tests for ES256 JWS signature verification.

References:
    - RFC 7518 §3.4 — ECDSA R || S signature encoding
"""

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from app_store_verification.verification.certificates import public_key_pem
from app_store_verification.verification.exceptions import (
    VerificationException,
    VerificationStatus,
)
from app_store_verification.verification.signature import verify_signature
from app_store_verification.verification.token import peek_token
from tests.conftest import b64url, sign_jws


def _pem(public_key) -> str:
    return public_key.public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


class TestVerifySignature:

    def test_valid_signature(self, chain):
        token = peek_token(sign_jws({"bundleId": "com.example.app"}, chain.leaf_key, chain.x5c))
        verify_signature(token, public_key_pem(chain.leaf))

    def test_tampered_payload(self, chain):
        jws = sign_jws({"price": 100}, chain.leaf_key, chain.x5c)
        header, _, signature = jws.split(".")
        forged_payload = b64url(b'{"price": 1}')
        forged = f"{header}.{forged_payload}.{signature}"
        with pytest.raises(VerificationException) as exc_info:
            verify_signature(peek_token(forged), public_key_pem(chain.leaf))
        assert exc_info.value.status == VerificationStatus.VERIFICATION_FAILURE
        assert exc_info.value.message == "Signature verification failed"

    def test_wrong_key(self, chain):
        token = peek_token(sign_jws({}, chain.leaf_key, chain.x5c))
        other = ec.generate_private_key(ec.SECP256R1())
        with pytest.raises(VerificationException):
            verify_signature(token, _pem(other.public_key()))

    @pytest.mark.parametrize("length", [0, 63, 65, 72])
    def test_signature_wrong_length(self, chain, length):
        jws = sign_jws({}, chain.leaf_key, chain.x5c)
        signing_input = jws.rsplit(".", 1)[0]
        signature = b64url(bytes([1]) * length)
        token = peek_token(f"{signing_input}.{signature}")
        with pytest.raises(VerificationException) as exc_info:
            verify_signature(token, public_key_pem(chain.leaf))
        assert "64-byte" in exc_info.value.message

    def test_der_signature_rejected(self, chain):
        """A DER-encoded ECDSA signature is not a valid JWS signature."""
        jws = sign_jws({}, chain.leaf_key, chain.x5c)
        signing_input = jws.rsplit(".", 1)[0]
        der_sig = chain.leaf_key.sign(signing_input.encode("ascii"), ec.ECDSA(hashes.SHA256()))
        token = peek_token(f"{signing_input}.{b64url(der_sig)}")
        with pytest.raises(VerificationException):
            verify_signature(token, public_key_pem(chain.leaf))

    def test_p384_key_rejected(self, chain):
        key = ec.generate_private_key(ec.SECP384R1())
        token = peek_token(sign_jws({}, key, chain.x5c))
        with pytest.raises(VerificationException) as exc_info:
            verify_signature(token, _pem(key.public_key()))
        assert "not an EC P-256 key" in exc_info.value.message

    def test_rsa_key_rejected(self, chain):
        token = peek_token(sign_jws({}, chain.leaf_key, chain.x5c))
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        with pytest.raises(VerificationException) as exc_info:
            verify_signature(token, _pem(key.public_key()))
        assert "not an EC P-256 key" in exc_info.value.message

    def test_invalid_pem(self, chain):
        token = peek_token(sign_jws({}, chain.leaf_key, chain.x5c))
        with pytest.raises(VerificationException) as exc_info:
            verify_signature(token, "-----BEGIN PUBLIC KEY-----\ngarbage\n-----END PUBLIC KEY-----\n")
        assert exc_info.value.message == "Signature verification failed: invalid key"
