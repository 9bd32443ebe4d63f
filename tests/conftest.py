# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Shared test fixtures for the App Store signed-data verifier test suite.

Certificates are generated at test time with ``cryptography``: a P-256
root, an intermediate carrying Apple's intermediate marker extension,
and a leaf carrying Apple's leaf marker extension.  Signed tokens are
real ES256 JWS strings signed with the leaf key.  OCSP responders are
simulated in-process by an ``httpx`` transport that parses each request
and answers with a ``cryptography``-built response.
"""

from __future__ import annotations

import asyncio
import base64
import datetime
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509 import ocsp
from cryptography.x509.oid import AuthorityInformationAccessOID, ExtendedKeyUsageOID, NameOID

from app_store_verification.config import APPLE_INTERMEDIATE_CERT_OID, APPLE_LEAF_CERT_OID
from app_store_verification.verification.trust_cache import reset_trust_cache

BUNDLE_ID = "com.example.app"
APP_APPLE_ID = 1234567890
ROOT_OCSP_URL = "http://ocsp.test/root"
INTERMEDIATE_OCSP_URL = "http://ocsp.test/intermediate"

# Apple marker extensions carry an ASN.1 NULL value.
_DER_NULL = b"\x05\x00"


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


# =========================================================================
# Certificate construction
# =========================================================================

def make_name(common_name: str) -> x509.Name:
    return x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Example Test CA"),
    ])


def make_certificate(
    subject: x509.Name,
    issuer: x509.Name,
    public_key: Any,
    signing_key: Any,
    not_before: datetime.datetime,
    not_after: datetime.datetime,
    *,
    ca: Optional[bool],
    marker_oid: Optional[str] = None,
    ocsp_url: Optional[str] = None,
    ocsp_signing: bool = False,
) -> x509.Certificate:
    """Build and sign a certificate.

    ``ca=None`` omits the basicConstraints extension altogether.
    """
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    if ca is not None:
        builder = builder.add_extension(
            x509.BasicConstraints(ca=ca, path_length=None), critical=True
        )
    if marker_oid is not None:
        builder = builder.add_extension(
            x509.UnrecognizedExtension(x509.ObjectIdentifier(marker_oid), _DER_NULL),
            critical=False,
        )
    if ocsp_url is not None:
        builder = builder.add_extension(
            x509.AuthorityInformationAccess([
                x509.AccessDescription(
                    AuthorityInformationAccessOID.OCSP,
                    x509.UniformResourceIdentifier(ocsp_url),
                )
            ]),
            critical=False,
        )
    if ocsp_signing:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.OCSP_SIGNING]), critical=False
        )
    return builder.sign(signing_key, hashes.SHA256())


def der(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.DER)


@dataclass
class CertChain:
    """Generated ``[leaf, intermediate, root]`` chain and its private keys."""

    leaf: x509.Certificate
    intermediate: x509.Certificate
    root: x509.Certificate
    leaf_key: ec.EllipticCurvePrivateKey
    intermediate_key: ec.EllipticCurvePrivateKey
    root_key: ec.EllipticCurvePrivateKey

    @property
    def root_der(self) -> bytes:
        return der(self.root)

    @property
    def x5c(self) -> List[str]:
        return [
            base64.b64encode(der(c)).decode("ascii")
            for c in (self.leaf, self.intermediate, self.root)
        ]


def build_chain(
    *,
    leaf_validity: Optional[Tuple[datetime.datetime, datetime.datetime]] = None,
    intermediate_validity: Optional[Tuple[datetime.datetime, datetime.datetime]] = None,
    root_validity: Optional[Tuple[datetime.datetime, datetime.datetime]] = None,
    leaf_oid: bool = True,
    intermediate_oid: bool = True,
    leaf_ca: Optional[bool] = False,
    intermediate_ca: Optional[bool] = True,
    with_ocsp: bool = False,
    leaf_curve: Optional[ec.EllipticCurve] = None,
) -> CertChain:
    """Generate a fresh chain.  Defaults produce a chain valid right now."""
    now = utcnow()
    default = (now - datetime.timedelta(days=1), now + datetime.timedelta(days=365))

    root_key = ec.generate_private_key(ec.SECP256R1())
    intermediate_key = ec.generate_private_key(ec.SECP256R1())
    leaf_key = ec.generate_private_key(leaf_curve or ec.SECP256R1())

    root_name = make_name("Test Root CA")
    intermediate_name = make_name("Test Intermediate CA")

    root = make_certificate(
        root_name, root_name, root_key.public_key(), root_key,
        *(root_validity or default), ca=True,
    )
    intermediate = make_certificate(
        intermediate_name, root_name, intermediate_key.public_key(), root_key,
        *(intermediate_validity or default),
        ca=intermediate_ca,
        marker_oid=APPLE_INTERMEDIATE_CERT_OID if intermediate_oid else None,
        ocsp_url=ROOT_OCSP_URL if with_ocsp else None,
    )
    leaf = make_certificate(
        make_name("Test Signing Leaf"), intermediate_name, leaf_key.public_key(), intermediate_key,
        *(leaf_validity or default),
        ca=leaf_ca,
        marker_oid=APPLE_LEAF_CERT_OID if leaf_oid else None,
        ocsp_url=INTERMEDIATE_OCSP_URL if with_ocsp else None,
    )
    return CertChain(
        leaf=leaf,
        intermediate=intermediate,
        root=root,
        leaf_key=leaf_key,
        intermediate_key=intermediate_key,
        root_key=root_key,
    )


# =========================================================================
# Signed tokens
# =========================================================================

def sign_jws(
    payload: Dict[str, Any],
    key: ec.EllipticCurvePrivateKey,
    x5c: Optional[List[str]],
    alg: str = "ES256",
    extra_header: Optional[Dict[str, Any]] = None,
) -> str:
    """Produce a compact ES256 JWS with raw ``R || S`` signature encoding."""
    header: Dict[str, Any] = {"alg": alg}
    if x5c is not None:
        header["x5c"] = x5c
    header.update(extra_header or {})
    signing_input = (
        f"{b64url(json.dumps(header).encode())}.{b64url(json.dumps(payload).encode())}"
    )
    r, s = decode_dss_signature(
        key.sign(signing_input.encode("ascii"), ec.ECDSA(hashes.SHA256()))
    )
    size = (key.curve.key_size + 7) // 8
    signature = r.to_bytes(size, "big") + s.to_bytes(size, "big")
    return f"{signing_input}.{b64url(signature)}"


def now_ms() -> int:
    return int(time.time() * 1000)


# =========================================================================
# OCSP responder
# =========================================================================

@dataclass
class OCSPResponder(httpx.AsyncBaseTransport):
    """In-process OCSP responder for a generated chain.

    Each request is parsed; the response covers the requested serial,
    is signed by the issuer, and carries the status configured in
    ``statuses`` (default ``GOOD``).
    """

    chain: CertChain
    statuses: Dict[int, ocsp.OCSPCertStatus] = field(default_factory=dict)
    http_status: int = 200
    raw_response: Optional[bytes] = None
    delay: float = 0.0
    requests: List[httpx.Request] = field(default_factory=list)

    def _issuer_for(self, serial: int) -> Tuple[x509.Certificate, x509.Certificate, Any]:
        if serial == self.chain.intermediate.serial_number:
            return self.chain.intermediate, self.chain.root, self.chain.root_key
        return self.chain.leaf, self.chain.intermediate, self.chain.intermediate_key

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.http_status != 200:
            return httpx.Response(self.http_status, content=b"")
        if self.raw_response is not None:
            return httpx.Response(200, content=self.raw_response)

        ocsp_request = ocsp.load_der_ocsp_request(request.content)
        cert, issuer, issuer_key = self._issuer_for(ocsp_request.serial_number)
        status = self.statuses.get(cert.serial_number, ocsp.OCSPCertStatus.GOOD)
        body = build_ocsp_response(cert, issuer, issuer_key, issuer, status=status)
        return httpx.Response(
            200, content=body, headers={"content-type": "application/ocsp-response"}
        )


def build_ocsp_response(
    cert: x509.Certificate,
    issuer: x509.Certificate,
    responder_key: Any,
    responder_cert: x509.Certificate,
    *,
    status: ocsp.OCSPCertStatus = ocsp.OCSPCertStatus.GOOD,
    this_update: Optional[datetime.datetime] = None,
    next_update: Optional[datetime.datetime] = None,
    include_responder_cert: bool = False,
    encoding: ocsp.OCSPResponderEncoding = ocsp.OCSPResponderEncoding.HASH,
) -> bytes:
    now = utcnow()
    revocation_time = now - datetime.timedelta(hours=1) if status == ocsp.OCSPCertStatus.REVOKED else None
    revocation_reason = x509.ReasonFlags.key_compromise if revocation_time else None
    builder = (
        ocsp.OCSPResponseBuilder()
        .add_response(
            cert=cert,
            issuer=issuer,
            algorithm=hashes.SHA1(),
            cert_status=status,
            this_update=this_update or now - datetime.timedelta(minutes=5),
            next_update=next_update or now + datetime.timedelta(hours=12),
            revocation_time=revocation_time,
            revocation_reason=revocation_reason,
        )
        .responder_id(encoding, responder_cert)
    )
    if include_responder_cert:
        builder = builder.certificates([responder_cert])
    response = builder.sign(responder_key, hashes.SHA256())
    return response.public_bytes(serialization.Encoding.DER)


class TimeoutTransport(httpx.AsyncBaseTransport):
    """Transport that always times out."""

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("Mock timeout")


class ConnectErrorTransport(httpx.AsyncBaseTransport):
    """Transport that always fails to connect."""

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused")


# =========================================================================
# Fixtures
# =========================================================================

@pytest.fixture
def chain() -> CertChain:
    """A fresh chain valid now, with Apple marker extensions and no OCSP URLs."""
    return build_chain()


@pytest.fixture
def ocsp_chain() -> CertChain:
    """A fresh chain whose intermediate and leaf advertise OCSP responders."""
    return build_chain(with_ocsp=True)


@pytest.fixture
def make_signed(chain: CertChain) -> Callable[..., str]:
    """Factory fixture: sign a payload with the default chain's leaf."""

    def _make(payload: Dict[str, Any], **kwargs: Any) -> str:
        return sign_jws(payload, chain.leaf_key, kwargs.pop("x5c", chain.x5c), **kwargs)

    return _make


@pytest.fixture(autouse=True)
def _reset_trust_cache():
    """Every test starts with a fresh process-wide trust cache."""
    reset_trust_cache()
    yield
    reset_trust_cache()
