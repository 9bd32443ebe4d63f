# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""OCSP revocation checking for App Store certificate chains.

For a ``(certificate, issuer)`` pair the client:

1. Locates the OCSP responder URL in the certificate's Authority
   Information Access extension.  A certificate without one cannot be
   checked online and is accepted.
2. Builds an unsigned RFC 6960 ``OCSPRequest`` with a single ``CertID``
   (SHA-1 of the issuer's DER subject name, SHA-1 of the issuer's public
   key bits, certificate serial number).
3. POSTs it to the responder with ``Content-Type:
   application/ocsp-request`` and a bounded timeout.
4. Validates the DER ``OCSPResponse``: response status, CertID match,
   responder authorisation and signature, ``thisUpdate`` /
   ``nextUpdate`` freshness, and finally the certificate status.

Outcome mapping
---------------

* ``good`` — returns normally.
* ``revoked`` — ``verification_failure`` (terminal).
* ``unknown``, ``tryLater``, ``internalError``, stale responses,
  network errors, timeouts and non-200 replies —
  ``retryable_verification_failure``.
* Any other malformed or unauthorised response — ``verification_failure``.

References
----------
- RFC 6960 — X.509 Internet Public Key Infrastructure OCSP
- RFC 5019 — Lightweight OCSP profile
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import httpx
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509 import ocsp
from cryptography.x509.oid import AuthorityInformationAccessOID, ExtendedKeyUsageOID

from app_store_verification.config import (
    CLOCK_SKEW_SECONDS,
    OCSP_REQUEST_CONTENT_TYPE,
    OCSP_RESPONSE_CONTENT_TYPE,
    OCSP_TIMEOUT_MS,
)
from app_store_verification.verification.certificates import (
    public_key_bits,
    subject_label,
    verify_signed_by,
)
from app_store_verification.verification.exceptions import VerificationException

logger = logging.getLogger("asv.ocsp")

__all__ = [
    "OCSPClient",
    "build_ocsp_request",
    "get_ocsp_url",
    "validate_ocsp_response",
]

_RETRYABLE_RESPONSE_STATUSES = frozenset({
    ocsp.OCSPResponseStatus.TRY_LATER,
    ocsp.OCSPResponseStatus.INTERNAL_ERROR,
})


# ======================================================================
# Request side
# ======================================================================


def get_ocsp_url(cert: x509.Certificate) -> Optional[str]:
    """Return the first OCSP responder URL from *cert*'s AIA extension."""
    try:
        aia = cert.extensions.get_extension_for_class(
            x509.AuthorityInformationAccess
        ).value
    except x509.ExtensionNotFound:
        return None
    for description in aia:
        if (
            description.access_method == AuthorityInformationAccessOID.OCSP
            and isinstance(description.access_location, x509.UniformResourceIdentifier)
        ):
            return description.access_location.value
    return None


def build_ocsp_request(cert: x509.Certificate, issuer: x509.Certificate) -> bytes:
    """Build a DER ``OCSPRequest`` for *cert* issued by *issuer*.

    The ``CertID`` uses SHA-1, as required by RFC 5019 responders.
    """
    try:
        request = (
            ocsp.OCSPRequestBuilder()
            .add_certificate(cert, issuer, hashes.SHA1())
            .build()
        )
        return request.public_bytes(serialization.Encoding.DER)
    except (TypeError, ValueError) as exc:
        raise VerificationException.failure(
            f"Failed to build OCSP request: {exc}"
        ) from exc


# ======================================================================
# Response validation
# ======================================================================


def _digest(algorithm: hashes.HashAlgorithm, data: bytes) -> bytes:
    h = hashes.Hash(algorithm)
    h.update(data)
    return h.finalize()


def _find_single_response(
    response: ocsp.OCSPResponse,
    cert: x509.Certificate,
    issuer: x509.Certificate,
) -> ocsp.OCSPSingleResponse:
    issuer_name_der = issuer.subject.public_bytes()
    issuer_key = public_key_bits(issuer)
    for single in response.responses:
        if single.serial_number != cert.serial_number:
            continue
        algorithm = single.hash_algorithm
        if (
            single.issuer_name_hash == _digest(algorithm, issuer_name_der)
            and single.issuer_key_hash == _digest(algorithm, issuer_key)
        ):
            return single
    raise VerificationException.ocsp_invalid(
        f"response does not cover certificate {subject_label(cert)}"
    )


def _responder_matches(response: ocsp.OCSPResponse, candidate: x509.Certificate) -> bool:
    if response.responder_name is not None:
        return response.responder_name == candidate.subject
    key_hash = response.responder_key_hash
    return key_hash is not None and key_hash == _digest(hashes.SHA1(), public_key_bits(candidate))


def _is_delegated_responder(
    candidate: x509.Certificate,
    issuer: x509.Certificate,
    now: int,
) -> bool:
    """A responder certificate issued by *issuer* for OCSP signing (RFC 6960 §4.2.2.2)."""
    if candidate.issuer != issuer.subject:
        return False
    try:
        eku = candidate.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    except x509.ExtensionNotFound:
        return False
    if ExtendedKeyUsageOID.OCSP_SIGNING not in eku:
        return False
    not_before = int(candidate.not_valid_before_utc.timestamp())
    not_after = int(candidate.not_valid_after_utc.timestamp())
    if not (not_before - CLOCK_SKEW_SECONDS <= now <= not_after + CLOCK_SKEW_SECONDS):
        return False
    try:
        verify_signed_by(
            issuer.public_key(),
            candidate.signature,
            candidate.tbs_certificate_bytes,
            candidate.signature_hash_algorithm,
        )
    except (InvalidSignature, ValueError):
        return False
    return True


def _select_responder(
    response: ocsp.OCSPResponse,
    issuer: x509.Certificate,
    now: int,
) -> x509.Certificate:
    if _responder_matches(response, issuer):
        return issuer
    for candidate in response.certificates:
        if _responder_matches(response, candidate) and _is_delegated_responder(
            candidate, issuer, now
        ):
            return candidate
    raise VerificationException.ocsp_invalid("responder is not authorized by the issuer")


def validate_ocsp_response(
    response_der: bytes,
    cert: x509.Certificate,
    issuer: x509.Certificate,
    now: int,
) -> None:
    """Validate a DER ``OCSPResponse`` for *cert* at time *now*.

    Raises:
        VerificationException: As described in the module docstring.
    """
    try:
        response = ocsp.load_der_ocsp_response(response_der)
    except ValueError as exc:
        raise VerificationException.retryable_failure(
            f"OCSP response could not be parsed: {exc}"
        ) from exc

    status = response.response_status
    if status in _RETRYABLE_RESPONSE_STATUSES:
        raise VerificationException.retryable_failure(
            f"OCSP responder returned {status.name}"
        )
    if status != ocsp.OCSPResponseStatus.SUCCESSFUL:
        raise VerificationException.ocsp_invalid(f"responder returned {status.name}")

    try:
        single = _find_single_response(response, cert, issuer)
        responder = _select_responder(response, issuer, now)
        try:
            verify_signed_by(
                responder.public_key(),
                response.signature,
                response.tbs_response_bytes,
                response.signature_hash_algorithm,
            )
        except InvalidSignature as exc:
            raise VerificationException.ocsp_invalid("response signature is invalid") from exc

        this_update = int(single.this_update_utc.timestamp())
        if this_update > now + CLOCK_SKEW_SECONDS:
            raise VerificationException.ocsp_invalid(
                f"thisUpdate {this_update} is in the future (now={now})"
            )
        next_update_utc = single.next_update_utc
        if next_update_utc is not None and int(next_update_utc.timestamp()) < now - CLOCK_SKEW_SECONDS:
            raise VerificationException.retryable_failure(
                f"OCSP response is stale (nextUpdate={int(next_update_utc.timestamp())}, now={now})"
            )

        cert_status = single.certificate_status
    except VerificationException:
        raise
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise VerificationException.retryable_failure(
            f"OCSP validation exception: {exc}"
        ) from exc

    if cert_status == ocsp.OCSPCertStatus.GOOD:
        return
    if cert_status == ocsp.OCSPCertStatus.REVOKED:
        reason = single.revocation_reason
        raise VerificationException.revoked(
            subject_label(cert), reason.name if reason is not None else "unspecified"
        )
    raise VerificationException.retryable_failure(
        f"Certificate revocation status undetermined for {subject_label(cert)}"
    )


# ======================================================================
# OCSPClient
# ======================================================================


class OCSPClient:
    """Checks certificate revocation status against OCSP responders.

    Parameters
    ----------
    timeout_ms : int
        Per-request timeout in milliseconds (default ``OCSP_TIMEOUT_MS``).
    http_client : httpx.AsyncClient or None
        A client owned by the caller.  When omitted, a short-lived client
        is created per request.
    transport : httpx.AsyncBaseTransport or None
        Transport for the short-lived clients (ignored when
        ``http_client`` is given).
    clock : callable
        Returns the current Unix time; used for response freshness.
    """

    def __init__(
        self,
        timeout_ms: int = OCSP_TIMEOUT_MS,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._timeout = httpx.Timeout(timeout_ms / 1000.0)
        self._http_client = http_client
        self._transport = transport
        self._clock = clock

    async def check_status(self, cert: x509.Certificate, issuer: x509.Certificate) -> None:
        """Confirm *cert* is not revoked.

        A certificate without an OCSP responder URL is accepted.

        Raises:
            VerificationException: On revocation, an invalid response, or a
                retryable transport / responder condition.
        """
        url = get_ocsp_url(cert)
        if url is None:
            logger.debug(
                "No OCSP responder for %s; skipping revocation check",
                subject_label(cert),
            )
            return

        request_der = build_ocsp_request(cert, issuer)
        response_der = await self._post(url, request_der)
        validate_ocsp_response(response_der, cert, issuer, int(self._clock()))
        logger.debug("OCSP status good for %s", subject_label(cert))

    async def _post(self, url: str, request_der: bytes) -> bytes:
        headers = {
            "Content-Type": OCSP_REQUEST_CONTENT_TYPE,
            "Accept": OCSP_RESPONSE_CONTENT_TYPE,
        }
        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    url, content=request_der, headers=headers, timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient(
                    timeout=self._timeout,
                    transport=self._transport,
                ) as client:
                    response = await client.post(url, content=request_der, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("OCSP request to %s timed out", url)
            raise VerificationException.retryable_failure(
                f"OCSP request timed out: {url}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("OCSP request to %s failed: %s", url, exc)
            raise VerificationException.retryable_failure(
                f"OCSP network error: {exc}"
            ) from exc

        if response.status_code != 200:
            logger.warning("OCSP responder %s returned HTTP %d", url, response.status_code)
            raise VerificationException.retryable_failure(
                f"OCSP HTTP error: {response.status_code}"
            )
        return response.content
