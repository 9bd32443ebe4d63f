# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""X.509 chain verification for the ``x5c`` header of App Store signed data.

A chain is exactly ``[leaf, intermediate, root]``.  Verification walks it
in a fixed order and stops at the first failure:

1. The chain root byte-equals one of the configured trust anchors.
2. Intermediate is signed by the root; leaf is signed by the intermediate.
3. Root, intermediate and leaf are valid at the effective date, with
   ``CLOCK_SKEW_SECONDS`` tolerance on both bounds.
4. Each certificate's issuer name equals its parent's subject name.
5. The intermediate is a CA; the leaf is not.
6. Apple marker extensions are present (strict mode only).
7. Neither the intermediate nor the leaf is revoked (online mode only).

On success the leaf's public key is returned as a PEM block.  With online
checks enabled the result is cached in a :class:`TrustCache` keyed by the
chain fingerprint and the verifier's policy (trust anchors and strict
flag), and concurrent verifications of the same uncached chain share one
in-flight task.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Dict, Iterable, List, Optional, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm

from app_store_verification.config import (
    APPLE_INTERMEDIATE_CERT_OID,
    APPLE_LEAF_CERT_OID,
    CLOCK_SKEW_SECONDS,
    EXPECTED_CHAIN_LENGTH,
)
from app_store_verification.verification.certificates import (
    decode_x5c,
    load_certificate,
    public_key_pem,
    subject_label,
    verify_signed_by,
)
from app_store_verification.verification.exceptions import VerificationException
from app_store_verification.verification.ocsp import OCSPClient
from app_store_verification.verification.trust_cache import (
    TrustCache,
    fingerprint,
    get_trust_cache,
)

logger = logging.getLogger("asv.chain")

__all__ = ["ChainVerifier"]

_CHAIN_LABELS = ("leaf", "intermediate", "root")


def _cache_policy(root_certificates: Iterable[bytes], enable_strict_checks: bool) -> str:
    """Cache namespace for a verifier: strict flag plus a digest of its anchors."""
    h = hashlib.sha256()
    for root in sorted(root_certificates):
        h.update(len(root).to_bytes(4, "big"))
        h.update(root)
    mode = "strict" if enable_strict_checks else "lax"
    return f"{mode}:{h.hexdigest()}"


class ChainVerifier:
    """Verifies three-certificate App Store chains against trusted roots.

    Parameters
    ----------
    root_certificates : iterable of bytes
        DER-encoded trust anchors.  Compared to the chain root by exact
        byte equality.
    enable_strict_checks : bool
        When ``False`` the Apple marker extension checks are skipped
        (for test certificates).  All other checks still run.
    trust_cache : TrustCache or None
        Cache used for online verifications.  Defaults to the process-wide
        instance from :func:`get_trust_cache`.
    ocsp_client : OCSPClient or None
        Revocation checker for online verifications.
    """

    def __init__(
        self,
        root_certificates: Iterable[bytes],
        enable_strict_checks: bool = True,
        trust_cache: Optional[TrustCache] = None,
        ocsp_client: Optional[OCSPClient] = None,
    ) -> None:
        self._root_certificates = frozenset(bytes(c) for c in root_certificates)
        self._enable_strict_checks = enable_strict_checks
        self._cache_policy = _cache_policy(self._root_certificates, enable_strict_checks)
        self._trust_cache = trust_cache
        self._ocsp_client = ocsp_client if ocsp_client is not None else OCSPClient()
        self._inflight: Dict[str, asyncio.Future] = {}

    @property
    def root_certificates(self) -> frozenset:
        return self._root_certificates

    @property
    def enable_strict_checks(self) -> bool:
        return self._enable_strict_checks

    @property
    def trust_cache(self) -> TrustCache:
        if self._trust_cache is None:
            return get_trust_cache()
        return self._trust_cache

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def verify_chain(
        self,
        certificates: Sequence[str],
        perform_online_checks: bool,
        effective_date: int,
    ) -> str:
        """Verify *certificates* and return the leaf public key as PEM.

        Parameters
        ----------
        certificates : sequence of str
            Standard-base64 DER certificates from the ``x5c`` header,
            leaf first.
        perform_online_checks : bool
            Run OCSP checks and use the trust cache.
        effective_date : int
            Unix seconds used as "now" for validity checks.

        Raises
        ------
        VerificationException
            ``invalid_certificate``, ``invalid_chain_length``,
            ``invalid_chain``, ``verification_failure`` or
            ``retryable_verification_failure``.
        """
        if not self._root_certificates:
            raise VerificationException.no_trust_anchors()
        if len(certificates) != EXPECTED_CHAIN_LENGTH:
            raise VerificationException.invalid_chain_length(len(certificates))
        ders = decode_x5c(certificates)

        if not perform_online_checks:
            return await self._verify(ders, False, effective_date)

        # Entries written under another policy (anchors or strict flag) never match.
        cached = await self.trust_cache.get(certificates, self._cache_policy)
        if cached is not None and ders[2] in self._root_certificates:
            logger.debug("Trust cache hit for chain %s", fingerprint(certificates)[:16])
            return cached

        return await self._verify_single_flight(list(certificates), ders, effective_date)

    # ------------------------------------------------------------------
    # Online path
    # ------------------------------------------------------------------

    async def _verify_single_flight(
        self,
        certificates: List[str],
        ders: List[bytes],
        effective_date: int,
    ) -> str:
        key = fingerprint(certificates)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(
                self._verify_and_cache(certificates, ders, effective_date)
            )
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._task_done(k, t))
        else:
            logger.debug("Joining in-flight verification for chain %s", key[:16])
        return await asyncio.shield(task)

    def _task_done(self, key: str, task: asyncio.Future) -> None:
        self._inflight.pop(key, None)
        # Mark the failure as retrieved even when every waiter was cancelled.
        if not task.cancelled():
            task.exception()

    async def _verify_and_cache(
        self,
        certificates: List[str],
        ders: List[bytes],
        effective_date: int,
    ) -> str:
        public_key = await self._verify(ders, True, effective_date)
        await self.trust_cache.put(certificates, public_key, self._cache_policy)
        return public_key

    # ------------------------------------------------------------------
    # Verification pipeline
    # ------------------------------------------------------------------

    async def _verify(
        self,
        ders: List[bytes],
        perform_online_checks: bool,
        effective_date: int,
    ) -> str:
        leaf, intermediate, root = (
            load_certificate(der, label) for der, label in zip(ders, _CHAIN_LABELS)
        )

        self._verify_path(ders[2], leaf, intermediate, root, effective_date)

        if self._enable_strict_checks:
            self._check_apple_oids(leaf, intermediate)

        if perform_online_checks:
            await self._check_revocation(leaf, intermediate, root)

        try:
            pem = public_key_pem(leaf)
        except (ValueError, UnsupportedAlgorithm) as exc:
            raise VerificationException.failure(
                f"Failed to extract public key from leaf certificate: {exc}"
            ) from exc

        logger.debug("Verified chain for %s", subject_label(leaf))
        return pem

    def _verify_path(
        self,
        root_der: bytes,
        leaf: x509.Certificate,
        intermediate: x509.Certificate,
        root: x509.Certificate,
        effective_date: int,
    ) -> None:
        try:
            if root_der not in self._root_certificates:
                raise VerificationException.invalid_chain(
                    "Chain root certificate is not in trusted roots"
                )

            _check_signature(intermediate, root)
            _check_signature(leaf, intermediate)

            for cert in (root, intermediate, leaf):
                _check_validity(cert, effective_date)

            _check_issuer(intermediate, root)
            _check_issuer(leaf, intermediate)

            _check_basic_constraints(intermediate, expect_ca=True)
            _check_basic_constraints(leaf, expect_ca=False)
        except VerificationException:
            raise
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise VerificationException.invalid_chain(
                f"Certificate chain validation exception: {exc}"
            ) from exc

    def _check_apple_oids(self, leaf: x509.Certificate, intermediate: x509.Certificate) -> None:
        for cert, oid in (
            (leaf, APPLE_LEAF_CERT_OID),
            (intermediate, APPLE_INTERMEDIATE_CERT_OID),
        ):
            target = x509.ObjectIdentifier(oid)
            try:
                present = any(ext.oid == target for ext in cert.extensions)
            except ValueError as exc:
                raise VerificationException.failure(f"Failed to check OID: {exc}") from exc
            if not present:
                raise VerificationException.missing_oid(oid)

    async def _check_revocation(
        self,
        leaf: x509.Certificate,
        intermediate: x509.Certificate,
        root: x509.Certificate,
    ) -> None:
        try:
            await self._ocsp_client.check_status(intermediate, root)
            await self._ocsp_client.check_status(leaf, intermediate)
        except VerificationException as exc:
            logger.info("OCSP check rejected chain: %s (%s)", exc.message, exc.status.value)
            raise
        except Exception as exc:
            logger.exception("Unexpected error during OCSP check")
            raise VerificationException.retryable_failure(
                f"OCSP check failed: {exc}"
            ) from exc


# ----------------------------------------------------------------------
# Individual chain checks
# ----------------------------------------------------------------------


def _check_signature(cert: x509.Certificate, issuer: x509.Certificate) -> None:
    try:
        verify_signed_by(
            issuer.public_key(),
            cert.signature,
            cert.tbs_certificate_bytes,
            cert.signature_hash_algorithm,
        )
    except InvalidSignature as exc:
        raise VerificationException.invalid_chain(
            f"Certificate signature verification failed: {subject_label(cert)}"
        ) from exc


def _check_validity(cert: x509.Certificate, effective_date: int) -> None:
    not_before_unix = int(cert.not_valid_before_utc.timestamp())
    not_after_unix = int(cert.not_valid_after_utc.timestamp())
    if effective_date < not_before_unix - CLOCK_SKEW_SECONDS:
        raise VerificationException.not_yet_valid(
            subject_label(cert), not_before_unix, effective_date
        )
    if effective_date > not_after_unix + CLOCK_SKEW_SECONDS:
        raise VerificationException.expired(
            subject_label(cert), not_after_unix, effective_date
        )


def _check_issuer(cert: x509.Certificate, issuer: x509.Certificate) -> None:
    if cert.issuer != issuer.subject:
        raise VerificationException.invalid_chain(
            f"Certificate issuer mismatch: {subject_label(cert)}"
        )


def _check_basic_constraints(cert: x509.Certificate, expect_ca: bool) -> None:
    try:
        is_ca = cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        is_ca = False
    if expect_ca and not is_ca:
        raise VerificationException.invalid_chain(
            "Expected CA certificate but basicConstraints missing or false"
        )
    if not expect_ca and is_ca:
        raise VerificationException.invalid_chain("End entity certificate should not be a CA")


