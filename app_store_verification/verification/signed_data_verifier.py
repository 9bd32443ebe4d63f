# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Verification and decoding of App Store signed data.

Each ``verify_and_decode_*`` coroutine runs the same pipeline:

1. Peek the JWS header and payload without verifying.
2. For the ``Xcode`` and ``LocalTesting`` environments, return the payload
   untrusted.  These environments sign with local keys that do not chain
   to Apple's roots.
3. Require ``alg == "ES256"`` and a three-certificate ``x5c`` header.
4. Choose the effective date for certificate validity (see
   :meth:`SignedDataVerifier._effective_date`).
5. Verify the certificate chain, then the JWS signature with the leaf key.
6. Map the payload to its typed model and check it belongs to the
   configured app and environment.

Every failure raises :class:`VerificationException`; no partially verified
result is ever returned.

References
----------
- App Store Server API — JWSTransaction, JWSRenewalInfo
- App Store Server Notifications V2 — signedPayload
- Retention Messaging API — signedPayload
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

from app_store_verification.config import (
    EXPECTED_ALGORITHM,
    EXPECTED_CHAIN_LENGTH,
    UNVERIFIED_ENVIRONMENTS,
)
from app_store_verification.models import (
    AppTransaction,
    DecodedRealtimeRequestBody,
    Environment,
    JWSRenewalInfoDecodedPayload,
    JWSTransactionDecodedPayload,
    ResponseBodyV2DecodedPayload,
    Summary,
)
from app_store_verification.models.environment import raw_value
from app_store_verification.verification.chain_verifier import ChainVerifier
from app_store_verification.verification.exceptions import VerificationException
from app_store_verification.verification.ocsp import OCSPClient
from app_store_verification.verification.signature import verify_signature
from app_store_verification.verification.token import peek_token
from app_store_verification.verification.trust_cache import TrustCache

logger = logging.getLogger("asv.verifier")

__all__ = ["SignedDataVerifier", "VerifierConfig"]


@dataclass(frozen=True)
class VerifierConfig:
    """Immutable verifier settings.

    Attributes:
        trust_anchors:              DER root certificates.
        environment:                Environment signed data must come from.
        bundle_id:                  Expected app bundle identifier.
        app_apple_id:               Expected App Apple ID (production only).
        enable_online_checks:       Check revocation via OCSP and verify
                                    certificates at the current time.
        enable_strict_chain_checks: Require Apple marker extensions.
    """

    trust_anchors: frozenset
    environment: Environment
    bundle_id: str
    app_apple_id: Optional[int] = None
    enable_online_checks: bool = False
    enable_strict_chain_checks: bool = True


def _coerce_environment(environment: Union[Environment, str]) -> Environment:
    value = Environment.from_raw(environment)
    if not isinstance(value, Environment):
        raise ValueError(f"Unknown environment: {environment!r}")
    return value


class SignedDataVerifier:
    """Verifies and decodes App Store signed data for one app.

    Parameters
    ----------
    root_certificates : iterable of bytes
        DER-encoded Apple root certificates to trust.
    environment : Environment or str
        The environment signed data must come from.
    bundle_id : str
        The app's bundle identifier.
    app_apple_id : int or None
        The app's Apple ID.  Required for ``Production``.
    enable_online_checks : bool
        Check certificate revocation via OCSP.  Certificates are then
        validated at the current time instead of the payload's
        ``signedDate``.
    enable_strict_checks : bool
        Require Apple's marker extensions on the leaf and intermediate.
    trust_cache : TrustCache or None
        Cache of verified chains for online mode.
    ocsp_client : OCSPClient or None
        OCSP client for online mode.
    clock : callable
        Wall-clock source returning Unix seconds.

    Raises
    ------
    VerificationException
        ``invalid_app_identifier`` when ``environment`` is ``Production``
        and ``app_apple_id`` is not given.
    ValueError
        When ``environment`` is not a known environment.
    """

    def __init__(
        self,
        root_certificates: Iterable[bytes],
        environment: Union[Environment, str],
        bundle_id: str,
        app_apple_id: Optional[int] = None,
        enable_online_checks: bool = False,
        enable_strict_checks: bool = True,
        trust_cache: Optional[TrustCache] = None,
        ocsp_client: Optional[OCSPClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        env = _coerce_environment(environment)
        if env == Environment.PRODUCTION and app_apple_id is None:
            raise VerificationException.invalid_app_identifier(
                "app_apple_id is required for production environment"
            )

        self.config = VerifierConfig(
            trust_anchors=frozenset(bytes(c) for c in root_certificates),
            environment=env,
            bundle_id=bundle_id,
            app_apple_id=app_apple_id,
            enable_online_checks=enable_online_checks,
            enable_strict_chain_checks=enable_strict_checks,
        )
        self._chain_verifier = ChainVerifier(
            self.config.trust_anchors,
            enable_strict_checks=enable_strict_checks,
            trust_cache=trust_cache,
            ocsp_client=ocsp_client,
        )
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def verify_and_decode_signed_transaction(
        self, signed_transaction: str
    ) -> JWSTransactionDecodedPayload:
        """Verify a ``signedTransaction`` from the Server API, a notification or a device."""
        payload = await self._decode_signed_object(signed_transaction, "transaction")
        transaction = JWSTransactionDecodedPayload.from_payload(payload)
        self._verify_bundle_id(transaction.bundle_id)
        self._verify_environment(transaction.environment)
        return transaction

    async def verify_and_decode_renewal_info(
        self, signed_renewal_info: str
    ) -> JWSRenewalInfoDecodedPayload:
        """Verify a ``signedRenewalInfo``."""
        payload = await self._decode_signed_object(signed_renewal_info, "renewal_info")
        renewal_info = JWSRenewalInfoDecodedPayload.from_payload(payload)
        self._verify_environment(renewal_info.environment)
        return renewal_info

    async def verify_and_decode_notification(
        self, signed_payload: str
    ) -> ResponseBodyV2DecodedPayload:
        """Verify an App Store Server Notification V2 ``signedPayload``.

        The app identity is taken from ``data``, else ``summary``, else
        ``externalPurchaseToken``.
        """
        payload = await self._decode_signed_object(signed_payload, "notification")
        notification = ResponseBodyV2DecodedPayload.from_payload(payload)
        bundle_id, app_apple_id, environment = self._notification_identity(notification)

        if bundle_id != self.config.bundle_id or (
            self._is_production and app_apple_id != self.config.app_apple_id
        ):
            logger.info("Rejected notification: app identifier mismatch")
            raise VerificationException.invalid_app_identifier("App identifier mismatch")
        self._verify_environment(environment)
        return notification

    async def verify_and_decode_app_transaction(
        self, signed_app_transaction: str
    ) -> AppTransaction:
        """Verify a signed ``AppTransaction``.  ``receiptType`` is its environment."""
        payload = await self._decode_signed_object(signed_app_transaction, "app_transaction")
        app_transaction = AppTransaction.from_payload(payload)
        self._verify_bundle_id(app_transaction.bundle_id)
        self._verify_app_apple_id(app_transaction.app_apple_id)
        self._verify_environment(app_transaction.receipt_type)
        return app_transaction

    async def verify_and_decode_realtime_request(
        self, signed_payload: str
    ) -> DecodedRealtimeRequestBody:
        """Verify a Retention Messaging realtime request ``signedPayload``."""
        payload = await self._decode_signed_object(signed_payload, "realtime_request")
        request = DecodedRealtimeRequestBody.from_payload(payload)
        self._verify_app_apple_id(request.app_apple_id)
        self._verify_environment(request.environment)
        return request

    async def verify_and_decode_summary(self, signed_payload: str) -> Summary:
        """Verify a signed renewal-extension ``Summary``."""
        payload = await self._decode_signed_object(signed_payload, "summary")
        summary = Summary.from_payload(payload)
        self._verify_bundle_id(summary.bundle_id)
        self._verify_environment(summary.environment)
        return summary

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    @property
    def _is_production(self) -> bool:
        return self.config.environment == Environment.PRODUCTION

    async def _decode_signed_object(self, signed_obj: str, kind: str) -> Dict[str, Any]:
        token = peek_token(signed_obj)

        if self.config.environment.value in UNVERIFIED_ENVIRONMENTS:
            logger.debug(
                "Skipping %s verification in %s environment",
                kind,
                self.config.environment.value,
            )
            return token.payload

        try:
            if token.header.get("alg") != EXPECTED_ALGORITHM:
                raise VerificationException.bad_algorithm(token.header.get("alg"))
            x5c = token.x5c
            if not x5c:
                raise VerificationException.empty_x5c()
            if len(x5c) != EXPECTED_CHAIN_LENGTH:
                raise VerificationException.invalid_chain_length(len(x5c))

            effective_date = self._effective_date(token.payload)
            public_key = await self._chain_verifier.verify_chain(
                x5c,
                self.config.enable_online_checks,
                effective_date,
            )
            verify_signature(token, public_key)
        except VerificationException as exc:
            log = logger.warning if exc.retryable else logger.info
            log("Rejected signed %s: %s (%s)", kind, exc.message, exc.status.value)
            raise

        logger.debug("Verified signed %s", kind)
        return token.payload

    def _effective_date(self, payload: Dict[str, Any]) -> int:
        """Unix seconds at which the certificate chain must be valid.

        Online checks always use the current time.  Offline, the payload's
        ``signedDate`` (or ``receiptCreationDate``) in milliseconds is used
        so that historical data stays verifiable after certificates expire.
        """
        signed_date = payload.get("signedDate")
        if signed_date is None:
            signed_date = payload.get("receiptCreationDate")

        if self.config.enable_online_checks or signed_date is None:
            return int(self._clock())
        if isinstance(signed_date, bool) or not isinstance(signed_date, (int, float)):
            raise VerificationException.failure(
                "Invalid signedDate format: expected a number"
            )
        # JSON NaN and Infinity literals decode to non-finite floats.
        if isinstance(signed_date, float) and not math.isfinite(signed_date):
            raise VerificationException.failure(
                "Invalid signedDate format: expected a finite number"
            )
        return int(signed_date // 1000)

    # ------------------------------------------------------------------
    # Identity checks
    # ------------------------------------------------------------------

    def _verify_bundle_id(self, bundle_id: Optional[str]) -> None:
        if bundle_id != self.config.bundle_id:
            logger.info("Rejected payload: bundle ID mismatch")
            raise VerificationException.invalid_app_identifier("Bundle ID mismatch")

    def _verify_app_apple_id(self, app_apple_id: Optional[int]) -> None:
        if self._is_production and app_apple_id != self.config.app_apple_id:
            logger.info("Rejected payload: App Apple ID mismatch")
            raise VerificationException.invalid_app_identifier("App Apple ID mismatch")

    def _verify_environment(self, environment: Union[Environment, str, None]) -> None:
        if environment != self.config.environment:
            logger.info(
                "Rejected payload: environment %r, expected %r",
                raw_value(environment),
                self.config.environment.value,
            )
            raise VerificationException.invalid_environment(
                self.config.environment.value, raw_value(environment)
            )

    @staticmethod
    def _notification_identity(
        notification: ResponseBodyV2DecodedPayload,
    ) -> Tuple[Optional[str], Optional[int], Union[Environment, str, None]]:
        if notification.data is not None:
            source = notification.data
            return source.bundle_id, source.app_apple_id, source.environment
        if notification.summary is not None:
            source = notification.summary
            return source.bundle_id, source.app_apple_id, source.environment
        if notification.external_purchase_token is not None:
            token = notification.external_purchase_token
            return token.bundle_id, token.app_apple_id, token.environment
        raise VerificationException.failure(
            "Notification does not contain data, summary, or externalPurchaseToken"
        )
