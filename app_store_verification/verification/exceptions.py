# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Verification failures mapped to App Store verification status codes."""

from enum import Enum
from typing import Dict


class VerificationStatus(str, Enum):
    VERIFICATION_FAILURE = "verification_failure"
    INVALID_APP_IDENTIFIER = "invalid_app_identifier"
    INVALID_CERTIFICATE = "invalid_certificate"
    INVALID_CHAIN_LENGTH = "invalid_chain_length"
    INVALID_CHAIN = "invalid_chain"
    INVALID_ENVIRONMENT = "invalid_environment"
    RETRYABLE_VERIFICATION_FAILURE = "retryable_verification_failure"


STATUS_RETRYABILITY: Dict[VerificationStatus, bool] = {
    VerificationStatus.RETRYABLE_VERIFICATION_FAILURE: True,
}


class VerificationException(Exception):
    """Signed-data verification error carrying a :class:`VerificationStatus`."""

    def __init__(self, status: VerificationStatus, message: str):
        self.status = status
        self.message = message
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        """Whether a caller-level retry may succeed without changing the input."""
        return STATUS_RETRYABILITY.get(self.status, False)

    def __repr__(self) -> str:
        return f"VerificationException({self.status.value!r}, {self.message!r})"

    # -- verification_failure -------------------------------------------------

    @classmethod
    def failure(cls, reason: str) -> "VerificationException":
        return cls(VerificationStatus.VERIFICATION_FAILURE, reason)

    @classmethod
    def invalid_format(cls, reason: str) -> "VerificationException":
        return cls(
            VerificationStatus.VERIFICATION_FAILURE,
            f"Failed to decode signed object: {reason}",
        )

    @classmethod
    def bad_algorithm(cls, alg: object) -> "VerificationException":
        return cls(
            VerificationStatus.VERIFICATION_FAILURE,
            f"Algorithm was not ES256 (got {alg!r})",
        )

    @classmethod
    def empty_x5c(cls) -> "VerificationException":
        return cls(VerificationStatus.VERIFICATION_FAILURE, "x5c claim was empty")

    @classmethod
    def not_yet_valid(cls, subject: str, not_before: int, effective: int) -> "VerificationException":
        return cls(
            VerificationStatus.VERIFICATION_FAILURE,
            f"Certificate not yet valid: {subject} (not_before={not_before}, effective_date={effective})",
        )

    @classmethod
    def expired(cls, subject: str, not_after: int, effective: int) -> "VerificationException":
        return cls(
            VerificationStatus.VERIFICATION_FAILURE,
            f"Certificate has expired: {subject} (not_after={not_after}, effective_date={effective})",
        )

    @classmethod
    def missing_oid(cls, oid: str) -> "VerificationException":
        return cls(VerificationStatus.VERIFICATION_FAILURE, f"Missing required OID: {oid}")

    @classmethod
    def signature_failed(cls, reason: str = "Signature verification failed") -> "VerificationException":
        return cls(VerificationStatus.VERIFICATION_FAILURE, reason)

    @classmethod
    def revoked(cls, subject: str, reason: str) -> "VerificationException":
        return cls(
            VerificationStatus.VERIFICATION_FAILURE,
            f"Certificate has been revoked: {subject} (reason: {reason})",
        )

    @classmethod
    def ocsp_invalid(cls, reason: str) -> "VerificationException":
        return cls(VerificationStatus.VERIFICATION_FAILURE, f"OCSP validation failed: {reason}")

    # -- invalid_certificate / invalid_chain_length / invalid_chain ---------

    @classmethod
    def invalid_certificate(cls, reason: str) -> "VerificationException":
        return cls(VerificationStatus.INVALID_CERTIFICATE, reason)

    @classmethod
    def no_trust_anchors(cls) -> "VerificationException":
        return cls(VerificationStatus.INVALID_CERTIFICATE, "No root certificates configured")

    @classmethod
    def invalid_chain_length(cls, length: int) -> "VerificationException":
        return cls(
            VerificationStatus.INVALID_CHAIN_LENGTH,
            f"Certificate chain must contain exactly 3 certificates, got {length}",
        )

    @classmethod
    def invalid_chain(cls, reason: str) -> "VerificationException":
        return cls(VerificationStatus.INVALID_CHAIN, reason)

    # -- identity policy ----------------------------------------------------

    @classmethod
    def invalid_app_identifier(cls, reason: str) -> "VerificationException":
        return cls(VerificationStatus.INVALID_APP_IDENTIFIER, reason)

    @classmethod
    def invalid_environment(cls, expected: str, actual: object) -> "VerificationException":
        return cls(
            VerificationStatus.INVALID_ENVIRONMENT,
            f"Environment mismatch: expected {expected!r}, got {actual!r}",
        )

    # -- retryable ----------------------------------------------------------

    @classmethod
    def retryable_failure(cls, reason: str) -> "VerificationException":
        return cls(VerificationStatus.RETRYABLE_VERIFICATION_FAILURE, reason)
