"""Verification of App Store signed transactions, notifications and receipts."""

from .logging_config import configure_logging
from .models import (
    AppTransaction,
    Data,
    DecodedRealtimeRequestBody,
    Environment,
    ExternalPurchaseToken,
    JWSRenewalInfoDecodedPayload,
    JWSTransactionDecodedPayload,
    ResponseBodyV2DecodedPayload,
    Summary,
)
from .verification import (
    ChainVerifier,
    OCSPClient,
    TrustCache,
    VerificationException,
    VerificationStatus,
)
from .verification.signed_data_verifier import SignedDataVerifier, VerifierConfig

__version__ = "0.1.0"

__all__ = [
    "AppTransaction",
    "ChainVerifier",
    "Data",
    "DecodedRealtimeRequestBody",
    "Environment",
    "ExternalPurchaseToken",
    "JWSRenewalInfoDecodedPayload",
    "JWSTransactionDecodedPayload",
    "OCSPClient",
    "ResponseBodyV2DecodedPayload",
    "SignedDataVerifier",
    "Summary",
    "TrustCache",
    "VerificationException",
    "VerificationStatus",
    "VerifierConfig",
    "configure_logging",
]
