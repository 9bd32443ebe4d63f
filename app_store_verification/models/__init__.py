"""Typed App Store payload models."""

from .environment import Environment
from .payloads import (
    AppStorePayload,
    AppTransaction,
    Data,
    DecodedRealtimeRequestBody,
    ExternalPurchaseToken,
    JWSRenewalInfoDecodedPayload,
    JWSTransactionDecodedPayload,
    ResponseBodyV2DecodedPayload,
    Summary,
)

__all__ = [
    "AppStorePayload",
    "AppTransaction",
    "Data",
    "DecodedRealtimeRequestBody",
    "Environment",
    "ExternalPurchaseToken",
    "JWSRenewalInfoDecodedPayload",
    "JWSTransactionDecodedPayload",
    "ResponseBodyV2DecodedPayload",
    "Summary",
]
