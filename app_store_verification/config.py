# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""App Store signed-data verifier configuration.

Normative constants are fixed by the App Store JWS profile. Configurable
defaults may be overridden via environment variables.
"""

import os

# =============================================================================
# NORMATIVE CONSTANTS (fixed by the App Store JWS profile)
# =============================================================================

EXPECTED_ALGORITHM: str = "ES256"
EXPECTED_CHAIN_LENGTH: int = 3
CLOCK_SKEW_SECONDS: int = 60

# Apple-specific certificate extensions (marker OIDs).
APPLE_LEAF_CERT_OID: str = "1.2.840.113635.100.6.11.1"
APPLE_INTERMEDIATE_CERT_OID: str = "1.2.840.113635.100.6.2.1"

# Environments for which chain and signature verification is skipped.
UNVERIFIED_ENVIRONMENTS: frozenset[str] = frozenset({"Xcode", "LocalTesting"})

# =============================================================================
# OCSP
# =============================================================================

OCSP_TIMEOUT_MS: int = int(os.getenv("ASV_OCSP_TIMEOUT_MS", "30000"))
OCSP_REQUEST_CONTENT_TYPE: str = "application/ocsp-request"
OCSP_RESPONSE_CONTENT_TYPE: str = "application/ocsp-response"

# =============================================================================
# CACHING
# =============================================================================

TRUST_CACHE_TTL_SECONDS: float = float(os.getenv("ASV_TRUST_CACHE_TTL_SECONDS", "900"))
TRUST_CACHE_MAX_SIZE: int = int(os.getenv("ASV_TRUST_CACHE_MAX_SIZE", "32"))

# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL: str = os.getenv("ASV_LOG_LEVEL", "INFO")
LOG_FORMAT: str = os.getenv("ASV_LOG_FORMAT", "json")
