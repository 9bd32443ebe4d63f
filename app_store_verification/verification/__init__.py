"""App Store signed-data verification.

Chain, revocation and signature verification for the ``x5c``-signed JWS
tokens issued by the App Store.  :class:`SignedDataVerifier` lives in
:mod:`.signed_data_verifier` and is re-exported from the top-level package.
"""

from .chain_verifier import ChainVerifier
from .exceptions import VerificationException, VerificationStatus
from .ocsp import OCSPClient
from .signature import verify_signature
from .token import SignedToken, peek_header, peek_payload, peek_token
from .trust_cache import TrustCache, get_trust_cache, reset_trust_cache

__all__ = [
    "ChainVerifier",
    "OCSPClient",
    "SignedToken",
    "TrustCache",
    "VerificationException",
    "VerificationStatus",
    "get_trust_cache",
    "peek_header",
    "peek_payload",
    "peek_token",
    "reset_trust_cache",
    "verify_signature",
]
