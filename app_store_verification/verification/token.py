# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Compact JWS reader for App Store signed data.

Splits a compact-serialised JWS into its three segments and decodes the
JOSE header and the payload *without* verifying the signature.  This is
a deliberate peek: the certificate chain that establishes the
verification key is carried inside the very header being decoded.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from app_store_verification.verification.exceptions import VerificationException

logger = logging.getLogger("asv.token")

__all__ = ["SignedToken", "peek_header", "peek_payload", "peek_token"]


@dataclass(frozen=True)
class SignedToken:
    """A split, decoded, *unverified* compact JWS.

    Attributes:
        raw_header:    The original base64url header segment.
        raw_payload:   The original base64url payload segment.
        raw_signature: The original base64url signature segment.
        header:        Decoded JOSE header claims.
        payload:       Decoded payload claims.
    """

    raw_header: str
    raw_payload: str
    raw_signature: str
    header: Dict[str, Any]
    payload: Dict[str, Any]

    @property
    def signing_input(self) -> bytes:
        """The ASCII ``header.payload`` bytes covered by the signature."""
        return f"{self.raw_header}.{self.raw_payload}".encode("ascii")

    @property
    def signature(self) -> bytes:
        """Raw signature bytes."""
        return _b64url_decode(self.raw_signature, "signature")

    @property
    def algorithm(self) -> Optional[str]:
        alg = self.header.get("alg")
        return alg if isinstance(alg, str) else None

    @property
    def x5c(self) -> List[Any]:
        """The ``x5c`` certificate list, or an empty list when absent."""
        value = self.header.get("x5c")
        return list(value) if isinstance(value, list) else []


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _b64url_decode(segment: str, label: str) -> bytes:
    """Base64url-decode *segment*, adding any required ``=`` padding."""
    padded = segment + "=" * (-len(segment) % 4)
    try:
        return base64.b64decode(padded, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as exc:
        raise VerificationException.invalid_format(
            f"base64url decoding of {label} failed: {exc}"
        ) from exc


def _decode_json(raw: bytes, label: str) -> Dict[str, Any]:
    try:
        obj = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise VerificationException.invalid_format(
            f"JSON decoding of {label} failed: {exc}"
        ) from exc
    if not isinstance(obj, dict):
        raise VerificationException.invalid_format(
            f"expected JSON object for {label}, got {type(obj).__name__}"
        )
    return obj


def _split(token: Optional[str]) -> List[str]:
    if not isinstance(token, str) or not token.strip():
        raise VerificationException.invalid_format("signed object is missing or empty")
    parts = token.strip().split(".")
    if len(parts) != 3:
        raise VerificationException.invalid_format(
            f"expected 3 dot-separated segments, got {len(parts)}"
        )
    return parts


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def peek_token(token: Optional[str]) -> SignedToken:
    """Split and decode a compact JWS without verifying it.

    Raises:
        VerificationException: ``verification_failure`` when the token
            does not have exactly three segments or the header / payload
            is not base64url-encoded JSON.
    """
    raw_header, raw_payload, raw_signature = _split(token)
    header = _decode_json(_b64url_decode(raw_header, "header"), "header")
    payload = _decode_json(_b64url_decode(raw_payload, "payload"), "payload")
    logger.debug("Peeked token alg=%s", header.get("alg"))
    return SignedToken(
        raw_header=raw_header,
        raw_payload=raw_payload,
        raw_signature=raw_signature,
        header=header,
        payload=payload,
    )


def peek_header(token: Optional[str]) -> Dict[str, Any]:
    """Return the decoded JOSE header of *token* without verifying it."""
    return peek_token(token).header


def peek_payload(token: Optional[str]) -> Dict[str, Any]:
    """Return the decoded payload of *token* without verifying it."""
    return peek_token(token).payload
