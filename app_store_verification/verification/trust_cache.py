# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Verified certificate-chain cache with TTL expiry.

Maps the fingerprint of a fully verified ``x5c`` chain, namespaced by the
verifying policy, to the leaf public key extracted from it, so repeated
online verifications of the same chain skip the chain walk and the OCSP
round trips.

Only chains that passed every check, including OCSP, are cached.  Entries
are written only when online checks are enabled; offline verification
never consults or populates the cache.

Entries are invalidated when:

* The entry exceeds its TTL (configurable, default 900 s).
* The cache is full and the entry has the earliest expiry.

Expiry uses a monotonic clock so wall-clock adjustments do not extend or
shorten cached trust.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence

from app_store_verification.config import TRUST_CACHE_MAX_SIZE, TRUST_CACHE_TTL_SECONDS

logger = logging.getLogger("asv.cache")

__all__ = [
    "CacheMetrics",
    "TrustCache",
    "TrustCacheEntry",
    "fingerprint",
    "get_trust_cache",
    "reset_trust_cache",
]


def fingerprint(chain: Sequence[str], policy: str = "") -> str:
    """SHA-256 hex digest over *policy* and the ordered certificate strings.

    Every item is length-prefixed and the chain length is hashed first, so
    ``["ab", "c"]`` and ``["a", "bc"]`` stay distinct and a policy string
    can never be mistaken for a certificate.
    """
    h = hashlib.sha256()
    h.update(len(chain).to_bytes(4, "big"))
    for cert in (policy, *chain):
        encoded = cert.encode("utf-8")
        h.update(len(encoded).to_bytes(4, "big"))
        h.update(encoded)
    return h.hexdigest()


# ======================================================================
# CacheMetrics
# ======================================================================


@dataclass
class CacheMetrics:
    """Counters for the lifetime of a cache instance.

    Attributes
    ----------
    hits : int
        Lookups that returned a live entry.
    misses : int
        Lookups for absent or expired fingerprints.
    evictions : int
        Entries removed by capacity pressure or TTL expiry.
    """

    hits: int = 0
    misses: int = 0
    evictions: int = 0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
        }


# ======================================================================
# TrustCacheEntry
# ======================================================================


@dataclass(frozen=True)
class TrustCacheEntry:
    """A verified chain's leaf key.

    Attributes
    ----------
    fingerprint : str
        :func:`fingerprint` of the verified ``x5c`` chain.
    public_key : str
        Leaf SubjectPublicKeyInfo as a PEM block.
    expires_at : float
        Monotonic clock reading after which the entry is dead.
    """

    fingerprint: str
    public_key: str
    expires_at: float


# ======================================================================
# TrustCache
# ======================================================================


class TrustCache:
    """Bounded in-memory cache of verified chain fingerprints.

    Concurrency-safe: every public coroutine acquires an ``asyncio.Lock``
    before touching internal state.

    Parameters
    ----------
    max_size : int
        Maximum number of live entries.
    ttl_seconds : float
        Lifetime of each entry from insertion.
    clock : callable
        Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        max_size: int = 32,
        ttl_seconds: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, TrustCacheEntry] = {}
        self._lock = asyncio.Lock()
        self._metrics = CacheMetrics()

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(self, chain: Sequence[str], policy: str = "") -> Optional[str]:
        """Return the cached leaf public key for *chain* under *policy*, or ``None``.

        An expired entry is removed and reported as a miss.  Entries stored
        under a different *policy* are never returned.
        """
        key = fingerprint(chain, policy)
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._metrics.misses += 1
                return None

            if self._clock() >= entry.expires_at:
                logger.debug("Trust cache entry expired for %s", key[:16])
                self._evict_locked(key)
                self._metrics.misses += 1
                return None

            self._metrics.hits += 1
            return entry.public_key

    async def put(self, chain: Sequence[str], public_key: str, policy: str = "") -> None:
        """Record *chain* as verified under *policy* with leaf key *public_key*.

        At capacity, expired entries are purged first; if the cache is
        still full the entry with the earliest expiry is evicted.
        Re-inserting a known chain refreshes its expiry.
        """
        key = fingerprint(chain, policy)
        async with self._lock:
            now = self._clock()
            if key not in self._entries and len(self._entries) >= self._max_size:
                self._purge_expired_locked(now)
                if len(self._entries) >= self._max_size:
                    self._evict_earliest_locked()

            self._entries[key] = TrustCacheEntry(
                fingerprint=key,
                public_key=public_key,
                expires_at=now + self._ttl_seconds,
            )
            logger.debug("Cached verified chain %s", key[:16])

    async def clear(self) -> None:
        """Drop every entry.  Metrics are kept."""
        async with self._lock:
            self._entries.clear()

    def stats(self) -> dict:
        """Return a snapshot of cache metrics, current size and capacity.

        Returns
        -------
        dict
            Keys: ``size``, ``max_size``, ``hits``, ``misses``,
            ``evictions``.
        """
        d = self._metrics.to_dict()
        d["size"] = len(self._entries)
        d["max_size"] = self._max_size
        return d

    # ------------------------------------------------------------------
    # Internal helpers (must be called with ``_lock`` held)
    # ------------------------------------------------------------------

    def _evict_locked(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            self._metrics.evictions += 1

    def _purge_expired_locked(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if now >= e.expires_at]
        for key in expired:
            self._evict_locked(key)

    def _evict_earliest_locked(self) -> None:
        victim = min(self._entries.values(), key=lambda e: e.expires_at)
        logger.debug("Capacity eviction: %s", victim.fingerprint[:16])
        self._evict_locked(victim.fingerprint)


# ======================================================================
# Module-level singleton
# ======================================================================

_trust_cache: Optional[TrustCache] = None


def get_trust_cache() -> TrustCache:
    """Return the process-wide trust cache, creating it on first use.

    Sized from ``TRUST_CACHE_MAX_SIZE`` and ``TRUST_CACHE_TTL_SECONDS`` in
    ``app_store_verification.config``.
    """
    global _trust_cache
    if _trust_cache is None:
        _trust_cache = TrustCache(
            max_size=TRUST_CACHE_MAX_SIZE,
            ttl_seconds=TRUST_CACHE_TTL_SECONDS,
        )
        logger.info(
            "Trust cache initialized: max_size=%d, ttl=%.0fs",
            TRUST_CACHE_MAX_SIZE,
            TRUST_CACHE_TTL_SECONDS,
        )
    return _trust_cache


def reset_trust_cache() -> None:
    """Discard the process-wide trust cache (tests)."""
    global _trust_cache
    _trust_cache = None
