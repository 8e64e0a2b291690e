# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Response cache for read-only Update Relay operations.

LRU cache with TTL for update-check and plugin-info payloads:
- Key: fingerprint of (operation, slug, license key, extra params)
- Automatic TTL expiration, never returning an expired entry
- LRU eviction when max size reached
- Predicate invalidation when a license binding changes
- Thread-safe operations
"""

import copy
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from update_relay.models import mask_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Fingerprint:
    """Deterministic identity of a cacheable request.

    The operation name is always part of the key material, so two
    operations with the same slug and key never share an entry.

    Attributes:
        operation: Operation name (e.g. "updates/info").
        slug: Extension slug.
        license_key: License key, empty string when absent.
        params: Extra request parameters as sorted (name, value) pairs.
    """

    operation: str
    slug: str
    license_key: str = ""
    params: tuple[tuple[str, str], ...] = ()

    @classmethod
    def of(
        cls,
        operation: str,
        slug: str,
        license_key: Optional[str] = None,
        **params: Any,
    ) -> "Fingerprint":
        return cls(
            operation=operation,
            slug=slug,
            license_key=license_key or "",
            params=tuple(sorted((k, str(v)) for k, v in params.items())),
        )

    @property
    def digest(self) -> str:
        """SHA-256 over an unambiguous JSON encoding of all components."""
        material = json.dumps(
            [self.operation, self.slug, self.license_key, [list(p) for p in self.params]],
            separators=(",", ":"),
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    """A cached response payload with metadata."""

    fingerprint: Fingerprint
    payload: Any
    created_at: float
    expires_at: float
    last_accessed_at: float = field(default=0.0)

    def is_expired(self, now: float) -> bool:
        """Check if this entry has expired."""
        return now >= self.expires_at


class ResponseCache:
    """LRU cache with TTL for idempotent read responses.

    Payloads are deep-copied on the way in and out, so no caller can
    observe or cause a partially written entry.

    Example:
        >>> cache = ResponseCache(ttl_seconds=3600)
        >>> fp = Fingerprint.of("updates/info", "service-box", "KEY-1")
        >>> cache.put(fp, {"name": "Service Box"})
        >>> cache.get(fp)
        {'name': 'Service Box'}
        >>> cache.invalidate_license("service-box", "KEY-1")
        1
    """

    DEFAULT_MAX_SIZE = 1000
    DEFAULT_TTL_SECONDS = 3600  # 1 hour

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ) -> None:
        """Initialize the cache.

        Args:
            max_size: Maximum number of entries
            ttl_seconds: Default time-to-live in seconds
        """
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds

        # OrderedDict maintains insertion order for LRU
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.RLock()

        # Metrics
        self._hits = 0
        self._misses = 0
        self._evictions = 0

        # Time offset for testing
        self._time_offset: float = 0.0

    def _current_time(self) -> float:
        return time.time() + self._time_offset

    def _advance_time(self, seconds: float) -> None:
        """Advance time for testing purposes."""
        self._time_offset += seconds

    def get(self, fingerprint: Fingerprint) -> Optional[Any]:
        """Get a cached payload.

        Args:
            fingerprint: Request fingerprint

        Returns:
            Copy of the cached payload, or None on miss/expiry
        """
        key = fingerprint.digest

        with self._lock:
            now = self._current_time()
            entry = self._cache.get(key)

            if entry is None:
                self._misses += 1
                logger.debug("cache miss: %s %s", fingerprint.operation, fingerprint.slug)
                return None

            if entry.is_expired(now):
                del self._cache[key]
                self._misses += 1
                logger.debug("cache expired: %s %s", fingerprint.operation, fingerprint.slug)
                return None

            # Move to end for LRU
            self._cache.move_to_end(key)
            entry.last_accessed_at = now
            self._hits += 1

            return copy.deepcopy(entry.payload)

    def put(
        self,
        fingerprint: Fingerprint,
        payload: Any,
        ttl: Optional[float] = None,
    ) -> None:
        """Cache a payload.

        Args:
            fingerprint: Request fingerprint
            payload: Response payload to cache
            ttl: Time-to-live in seconds (defaults to the cache TTL)
        """
        ttl = self.ttl_seconds if ttl is None else ttl
        if ttl <= 0:
            return

        key = fingerprint.digest
        stored = copy.deepcopy(payload)

        with self._lock:
            now = self._current_time()

            if len(self._cache) >= self.max_size and key not in self._cache:
                self._evict_oldest()

            self._cache[key] = CacheEntry(
                fingerprint=fingerprint,
                payload=stored,
                created_at=now,
                expires_at=now + ttl,
                last_accessed_at=now,
            )
            self._cache.move_to_end(key)

    def invalidate(self, predicate: Callable[[Fingerprint], bool]) -> int:
        """Remove all entries whose fingerprint matches a predicate.

        Args:
            predicate: Called with each entry's fingerprint

        Returns:
            Number of entries removed
        """
        with self._lock:
            doomed = [key for key, entry in self._cache.items() if predicate(entry.fingerprint)]
            for key in doomed:
                del self._cache[key]
            return len(doomed)

    def invalidate_license(self, slug: str, license_key: str) -> int:
        """Drop every cached response computed for a (slug, license key) pair."""
        license_key = license_key or ""
        removed = self.invalidate(
            lambda fp: fp.slug == slug and fp.license_key == license_key
        )
        if removed:
            logger.debug(
                "cache invalidated %d entries for %s/%s", removed, slug, mask_key(license_key)
            )
        return removed

    def purge_expired(self) -> int:
        """Remove expired entries eagerly.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._current_time()
            expired = [key for key, entry in self._cache.items() if entry.is_expired(now)]
            for key in expired:
                del self._cache[key]
            return len(expired)

    def clear(self) -> None:
        """Clear entire cache."""
        with self._lock:
            self._cache.clear()

    def size(self) -> int:
        """Get current cache size."""
        with self._lock:
            return len(self._cache)

    def hit_rate(self) -> float:
        """Get cache hit rate."""
        with self._lock:
            total = self._hits + self._misses
            if total == 0:
                return 0.0
            return self._hits / total

    def get_metrics(self) -> dict[str, Any]:
        """Get cache metrics.

        Returns:
            Dictionary with cache statistics
        """
        with self._lock:
            return {
                "size": len(self._cache),
                "max_size": self.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": self.hit_rate(),
                "ttl_seconds": self.ttl_seconds,
            }

    def _evict_oldest(self) -> None:
        """Evict the least recently used entry."""
        if self._cache:
            self._cache.popitem(last=False)
            self._evictions += 1
