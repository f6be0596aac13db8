"""
Verification cache for MedVerify.

Short-lived, thread-safe store of verification results keyed by
``(document_type, document_number)``. Concurrent misses on the same key are
collapsed into a single load: the first caller resolves the key while the
others wait for its result.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from ..errors import DeadlineExceeded
from ..models import CacheEntry, VerificationResult

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


class _InFlight:
    def __init__(self):
        self.done = threading.Event()
        self.result: Optional[VerificationResult] = None
        self.error: Optional[BaseException] = None
        self.waiters = 0


class VerificationCache:
    """
    TTL cache with at-most-one concurrent load per key.

    Expired entries are treated as absent.
    """

    def __init__(self, config: Optional[Dict] = None, clock: Callable[[], float] = time.monotonic):
        """
        Initialize cache with configuration.

        Args:
            config: ``cache`` configuration section
            clock: Monotonic clock, injectable for tests
        """
        config = config or {}
        self.default_ttl = float(config.get("ttl_seconds", 3600.0))
        self.max_entries = int(config.get("max_entries", 1000))
        self._clock = clock

        self._lock = threading.Lock()
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._in_flight: Dict[CacheKey, _InFlight] = {}

        self.hits = 0
        self.misses = 0
        self.coalesced = 0
        self.evictions = 0

        logger.info(f"Initialized VerificationCache (ttl={self.default_ttl}s, max_entries={self.max_entries})")

    def _get_live_entry(self, key: CacheKey) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def get(self, key: CacheKey) -> Optional[VerificationResult]:
        """
        Look up a cached result.

        Args:
            key: ``(document_type, document_number)``

        Returns:
            Cached result, or None on miss
        """
        with self._lock:
            entry = self._get_live_entry(key)
            if entry is None:
                self.misses += 1
                return None
            self.hits += 1
            return entry.result

    def put(self, key: CacheKey, result: VerificationResult, ttl: Optional[float] = None):
        """
        Store a result.

        Args:
            key: ``(document_type, document_number)``
            result: Verification result
            ttl: Time to live in seconds (default from configuration)
        """
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = CacheEntry(key=key, result=result, expires_at=self._clock() + ttl)
            self._enforce_capacity()

    def invalidate(self, key: CacheKey) -> bool:
        """
        Remove a key.

        Args:
            key: ``(document_type, document_number)``

        Returns:
            True if an entry was removed
        """
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.info(f"Invalidated cache entry for {key[0]}")
        return removed

    def purge_expired(self) -> int:
        """Drop all expired entries and return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def _enforce_capacity(self):
        while len(self._entries) > self.max_entries:
            oldest = min(self._entries.values(), key=lambda e: e.expires_at)
            del self._entries[oldest.key]
            self.evictions += 1

    def resolve(self, key: CacheKey, loader: Callable[[], VerificationResult],
                cacheable: Callable[[VerificationResult], bool] = lambda result: True,
                ttl: Optional[float] = None,
                wait_timeout: Optional[float] = None) -> Tuple[VerificationResult, bool]:
        """
        Return the cached result for ``key`` or load it exactly once.

        If another thread is already loading ``key``, wait for its outcome
        instead of calling ``loader`` again. Errors raised by the loader are
        re-raised in every waiting thread, except ``DeadlineExceeded``: the
        leader's deadline is its own, so a waiter with time left loads again.

        Args:
            key: ``(document_type, document_number)``
            loader: Produces a fresh result on miss
            cacheable: Decides whether a loaded result is stored
            ttl: Time to live for stored results
            wait_timeout: Seconds a waiting caller blocks on another thread's load

        Returns:
            Tuple of (result, from_cache) where ``from_cache`` is False only
            for the caller that ran the loader
        """
        with self._lock:
            entry = self._get_live_entry(key)
            if entry is not None:
                self.hits += 1
                return entry.result, True

            flight = self._in_flight.get(key)
            leader = flight is None
            if leader:
                self.misses += 1
                flight = _InFlight()
                self._in_flight[key] = flight
            else:
                self.coalesced += 1
                flight.waiters += 1

        if not leader:
            logger.debug(f"Waiting for in-flight verification of {key[0]}")
            started = time.monotonic()
            if not flight.done.wait(wait_timeout):
                with self._lock:
                    flight.waiters -= 1
                raise DeadlineExceeded(f"Timed out waiting for in-flight verification of {key[0]}")
            if isinstance(flight.error, DeadlineExceeded):
                # The leader ran out of its own time; load again with ours
                remaining = None if wait_timeout is None else wait_timeout - (time.monotonic() - started)
                if remaining is not None and remaining <= 0:
                    raise DeadlineExceeded(f"Timed out waiting for in-flight verification of {key[0]}")
                logger.debug(f"Leader deadline expired, retrying verification of {key[0]}")
                return self.resolve(key, loader, cacheable, ttl, remaining)
            if flight.error is not None:
                raise flight.error
            return flight.result, True

        try:
            result = loader()
        except BaseException as e:
            flight.error = e
            with self._lock:
                self._in_flight.pop(key, None)
            flight.done.set()
            raise

        with self._lock:
            if cacheable(result):
                self._entries[key] = CacheEntry(
                    key=key,
                    result=result,
                    expires_at=self._clock() + (self.default_ttl if ttl is None else ttl),
                )
                self._enforce_capacity()
            self._in_flight.pop(key, None)
        flight.result = result
        flight.done.set()
        return result, False

    def get_statistics(self) -> Dict[str, float]:
        """
        Calculate cache statistics.

        Returns:
            Dictionary with size, hit/miss counts and hit rate
        """
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "size": len(self._entries),
                "in_flight": len(self._in_flight),
                "hits": self.hits,
                "misses": self.misses,
                "coalesced": self.coalesced,
                "evictions": self.evictions,
                "hit_rate": self.hits / lookups if lookups > 0 else 0.0,
            }
