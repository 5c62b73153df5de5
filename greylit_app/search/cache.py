"""
Cache layer for processed search responses.

Design:
  - Deterministic fingerprint of the request shape (sha256)
  - In-memory OrderedDict, LRU eviction when size exceeds limit
  - TTL-based expiration; expired entries are absent
  - Thread-safe with locks
  - Optional database tier (search_cache table): read on memory miss,
    written through on set

Usage:
    cache = CacheStore(ttl=3600, max_size=1000)

    cache.set(params, processing_result)
    cached = cache.get(params)   # ProcessingResult(cache_hit=True) or None

    stats = cache.stats()
"""

import json
import time
import hashlib
import logging
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from ..database import as_utc, get_db_session
from ..errors import CacheCorruptionError
from ..models import SearchCache
from .models import ProcessingResult, SearchParams

logger = logging.getLogger(__name__)

CacheKey = Union[SearchParams, str]


def _normalize_query(query: str) -> str:
    return ' '.join((query or '').lower().split())


def fingerprint(params: SearchParams, default_providers: Optional[List[str]] = None) -> str:
    """
    Deterministic hash of the request shape.

    A request naming no providers is keyed on `default_providers`, so it
    shares an entry with one that names the defaults explicitly.

    Query text is case- and whitespace-normalized; file types and providers
    are sorted so list order never changes the key. The deduplication
    setting is part of the key so a dedup=off request never reads a
    deduplicated response.
    """
    shape = {
        'query': _normalize_query(params.query),
        'file_types': sorted({ft.lower().strip() for ft in params.file_types if ft}),
        'domain': (params.domain or '').lower().strip() or None,
        'providers': sorted({p.lower().strip() for p in (params.providers or default_providers or []) if p}),
        'max_results': params.max_results,
        'page': params.page,
        'deduplication': params.deduplication,
    }
    payload = json.dumps(shape, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


class CacheStore:
    """Thread-safe TTL cache for ProcessingResult summaries."""

    def __init__(
        self,
        ttl: int = 3600,
        max_size: int = 1000,
        persist: bool = False,
        clock: Callable[[], float] = time.time,
        default_providers: Optional[List[str]] = None,
    ):
        """
        Args:
            ttl: Time-to-live in seconds (default: 1 hour)
            max_size: Maximum in-memory entries (default: 1000)
            persist: Also read/write the search_cache table
            clock: Wall-clock source, seconds since epoch
            default_providers: Providers used when a request names none
        """
        self.ttl = ttl
        self.max_size = max_size
        self.persist = persist
        self._clock = clock
        self.default_providers = list(default_providers or [])
        self._cache: OrderedDict = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._db_hits = 0

    def key_for(self, request: CacheKey) -> str:
        if isinstance(request, SearchParams):
            return fingerprint(request, self.default_providers)
        return request

    # =========================================================================
    # READ
    # =========================================================================

    def get(self, request: CacheKey) -> Optional[ProcessingResult]:
        """
        Return the cached summary (cache_hit=True) or None if absent/expired.

        Raises:
            CacheCorruptionError: if the stored payload cannot be decoded;
                the entry is evicted first.
        """
        key = self.key_for(request)
        now = self._clock()

        with self._lock:
            entry = self._cache.get(key)
            if entry is not None and now >= entry['expires_at']:
                del self._cache[key]
                entry = None
            if entry is not None:
                self._cache.move_to_end(key)

        if entry is None and self.persist:
            entry = self._load_from_db(key, now)
            if entry is not None:
                with self._lock:
                    self._store_locked(key, entry)
                    self._db_hits += 1

        with self._lock:
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1

        return self._decode(key, entry['data'])

    def _decode(self, key: str, data: Any) -> ProcessingResult:
        try:
            if not isinstance(data, dict):
                raise TypeError(f"expected dict, got {type(data).__name__}")
            result = ProcessingResult.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Corrupt cache entry {key[:12]}: {e}")
            self.invalidate(key)
            raise CacheCorruptionError(f"Cache entry {key[:12]} is corrupt: {e}") from e

        result.cache_hit = True
        result.fingerprint = key
        return result

    def _load_from_db(self, key: str, now: float) -> Optional[Dict[str, Any]]:
        try:
            with get_db_session() as session:
                row = session.get(SearchCache, key)
                if row is None:
                    return None
                expires_at = as_utc(row.expires_at).timestamp()
                if now >= expires_at:
                    session.delete(row)
                    return None
                return {'data': row.data, 'expires_at': expires_at}
        except SQLAlchemyError as e:
            logger.warning(f"Cache DB read failed for {key[:12]}: {e}")
            return None

    # =========================================================================
    # WRITE
    # =========================================================================

    def set(self, request: CacheKey, result: ProcessingResult, ttl: Optional[int] = None) -> str:
        """
        Store a processed summary; overwrites any previous entry whole.

        Returns:
            The fingerprint the entry was stored under
        """
        key = self.key_for(request)
        data = result.to_dict()
        data['cache_hit'] = False
        data['fingerprint'] = key
        expires_at = self._clock() + (ttl if ttl is not None else self.ttl)
        entry = {'data': data, 'expires_at': expires_at}

        with self._lock:
            self._store_locked(key, entry)

        if self.persist:
            self._save_to_db(key, entry)

        return key

    def _store_locked(self, key: str, entry: Dict[str, Any]) -> None:
        if key in self._cache:
            self._cache.move_to_end(key)
        elif len(self._cache) >= self.max_size:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug(f"Cache full, evicted {evicted[:12]}")
        self._cache[key] = entry

    def _save_to_db(self, key: str, entry: Dict[str, Any]) -> None:
        expires_at = datetime.fromtimestamp(entry['expires_at'], tz=timezone.utc)
        try:
            with get_db_session() as session:
                row = session.get(SearchCache, key)
                if row is None:
                    session.add(SearchCache(key=key, data=entry['data'], expires_at=expires_at))
                else:
                    row.data = entry['data']
                    row.expires_at = expires_at
                    row.created_at = datetime.now(timezone.utc)
        except SQLAlchemyError as e:
            logger.warning(f"Cache DB write failed for {key[:12]}: {e}")

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def invalidate(self, request: CacheKey) -> bool:
        """Drop one entry from every tier. Returns True if anything was removed."""
        key = self.key_for(request)
        with self._lock:
            removed = self._cache.pop(key, None) is not None

        if self.persist:
            try:
                with get_db_session() as session:
                    removed = bool(
                        session.query(SearchCache).filter(SearchCache.key == key).delete()
                    ) or removed
            except SQLAlchemyError as e:
                logger.warning(f"Cache DB delete failed for {key[:12]}: {e}")
        return removed

    def clear(self):
        """Clear all in-memory entries and reset statistics."""
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0
            self._db_hits = 0

    def evict_expired(self) -> int:
        """
        Manually evict all expired entries.

        Returns:
            Number of entries evicted (memory and database)
        """
        now = self._clock()
        with self._lock:
            expired_keys = [
                key for key, entry in self._cache.items()
                if now >= entry['expires_at']
            ]
            for key in expired_keys:
                del self._cache[key]
        evicted = len(expired_keys)

        if self.persist:
            cutoff = datetime.fromtimestamp(now, tz=timezone.utc)
            try:
                with get_db_session() as session:
                    evicted += session.query(SearchCache).filter(
                        SearchCache.expires_at <= cutoff
                    ).delete(synchronize_session=False)
            except SQLAlchemyError as e:
                logger.warning(f"Cache DB eviction failed: {e}")

        if evicted:
            logger.info(f"Evicted {evicted} expired cache entries")
        return evicted

    def stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dict with size, max_size, ttl, hits, misses, db_hits, hit_rate
            (percentage) and whether the database tier is enabled.
        """
        with self._lock:
            total_requests = self._hits + self._misses
            hit_rate = (self._hits / total_requests * 100) if total_requests > 0 else 0.0

            return {
                'size': len(self._cache),
                'max_size': self.max_size,
                'ttl': self.ttl,
                'hits': self._hits,
                'misses': self._misses,
                'db_hits': self._db_hits,
                'hit_rate': round(hit_rate, 2),
                'persist': self.persist,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
