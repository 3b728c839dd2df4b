"""
Cache Service for eligibility lookups.

Caches what the external collaborators returned for a locked period (ledger
rows plus ID expiry dates) so grid paging and sorting do not hit the ledger
on every request. Local clearance state is never cached.

Backends:
1. Redis (production, shared across workers)
2. In-memory (development/testing, purged by a background job)

Usage:
    cache = get_cache()
    snapshot = await cache.get_ledger_snapshot(criteria_id, version, as_of, category)
    await cache.invalidate_eligibility()
"""
import asyncio
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from clearance.config import settings
from clearance.core.clock import utc_now

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Key/value store for JSON-serialisable snapshots."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> bool:
        pass

    @abstractmethod
    async def clear_pattern(self, pattern: str) -> int:
        """Delete every key matching a trailing-* pattern, return how many."""
        pass


class InMemoryCache(CacheBackend):
    """
    Process-local cache.

    Not shared between worker processes; a lifecycle transition handled by
    one worker leaves another worker's snapshots until their TTL runs out.
    """

    def __init__(self):
        self._entries: Dict[str, Tuple[Any, datetime]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= utc_now():
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        async with self._lock:
            self._entries[key] = (value, utc_now() + timedelta(seconds=ttl))
            return True

    async def clear_pattern(self, pattern: str) -> int:
        async with self._lock:
            prefix = pattern.rstrip('*')
            matched = [key for key in self._entries if key.startswith(prefix)]
            for key in matched:
                del self._entries[key]
            return len(matched)

    async def cleanup_expired(self) -> int:
        """Drop expired snapshots, called from the purge job."""
        async with self._lock:
            now = utc_now()
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCache(CacheBackend):
    """
    Redis backend. A Redis outage degrades to cache misses: the eligibility
    engine falls back to the ledger instead of failing the request.
    """

    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                import redis.asyncio as redis
            except ImportError:
                raise RuntimeError("REDIS_URL is set but redis is not installed, install the 'redis' extra")
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._get_client().get(key)
        except Exception as e:
            logger.warning(f"Redis get failed for {key}: {e}")
            return None
        return json.loads(raw) if raw else None

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        try:
            await self._get_client().set(key, json.dumps(value), ex=ttl)
        except Exception as e:
            logger.warning(f"Redis set failed for {key}: {e}")
            return False
        return True

    async def clear_pattern(self, pattern: str) -> int:
        deleted = 0
        try:
            client = self._get_client()
            async for key in client.scan_iter(match=pattern, count=100):
                deleted += await client.delete(key)
        except Exception as e:
            logger.warning(f"Redis clear_pattern failed for {pattern}: {e}")
        return deleted


class CacheService:
    """
    Namespaced eligibility snapshot cache.

    Keys follow the format:

        {namespace}:eligibility:{criteria_id}:{criteria_version}:{params_hash}

    Example:
        clearance:eligibility:<criteria_id>:3:9f2c1a7b04de
    """

    def __init__(self, backend: CacheBackend, namespace: str = "clearance"):
        self._backend = backend
        self._namespace = namespace

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    def _make_key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        return await self._backend.get(self._make_key(key))

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        return await self._backend.set(self._make_key(key), value, ttl)

    @staticmethod
    def hash_params(params: dict) -> str:
        """Short stable hash of query parameters, independent of key order."""
        param_str = json.dumps(sorted(params.items()), default=str)
        return hashlib.md5(param_str.encode()).hexdigest()[:12]

    def _ledger_snapshot_key(self, criteria_id: str, version: int, as_of: date, booking_category: int) -> str:
        params_hash = self.hash_params({"as_of": as_of.isoformat(), "booking_category": booking_category})
        return f"eligibility:{criteria_id}:{version}:{params_hash}"

    async def get_ledger_snapshot(
        self,
        criteria_id: str,
        version: int,
        as_of: date,
        booking_category: int
    ) -> Optional[dict]:
        """Get cached ledger rows + ID expiry dates for a locked period."""
        key = self._ledger_snapshot_key(criteria_id, version, as_of, booking_category)
        return await self.get(key)

    async def set_ledger_snapshot(
        self,
        criteria_id: str,
        version: int,
        as_of: date,
        booking_category: int,
        data: dict,
        ttl: Optional[int] = None
    ) -> bool:
        key = self._ledger_snapshot_key(criteria_id, version, as_of, booking_category)
        return await self.set(key, data, ttl or settings.ELIGIBILITY_CACHE_TTL)

    async def invalidate_eligibility(self) -> int:
        """Drop every cached ledger snapshot, called on lifecycle transitions."""
        return await self._backend.clear_pattern(self._make_key("eligibility:*"))


# Singleton cache instance
_cache_instance: Optional[CacheService] = None


def get_cache() -> CacheService:
    """Get the cache service singleton."""
    global _cache_instance

    if _cache_instance is None:
        if settings.REDIS_URL and settings.CACHE_ENABLED:
            backend = RedisCache(settings.REDIS_URL)
            logger.info("Cache initialized with Redis backend")
        else:
            backend = InMemoryCache()
            logger.info("Cache initialized with in-memory backend")

        _cache_instance = CacheService(backend)

    return _cache_instance


def get_eligibility_cache() -> Optional[CacheService]:
    """Cache used by the eligibility engine, None when caching is disabled."""
    if not settings.CACHE_ENABLED:
        return None
    return get_cache()
