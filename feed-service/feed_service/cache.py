"""
Expiring cache for Feed Service

Snapshots of items (feed pages, wardrobe items) are kept per scope key with
the time of the last successful write. Callers decide whether a snapshot is
fresh enough; failed remote fetches fall back to whatever snapshot exists.
"""
import redis.asyncio as redis
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Tuple, Type, TypeVar, Union
from datetime import datetime, timedelta, timezone
import asyncio
import json
import logging

from pydantic import BaseModel

from .config import settings
from .exceptions import FetchError
from .schemas import CacheEntry, CachePayload, CacheResult, CacheStats

logger = logging.getLogger(__name__)

T = TypeVar("T")

RemoteFetch = Callable[[], Awaitable[Union[Sequence[Any], CachePayload]]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CacheStore(ABC):
    """Storage backend for cache entries"""

    @abstractmethod
    async def load(self, key: str, entry_type: Type[CacheEntry]) -> Optional[CacheEntry]:
        """Load entry stored under key"""
        pass

    @abstractmethod
    async def save(self, key: str, entry: CacheEntry) -> None:
        """Store entry under key, replacing any previous one"""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove entry stored under key"""
        pass


class MemoryCacheStore(CacheStore):
    """Process-local store; entries keep the item objects as written"""

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}

    async def load(self, key: str, entry_type: Type[CacheEntry]) -> Optional[CacheEntry]:
        return self._entries.get(key)

    async def save(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)


class RedisCacheStore(CacheStore):
    """Redis store for cache entries (JSON encoded, no expiry)"""

    def __init__(self):
        self.client: Optional[redis.Redis] = None

    async def connect(self):
        """Connect to Redis"""
        if not settings.REDIS_ENABLED:
            logger.warning("Redis is disabled")
            return

        try:
            self.client = await redis.from_url(
                f"redis://{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}",
                password=settings.REDIS_PASSWORD if settings.REDIS_PASSWORD else None,
                encoding="utf-8",
                decode_responses=True,
            )
            # Test connection
            await self.client.ping()
            logger.info("Redis cache connected successfully")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self.client = None

    async def disconnect(self):
        """Disconnect from Redis"""
        if self.client:
            await self.client.close()
            logger.info("Redis cache disconnected")

    async def load(self, key: str, entry_type: Type[CacheEntry]) -> Optional[CacheEntry]:
        if not self.client:
            return None

        try:
            data = await self.client.get(key)
            return entry_type.model_validate(json.loads(data)) if data else None
        except Exception as e:
            logger.error(f"Failed to get cache entry {key}: {e}")
            return None

    async def save(self, key: str, entry: CacheEntry) -> None:
        if not self.client:
            return

        try:
            await self.client.set(key, entry.model_dump_json())
        except Exception as e:
            logger.error(f"Failed to set cache entry {key}: {e}")

    async def delete(self, key: str) -> None:
        if not self.client:
            return

        try:
            await self.client.delete(key)
        except Exception as e:
            logger.error(f"Failed to clear cache entry {key}: {e}")


class ExpiringCache(Generic[T]):
    """Key-scoped snapshots with staleness checks and stale-on-error fallback"""

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        namespace: str = "feed",
        item_model: Optional[Type[BaseModel]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        default_ttl_minutes: Optional[float] = None,
    ):
        self.store = store or MemoryCacheStore()
        self.namespace = namespace
        self.entry_type = CacheEntry[item_model] if item_model else CacheEntry
        self.clock = clock or utc_now
        self.default_ttl_minutes = (
            default_ttl_minutes
            if default_ttl_minutes is not None
            else settings.DEFAULT_TTL_MINUTES
        )
        self.hits = 0
        self.misses = 0
        self.fallbacks = 0
        self._in_flight: Dict[str, Tuple[int, asyncio.Future]] = {}
        # Bumped by clear() and forced refreshes; older fetches do not write
        self._generations: Dict[str, int] = {}

    def _key(self, scope_key: str) -> str:
        """Get store key for a scope key"""
        return f"cache:{settings.CACHE_NAMESPACE}:{self.namespace}:{scope_key}"

    def _is_expired(self, entry: CacheEntry, ttl_minutes: float) -> bool:
        return self.clock() - entry.last_write_at > timedelta(minutes=ttl_minutes)

    async def get(self, scope_key: str) -> Optional[CacheEntry]:
        """Get entry for scope key regardless of staleness"""
        return await self.store.load(self._key(scope_key), self.entry_type)

    async def is_stale(self, scope_key: str, ttl_minutes: float) -> bool:
        """True when no entry exists or it is older than ttl_minutes"""
        entry = await self.get(scope_key)
        if entry is None:
            return True
        return self._is_expired(entry, ttl_minutes)

    async def set(
        self,
        scope_key: str,
        items: Sequence[T],
        meta: Optional[Dict[str, Any]] = None
    ) -> None:
        """Overwrite entry for scope key, stamped now"""
        entry = self.entry_type(
            scope_key=scope_key,
            items=list(items),
            last_write_at=self.clock(),
            meta=meta or {},
        )
        await self.store.save(self._key(scope_key), entry)
        logger.debug(f"Cached {len(entry.items)} items for {self.namespace}:{scope_key}")

    async def clear(self, scope_key: str) -> None:
        """Remove entry for scope key; fetches already running will not write it back"""
        self._bump_generation(scope_key)
        await self.store.delete(self._key(scope_key))
        logger.info(f"Cleared {self.namespace} cache for {scope_key}")

    def _bump_generation(self, scope_key: str) -> int:
        self._generations[scope_key] = self._generations.get(scope_key, 0) + 1
        return self._generations[scope_key]

    async def fetch_with_cache(
        self,
        scope_key: str,
        ttl_minutes: float,
        remote_fetch: RemoteFetch,
        force_refresh: bool = False,
    ) -> List[T]:
        """Get items from cache when fresh, otherwise from remote_fetch"""
        result = await self.lookup(scope_key, ttl_minutes, remote_fetch, force_refresh)
        return result.items

    async def lookup(
        self,
        scope_key: str,
        ttl_minutes: float,
        remote_fetch: RemoteFetch,
        force_refresh: bool = False,
    ) -> CacheResult:
        """
        Resolve items for scope key and report where they came from

        A fresh entry is returned without a remote call. Otherwise the remote
        result is written through; on FetchError an existing entry, stale or
        not, is served instead and the error is raised only when there is
        nothing cached.

        remote_fetch returns the items, or a CachePayload when meta should
        be stored with them.
        """
        entry = await self.get(scope_key)
        if not force_refresh and entry is not None and not self._is_expired(entry, ttl_minutes):
            self.hits += 1
            logger.info(f"Cache hit for {self.namespace}:{scope_key}")
            return CacheResult(items=list(entry.items), meta=entry.meta, from_cache=True, is_stale=False)

        self.misses += 1
        try:
            payload = await self._fetch_once(scope_key, remote_fetch, force_refresh)
        except FetchError as e:
            entry = await self.get(scope_key)
            if entry is None:
                logger.error(f"Remote fetch failed for {self.namespace}:{scope_key} with no cache: {e}")
                raise
            self.fallbacks += 1
            logger.warning(
                f"Remote fetch failed for {self.namespace}:{scope_key}, "
                f"serving {len(entry.items)} cached items: {e}"
            )
            return CacheResult(items=list(entry.items), meta=entry.meta, from_cache=True, is_stale=True)

        return CacheResult(items=list(payload.items), meta=payload.meta, from_cache=False, is_stale=False)

    async def _fetch_once(
        self,
        scope_key: str,
        remote_fetch: RemoteFetch,
        force_refresh: bool = False
    ) -> CachePayload:
        """
        Share one in-flight remote fetch per scope key

        A forced refresh starts its own fetch and supersedes the running one,
        whose result is then returned to its callers but not written.
        """
        generation = self._generations.get(scope_key, 0)
        in_flight = self._in_flight.get(scope_key)
        if in_flight is not None and in_flight[0] == generation and not force_refresh:
            logger.debug(f"Joining in-flight fetch for {self.namespace}:{scope_key}")
            return await asyncio.shield(in_flight[1])

        if in_flight is not None and in_flight[0] == generation:
            generation = self._bump_generation(scope_key)
        task = asyncio.ensure_future(self._fetch_and_store(scope_key, remote_fetch, generation))
        self._in_flight[scope_key] = (generation, task)
        task.add_done_callback(lambda done: self._release(scope_key, done))
        return await asyncio.shield(task)

    def _release(self, scope_key: str, task: asyncio.Future) -> None:
        in_flight = self._in_flight.get(scope_key)
        if in_flight is not None and in_flight[1] is task:
            del self._in_flight[scope_key]

    async def _fetch_and_store(
        self,
        scope_key: str,
        remote_fetch: RemoteFetch,
        generation: int
    ) -> CachePayload:
        result = await remote_fetch()
        payload = result if isinstance(result, CachePayload) else CachePayload(items=list(result))

        if self._generations.get(scope_key, 0) != generation:
            logger.info(f"Dropping {self.namespace}:{scope_key} fetch superseded by a clear or refresh")
        else:
            await self.set(scope_key, payload.items, payload.meta)
        return payload

    async def stats(self, scope_key: str) -> CacheStats:
        """Get cache statistics for scope key"""
        entry = await self.get(scope_key)
        return CacheStats(
            scope_key=scope_key,
            total_items=len(entry.items) if entry else 0,
            last_updated=entry.last_write_at if entry else None,
            is_stale=entry is None or self._is_expired(entry, self.default_ttl_minutes),
            hits=self.hits,
            misses=self.misses,
            fallbacks=self.fallbacks,
        )


def create_store() -> CacheStore:
    """Build the store selected by CACHE_BACKEND"""
    if settings.CACHE_BACKEND == "redis":
        return RedisCacheStore()
    return MemoryCacheStore()
