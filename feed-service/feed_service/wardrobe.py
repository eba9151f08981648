"""
Wardrobe items with the same expiring cache as the feed
"""
from collections import Counter
from typing import Dict, List, Optional
import asyncio
import logging

from pydantic import ValidationError

from .cache import ExpiringCache, create_store
from .config import settings
from .domain.repositories import IFeedRepository
from .exceptions import AuthRequiredError, FetchError
from .schemas import CacheResult, CacheStats, WardrobeItem

logger = logging.getLogger(__name__)


class WardrobeService:
    """Cached access to a user's wardrobe"""

    def __init__(self, repository: IFeedRepository, cache: Optional[ExpiringCache] = None):
        self.repository = repository
        self.cache = cache if cache is not None else ExpiringCache(
            store=create_store(), namespace="wardrobe", item_model=WardrobeItem
        )

    async def _fetch_items(self, user_id: str) -> List[WardrobeItem]:
        try:
            rows = await asyncio.wait_for(
                self.repository.query_wardrobe_items(user_id),
                timeout=settings.FETCH_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Timed out fetching wardrobe for user {user_id}")
            raise FetchError(f"Timed out fetching wardrobe for user {user_id}", e) from e

        try:
            return [WardrobeItem.model_validate(row) for row in rows]
        except ValidationError as e:
            raise FetchError(f"Malformed wardrobe record: {e}", e) from e

    async def get_items(self, user_id: Optional[str], refresh: bool = False) -> CacheResult:
        """
        Get wardrobe items, from cache while fresh

        refresh clears the cached snapshot before fetching.
        """
        if user_id is None:
            raise AuthRequiredError("loading the wardrobe")
        if refresh:
            await self.cache.clear(user_id)

        result = await self.cache.lookup(
            user_id,
            settings.WARDROBE_CACHE_TTL_MINUTES,
            lambda: self._fetch_items(user_id),
            force_refresh=refresh,
        )
        source = "cache" if result.from_cache else "remote"
        logger.info(f"Loaded {len(result.items)} wardrobe items for user {user_id} from {source}")
        return result

    async def get_items_by_category(self, user_id: str, category: str) -> List[WardrobeItem]:
        """Cached items of one category; empty when nothing is cached"""
        entry = await self.cache.get(user_id)
        if entry is None:
            return []
        return [item for item in entry.items if item.category == category]

    async def category_counts(self, user_id: str) -> Dict[str, int]:
        """Number of cached items per category"""
        entry = await self.cache.get(user_id)
        return dict(Counter(item.category for item in entry.items)) if entry else {}

    async def stats(self, user_id: str) -> CacheStats:
        return await self.cache.stats(user_id)

    async def clear(self, user_id: str):
        """Drop the cached wardrobe, e.g. on sign out"""
        await self.cache.clear(user_id)
