"""
Feed Service - mixed friend/trending feed with expiring local cache
"""
from .cache import ExpiringCache, MemoryCacheStore, RedisCacheStore
from .exceptions import AuthRequiredError, FetchError, PartialJoinFailure
from .service import FeedComposer
from .wardrobe import WardrobeService

__all__ = [
    "AuthRequiredError",
    "ExpiringCache",
    "FeedComposer",
    "FetchError",
    "MemoryCacheStore",
    "PartialJoinFailure",
    "RedisCacheStore",
    "WardrobeService",
]
