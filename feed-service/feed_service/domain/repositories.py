"""
Repository interfaces - Define contracts for remote data access
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Set


class IFeedRepository(ABC):
    """Remote store holding posts, follows, likes and wardrobe items"""

    @abstractmethod
    async def query_following(self, user_id: str) -> List[str]:
        """Get ids of users the user follows"""
        pass

    @abstractmethod
    async def query_posts_by_authors(
        self,
        author_ids: List[str],
        limit: int,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """Get posts by any of the authors, newest first"""
        pass

    @abstractmethod
    async def query_recent_posts(
        self,
        since: datetime,
        limit: int,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """Get posts created after `since`, ordered by likes, comments, created_at desc"""
        pass

    @abstractmethod
    async def query_like_membership(self, post_ids: List[str], user_id: str) -> Set[str]:
        """Get the subset of post ids the user has liked"""
        pass

    @abstractmethod
    async def insert_like(self, post_id: str, user_id: str) -> None:
        """Record a like"""
        pass

    @abstractmethod
    async def delete_like(self, post_id: str, user_id: str) -> None:
        """Remove a like"""
        pass

    @abstractmethod
    async def query_wardrobe_items(self, user_id: str) -> List[Dict[str, Any]]:
        """Get the user's wardrobe items, newest first"""
        pass
