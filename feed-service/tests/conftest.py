"""
Shared fixtures: an in-memory repository and a fixed clock
"""
import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from feed_service.cache import ExpiringCache
from feed_service.domain.repositories import IFeedRepository
from feed_service.exceptions import FetchError
from feed_service.schemas import FeedItem
from feed_service.service import FeedComposer

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
VIEWER = "viewer"


def make_post(
    post_id: str,
    author_id: str,
    hours_ago: float = 1.0,
    likes: int = 0,
    comments: int = 0,
    shares: int = 0,
) -> Dict[str, Any]:
    return {
        "id": post_id,
        "user_id": author_id,
        "content": f"post {post_id}",
        "created_at": NOW - timedelta(hours=hours_ago),
        "likes_count": likes,
        "comments_count": comments,
        "shares_count": shares,
        "users": {"id": author_id, "username": f"user_{author_id}", "avatar_url": None},
    }


class MutableClock:
    """Clock tests can move forward"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeRepository(IFeedRepository):
    """In-memory stand-in for the Supabase tables"""

    def __init__(self):
        self.following: Dict[str, List[str]] = {}
        self.posts: List[Dict[str, Any]] = []
        self.likes: Set[Tuple[str, str]] = set()
        self.wardrobe: Dict[str, List[Dict[str, Any]]] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: Counter = Counter()
        self.recent_limits: List[int] = []
        self.membership_requests: List[List[str]] = []
        self.gate: Optional[asyncio.Event] = None

    async def _enter(self, name: str):
        self.calls[name] += 1
        if self.gate is not None:
            await self.gate.wait()
        if name in self.failures:
            raise self.failures[name]

    async def query_following(self, user_id: str) -> List[str]:
        await self._enter("query_following")
        return list(self.following.get(user_id, []))

    async def query_posts_by_authors(self, author_ids, limit, offset=0):
        await self._enter("query_posts_by_authors")
        rows = [post for post in self.posts if post["user_id"] in author_ids]
        rows.sort(key=lambda post: post["created_at"], reverse=True)
        return rows[offset:offset + limit]

    async def query_recent_posts(self, since, limit, offset=0):
        await self._enter("query_recent_posts")
        self.recent_limits.append(limit)
        rows = [post for post in self.posts if post["created_at"] >= since]
        rows.sort(
            key=lambda post: (post["likes_count"], post["comments_count"], post["created_at"]),
            reverse=True,
        )
        return rows[offset:offset + limit]

    async def query_like_membership(self, post_ids, user_id):
        await self._enter("query_like_membership")
        self.membership_requests.append(list(post_ids))
        return {post_id for post_id in post_ids if (post_id, user_id) in self.likes}

    async def insert_like(self, post_id, user_id):
        await self._enter("insert_like")
        self.likes.add((post_id, user_id))

    async def delete_like(self, post_id, user_id):
        await self._enter("delete_like")
        self.likes.discard((post_id, user_id))

    async def query_wardrobe_items(self, user_id):
        await self._enter("query_wardrobe_items")
        return list(self.wardrobe.get(user_id, []))


def seed_pools(repo: FakeRepository, friends: int, trending: int):
    """Friend posts fall outside the trending window; trending authors are not followed"""
    repo.following[VIEWER] = ["friend_a", "friend_b"]
    for i in range(friends):
        author = "friend_a" if i % 2 == 0 else "friend_b"
        repo.posts.append(make_post(f"f{i}", author, hours_ago=30 + i))
    for i in range(trending):
        repo.posts.append(make_post(f"t{i}", f"stranger_{i}", hours_ago=2, likes=20 - i))


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def feed_cache(clock) -> ExpiringCache:
    return ExpiringCache(namespace="feed", item_model=FeedItem, clock=clock)


@pytest.fixture
def composer(repo, feed_cache, clock) -> FeedComposer:
    return FeedComposer(repo, current_user_id=VIEWER, cache=feed_cache, clock=clock)


@pytest.fixture
def fetch_error() -> FetchError:
    return FetchError("network down")
