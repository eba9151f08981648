"""
Feed Service - Core business logic
"""
from typing import AbstractSet, Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from datetime import datetime, timedelta
import asyncio
import logging

from pydantic import ValidationError

from .cache import ExpiringCache, create_store, utc_now
from .config import settings
from .domain.repositories import IFeedRepository
from .exceptions import AuthRequiredError, FetchError, PartialJoinFailure
from .ranking import interleave, rank_trending, split_page
from .schemas import (
    CachePayload,
    ChangePayload,
    EventKind,
    FeedComposition,
    FeedItem,
    FeedPage,
    LikeEvent,
    Post,
    RealtimeEvent,
    SourceType,
)
from .state import (
    FeedState,
    append_page,
    apply_like_delta,
    apply_like_event,
    apply_realtime_event,
    replace_first_page,
    reset_state,
)

logger = logging.getLogger(__name__)


class FeedComposer:
    """Mixed friend/trending feed with pagination, provenance and offline cache"""

    def __init__(
        self,
        repository: IFeedRepository,
        current_user_id: Optional[str] = None,
        cache: Optional[ExpiringCache] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.repository = repository
        self.current_user_id = current_user_id
        self.cache = cache if cache is not None else ExpiringCache(
            store=create_store(), namespace="feed", item_model=FeedItem
        )
        self.clock = clock or utc_now
        self.state = FeedState()
        self.page_size = settings.PAGE_SIZE
        self.friend_count, self.trending_count = split_page(
            settings.PAGE_SIZE, settings.FRIEND_RATIO
        )

    @property
    def is_authenticated(self) -> bool:
        return self.current_user_id is not None

    async def _call(self, awaitable: Awaitable[Any], what: str) -> Any:
        """Await a remote call bounded by the fetch timeout"""
        try:
            return await asyncio.wait_for(awaitable, timeout=settings.FETCH_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as e:
            logger.error(f"Timed out fetching {what}")
            raise FetchError(f"Timed out fetching {what}", e) from e

    def _normalize(self, rows: Sequence[Dict[str, Any]]) -> List[Post]:
        try:
            return [Post.model_validate(row) for row in rows]
        except ValidationError as e:
            raise FetchError(f"Malformed post record: {e}", e) from e

    async def _with_likes(self, posts: List[Post], user_id: str) -> List[Post]:
        """Resolve is_liked for the viewer"""
        if not posts:
            return posts
        liked_ids = await self._call(
            self.repository.query_like_membership([post.id for post in posts], user_id),
            "like membership"
        )
        return [post.model_copy(update={"is_liked": post.id in liked_ids}) for post in posts]

    # ===== Sub-feeds =====

    async def _following(self, user_id: str) -> List[str]:
        return await self._call(self.repository.query_following(user_id), "following")

    async def fetch_friend_posts(
        self,
        user_id: Optional[str],
        limit: int,
        offset: int = 0
    ) -> List[Post]:
        """
        Most recent posts by users the viewer follows

        Args:
            user_id: Authenticated viewer
            limit: Maximum number of posts
            offset: Posts to skip (later pages)

        Returns:
            Posts newest first, with is_liked resolved

        Raises:
            AuthRequiredError: If user_id is None
            FetchError: If the remote store fails
        """
        if user_id is None:
            raise AuthRequiredError("fetching friend posts")
        if limit <= 0:
            return []

        following_ids = await self._following(user_id)
        return await self._friend_posts(user_id, following_ids, limit, offset)

    async def _friend_posts(
        self,
        user_id: str,
        following_ids: Sequence[str],
        limit: int,
        offset: int
    ) -> List[Post]:
        if limit <= 0:
            return []
        if not following_ids:
            logger.info(f"User {user_id} follows no one, returning empty friends posts")
            return []

        rows = await self._call(
            self.repository.query_posts_by_authors(list(following_ids), limit, offset),
            "friend posts"
        )
        posts = self._normalize(rows)[:limit]
        posts.sort(key=lambda post: post.created_at, reverse=True)
        return await self._with_likes(posts, user_id)

    async def fetch_trending_posts(
        self,
        limit: int,
        offset: int = 0,
        exclude_ids: AbstractSet[str] = frozenset(),
        exclude_authors: AbstractSet[str] = frozenset()
    ) -> List[Post]:
        """
        Highest scoring posts of the trending window

        Over-fetches candidates so the score can re-rank the source order,
        then resolves is_liked for the returned posts only.

        Args:
            limit: Maximum number of posts
            offset: Source rows to skip (later pages)
            exclude_ids: Posts already in the feed
            exclude_authors: Authors whose posts belong to the friend pool
        """
        if limit <= 0:
            return []

        now = self.clock()
        candidates = await self._trending_candidates(
            limit,
            offset,
            now - timedelta(hours=settings.TRENDING_WINDOW_HOURS),
            exclude_ids,
            exclude_authors,
        )
        trending = rank_trending(candidates, now, settings.TRENDING_WINDOW_HOURS, limit)

        if self.is_authenticated and trending:
            trending = await self._with_likes(trending, self.current_user_id)
        return trending

    async def _trending_candidates(
        self,
        limit: int,
        offset: int,
        since: datetime,
        exclude_ids: AbstractSet[str],
        exclude_authors: AbstractSet[str]
    ) -> List[Post]:
        """
        Recent posts to rank, without excluded posts and authors

        Further windows of the source are scanned while fewer than a full
        over-fetch of candidates is left, up to TRENDING_MAX_SCANS windows.
        """
        window = limit * settings.TRENDING_OVERFETCH_FACTOR
        candidates: List[Post] = []

        for scan in range(settings.TRENDING_MAX_SCANS):
            rows = await self._call(
                self.repository.query_recent_posts(since, window, offset + scan * window),
                "trending posts"
            )
            candidates.extend(
                post for post in self._normalize(rows)
                if post.id not in exclude_ids and post.author_id not in exclude_authors
            )
            if len(rows) < window or len(candidates) >= window:
                break

        return candidates

    # ===== Composition =====

    async def _fetch_page(self, page_number: int) -> Tuple[List[FeedItem], int]:
        """
        Fetch both pools concurrently and interleave them

        Posts by followed authors are left to the friend pool, and later
        pages skip trending posts already in the feed, so no post is shown
        twice and a full trending pool always fills its slots.

        Returns:
            Tuple of (feed_items, raw_count)
        """
        if page_number < 1:
            raise ValueError("page_number starts at 1")
        if not self.is_authenticated:
            raise AuthRequiredError("composing the feed")

        user_id = self.current_user_id
        friend_offset = (page_number - 1) * self.friend_count
        trending_offset = (page_number - 1) * self.trending_count
        shown_ids = (
            frozenset() if page_number == 1
            else self.state.friend_ids | self.state.trending_ids
        )
        logger.info(
            f"Fetching feed page {page_number}: {self.friend_count} friend posts, "
            f"{self.trending_count} trending posts"
        )

        try:
            following_ids = await self._following(user_id)
        except FetchError as e:
            logger.error(f"Error fetching friend posts for page {page_number}: {e}")
            raise PartialJoinFailure("friend", e) from e

        friend_result, trending_result = await asyncio.gather(
            self._friend_posts(user_id, following_ids, self.friend_count, friend_offset),
            self.fetch_trending_posts(
                self.trending_count,
                trending_offset,
                exclude_ids=shown_ids,
                exclude_authors=frozenset(following_ids),
            ),
            return_exceptions=True,
        )
        for source, result in (("friend", friend_result), ("trending", trending_result)):
            if isinstance(result, Exception):
                logger.error(f"Error fetching {source} posts for page {page_number}: {result}")
                raise PartialJoinFailure(source, result) from result
            if isinstance(result, BaseException):
                raise result

        items = interleave(friend_result, trending_result)
        raw_count = len(friend_result) + len(trending_result)
        logger.info(
            f"Mixed feed: {len(items)} total posts "
            f"({len(friend_result)} friends, {len(trending_result)} trending)"
        )
        return items, raw_count

    async def compose_page(self, page_number: int) -> List[FeedItem]:
        """
        Compose a page and add it to the feed

        Page 1 replaces the feed, later pages are appended. Pagination only
        advances on success, and results of a fetch started before a refresh
        are discarded.
        """
        generation = self.state.generation
        items, raw_count = await self._fetch_page(page_number)

        if self.state.generation != generation:
            logger.info(f"Discarding page {page_number} fetched before a refresh")
            return []

        if page_number == 1:
            self.state = replace_first_page(self.state, items, raw_count, self.page_size)
        else:
            self.state = append_page(self.state, items, raw_count, self.page_size)
        return items

    async def load_feed(self, refresh: bool = False) -> FeedPage:
        """
        Load page 1 through the per-user cache

        A fresh cached page is served without remote calls. refresh clears the
        cache and resets pagination first. When the remote store fails the
        cached page is served and flagged stale; with nothing cached the
        error propagates.
        """
        if not self.is_authenticated:
            raise AuthRequiredError("loading the feed")
        if refresh:
            await self.refresh()

        generation = self.state.generation

        async def remote_fetch() -> CachePayload:
            items, raw_count = await self._fetch_page(1)
            return CachePayload(items=items, meta={"raw_count": raw_count})

        result = await self.cache.lookup(
            self.current_user_id,
            settings.FEED_CACHE_TTL_MINUTES,
            remote_fetch,
            force_refresh=refresh,
        )

        if self.state.generation != generation:
            logger.info("Discarding feed load superseded by a refresh")
            return self.current_page()

        raw_count = result.meta.get("raw_count", len(result.items))
        self.state = replace_first_page(
            self.state,
            result.items,
            raw_count,
            self.page_size,
            from_cache=result.from_cache,
            is_stale=result.is_stale,
        )
        logger.info(
            f"Feed loaded: {len(self.state.items)} posts, page 1"
            f"{' (from cache)' if result.from_cache else ''}"
        )
        return self.current_page()

    async def load_more(self) -> FeedPage:
        """Compose and append the next page while more may exist"""
        pagination = self.state.pagination
        if not pagination.has_more:
            return self.current_page()

        await self.compose_page(pagination.page + 1)
        return self.current_page()

    async def refresh(self):
        """Invalidate the cached feed and restart pagination"""
        if self.current_user_id is not None:
            await self.cache.clear(self.current_user_id)
        self.state = reset_state(self.state)

    async def sign_out(self):
        """Drop the viewer's cached feed and session state"""
        await self.refresh()
        self.current_user_id = None

    def current_page(self) -> FeedPage:
        """Current feed as handed to the UI"""
        return FeedPage(
            items=list(self.state.items),
            page=self.state.pagination.page,
            has_more=self.state.pagination.has_more,
            from_cache=self.state.from_cache,
            is_stale=self.state.is_stale,
        )

    def source_badge(self, post_id: str) -> Optional[SourceType]:
        """Provenance of a post for badge rendering"""
        return self.state.source_of(post_id)

    def feed_composition(self) -> FeedComposition:
        """Breakdown of the current feed by source"""
        items = self.state.items
        if not items:
            return FeedComposition()

        friend_posts = sum(1 for item in items if item.source_type == SourceType.FRIEND)
        total_engagement = sum(item.post.engagement for item in items)
        return FeedComposition(
            friend_posts=friend_posts,
            trending_posts=len(items) - friend_posts,
            total_posts=len(items),
            average_engagement=total_engagement / len(items),
        )

    # ===== Realtime =====

    def apply_realtime_event(self, event: RealtimeEvent):
        """Apply an insert/update/delete of a post"""
        self.state = apply_realtime_event(self.state, event, self.current_user_id)

    def apply_like_event(self, event: LikeEvent):
        """Apply a like/unlike by the viewer"""
        self.state = apply_like_event(self.state, event, self.current_user_id)

    async def handle_change(self, payload: ChangePayload):
        """Route a raw change payload from the realtime stream"""
        row = payload.row
        if payload.table == "posts":
            post = None if payload.kind == EventKind.DELETE else Post.model_validate(row)
            self.apply_realtime_event(
                RealtimeEvent(kind=payload.kind, post_id=str(row.get("id")), post=post)
            )
        elif payload.table == "likes":
            self.apply_like_event(
                LikeEvent(kind=payload.kind, post_id=row.get("post_id"), user_id=row.get("user_id"))
            )
        else:
            logger.warning(f"Ignoring change on unknown table '{payload.table}'")

    # ===== Interactions =====

    async def like_post(self, post_id: str):
        """Like a post as the viewer"""
        if not self.is_authenticated:
            raise AuthRequiredError("liking posts")

        await self._call(self.repository.insert_like(post_id, self.current_user_id), "like")
        self.state = apply_like_delta(self.state, post_id, 1, True)
        logger.info(f"Post liked successfully: {post_id}")

    async def unlike_post(self, post_id: str):
        """Remove the viewer's like from a post"""
        if not self.is_authenticated:
            raise AuthRequiredError("unliking posts")

        await self._call(self.repository.delete_like(post_id, self.current_user_id), "unlike")
        self.state = apply_like_delta(self.state, post_id, -1, False)
        logger.info(f"Post unliked successfully: {post_id}")

    async def toggle_like(self, post_id: str):
        """Like or unlike depending on the post's current state"""
        item = self.state.find(post_id)
        if item is not None and item.post.is_liked:
            await self.unlike_post(post_id)
        else:
            await self.like_post(post_id)
