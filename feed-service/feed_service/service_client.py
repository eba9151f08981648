"""
Supabase client for the hosted posts/follows/likes/wardrobe tables
"""
import httpx
from typing import Optional, List, Dict, Any, Set
from datetime import datetime
import logging

from .config import settings
from .domain.repositories import IFeedRepository
from .exceptions import FetchError

logger = logging.getLogger(__name__)

POST_SELECT = "*,users!posts_user_id_fkey(id,username,full_name,avatar_url)"


def _in_filter(values: List[str]) -> str:
    """PostgREST `in` filter value"""
    return "in.(" + ",".join(str(v) for v in values) + ")"


class SupabaseClient(IFeedRepository):
    """HTTP client for the Supabase REST (PostgREST) API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url or settings.SUPABASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.SUPABASE_ANON_KEY
        self.access_token: Optional[str] = None
        self.timeout = httpx.Timeout(
            settings.FETCH_TIMEOUT_SECONDS,
            connect=settings.CONNECT_TIMEOUT_SECONDS
        )
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def start(self):
        """Initialize HTTP client"""
        self.client = httpx.AsyncClient(
            base_url=f"{self.base_url}/rest/v1",
            timeout=self.timeout,
            transport=self.transport,
        )
        logger.info("Supabase client initialized")

    async def stop(self):
        """Close HTTP client"""
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.info("Supabase client closed")

    def set_access_token(self, token: Optional[str]):
        """Use the signed-in user's JWT instead of the anon key"""
        self.access_token = token

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
            "Accept-Profile": settings.SUPABASE_SCHEMA,
            "Content-Profile": settings.SUPABASE_SCHEMA,
        }

    async def _make_request(
        self,
        method: str,
        path: str,
        headers: Optional[Dict[str, str]] = None,
        **kwargs
    ) -> Any:
        """Make HTTP request to PostgREST, raising FetchError on any failure"""
        if not self.client:
            raise FetchError("Supabase client not initialized")

        request_headers = self._headers()
        if headers:
            request_headers.update(headers)

        try:
            response = await self.client.request(
                method,
                path,
                headers=request_headers,
                **kwargs
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error {e.response.status_code} for {path}: {e}")
            raise FetchError(f"HTTP {e.response.status_code} for {path}", e) from e
        except httpx.HTTPError as e:
            logger.error(f"Request failed for {path}: {e}")
            raise FetchError(f"Request failed for {path}: {e}", e) from e

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # Follows
    async def query_following(self, user_id: str) -> List[str]:
        """Get ids of users the user follows"""
        rows = await self._make_request(
            "GET",
            "/follows",
            params={"select": "following_id", "follower_id": f"eq.{user_id}"}
        )
        following_ids = [str(row["following_id"]) for row in rows or []]
        logger.info(f"Fetched {len(following_ids)} following IDs for user {user_id}")
        return following_ids

    # Posts
    async def query_posts_by_authors(
        self,
        author_ids: List[str],
        limit: int,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """Get posts by any of the authors, newest first"""
        if not author_ids or limit <= 0:
            return []

        rows = await self._make_request(
            "GET",
            "/posts",
            params={
                "select": POST_SELECT,
                "user_id": _in_filter(author_ids),
                "order": "created_at.desc",
                "limit": limit,
                "offset": offset,
            }
        )
        return rows or []

    async def query_recent_posts(
        self,
        since: datetime,
        limit: int,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """Get posts created after `since`, most engaged first"""
        if limit <= 0:
            return []

        rows = await self._make_request(
            "GET",
            "/posts",
            params={
                "select": POST_SELECT,
                "created_at": f"gte.{since.isoformat()}",
                "order": "likes_count.desc,comments_count.desc,created_at.desc",
                "limit": limit,
                "offset": offset,
            }
        )
        return rows or []

    # Likes
    async def query_like_membership(self, post_ids: List[str], user_id: str) -> Set[str]:
        """Get the subset of post ids the user has liked"""
        if not post_ids:
            return set()

        rows = await self._make_request(
            "GET",
            "/likes",
            params={
                "select": "post_id",
                "user_id": f"eq.{user_id}",
                "post_id": _in_filter(post_ids),
            }
        )
        return {str(row["post_id"]) for row in rows or []}

    async def insert_like(self, post_id: str, user_id: str) -> None:
        """Record a like; an existing like is left as is"""
        try:
            await self._make_request(
                "POST",
                "/likes",
                headers={"Prefer": "return=minimal"},
                json={"post_id": post_id, "user_id": user_id}
            )
        except FetchError as e:
            cause = e.cause
            if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code == 409:
                logger.info(f"Post {post_id} already liked by user {user_id}")
                return
            raise

    async def delete_like(self, post_id: str, user_id: str) -> None:
        """Remove a like"""
        await self._make_request(
            "DELETE",
            "/likes",
            params={"post_id": f"eq.{post_id}", "user_id": f"eq.{user_id}"}
        )

    # Wardrobe
    async def query_wardrobe_items(self, user_id: str) -> List[Dict[str, Any]]:
        """Get the user's wardrobe items, newest first"""
        rows = await self._make_request(
            "GET",
            "/wardrobe_items",
            params={
                "select": "*",
                "user_id": f"eq.{user_id}",
                "order": "created_at.desc",
            }
        )
        return rows or []


# Global client instance
supabase_client = SupabaseClient()
