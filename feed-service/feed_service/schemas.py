"""
Pydantic schemas for Feed Service
"""
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Any, Dict, Generic, List, Optional, TypeVar
from datetime import datetime, timezone
from enum import Enum


T = TypeVar("T")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Post schemas
class Post(BaseModel):
    """Post normalized from any row shape the remote store returns"""
    id: str
    author_id: str
    created_at: datetime
    content: str = ""
    images: List[str] = Field(default_factory=list)
    # Author details (joined from users table)
    username: str = "Anonymous"
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    # Engagement
    likes_count: int = 0
    comments_count: int = 0
    shares_count: int = 0
    # Viewer-relative, never persisted
    is_liked: bool = False
    trending_score: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_record(cls, data: Any) -> Any:
        """
        Flatten the joined author and legacy column names into one shape.

        Rows arrive as {"author": {...}}, {"users": {...}} or with the
        author columns already flattened; ids may be ints.
        """
        if not isinstance(data, dict):
            return data

        record = dict(data)
        author = record.pop("author", None)
        users = record.pop("users", None)
        joined = author if isinstance(author, dict) else users
        if isinstance(joined, dict):
            record.setdefault("username", joined.get("username"))
            record.setdefault("full_name", joined.get("full_name"))
            record.setdefault("avatar_url", joined.get("avatar_url"))
            record.setdefault("author_id", joined.get("id"))

        post_id = record.get("id") or record.get("post_id")
        author_id = record.get("author_id") or record.get("user_id")
        if post_id is not None:
            record["id"] = str(post_id)
        if author_id is not None:
            record["author_id"] = str(author_id)

        if record.get("username") is None:
            record["username"] = "Anonymous"
        if record.get("content") is None:
            record["content"] = ""

        image_url = record.pop("image_url", None)
        if not isinstance(record.get("images"), list):
            record["images"] = [image_url] if image_url else []

        return record

    @field_validator("likes_count", "comments_count", "shares_count", mode="before")
    @classmethod
    def clamp_count(cls, value: Any) -> int:
        """Counts are never negative"""
        return max(0, int(value or 0))

    @field_validator("created_at")
    @classmethod
    def ensure_timezone(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def engagement(self) -> int:
        """Raw interaction count"""
        return self.likes_count + self.comments_count + self.shares_count


class SourceType(str, Enum):
    """Sub-feed a feed item was selected from"""
    FRIEND = "friend"
    TRENDING = "trending"


class FeedItem(BaseModel):
    """Post annotated with provenance"""
    post: Post
    source_type: SourceType

    class Config:
        frozen = True

    @property
    def id(self) -> str:
        return self.post.id


class FeedPage(BaseModel):
    """Page handed to the UI layer"""
    items: List[FeedItem]
    page: int
    has_more: bool
    from_cache: bool = False
    is_stale: bool = False


class FeedComposition(BaseModel):
    """Breakdown of the current feed by source"""
    friend_posts: int = 0
    trending_posts: int = 0
    total_posts: int = 0
    average_engagement: float = 0.0


# Realtime event schemas
class EventKind(str, Enum):
    """Change kind of a realtime event"""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class RealtimeEvent(BaseModel):
    """Change to a row of the posts table"""
    kind: EventKind
    post_id: str
    post: Optional[Post] = None

    @model_validator(mode="before")
    @classmethod
    def fill_post_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("post_id"):
            post = data.get("post")
            post_id = post.get("id") if isinstance(post, dict) else getattr(post, "id", None)
            if post_id is not None:
                data = {**data, "post_id": str(post_id)}
        return data

    @model_validator(mode="after")
    def require_post(self) -> "RealtimeEvent":
        if self.kind != EventKind.DELETE and self.post is None:
            raise ValueError(f"{self.kind.value} event requires the post record")
        return self


class LikeEvent(BaseModel):
    """Change to a row of the likes table"""
    kind: EventKind
    post_id: str
    user_id: str

    @field_validator("post_id", "user_id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("kind")
    @classmethod
    def insert_or_delete(cls, value: EventKind) -> EventKind:
        if value == EventKind.UPDATE:
            raise ValueError("like events are insert or delete")
        return value


class ChangePayload(BaseModel):
    """Raw change-data-capture payload: {kind, table, record, old_record}"""
    kind: EventKind
    table: str
    record: Optional[Dict[str, Any]] = None
    old_record: Optional[Dict[str, Any]] = None

    @field_validator("kind", mode="before")
    @classmethod
    def lower_kind(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @property
    def row(self) -> Dict[str, Any]:
        """Row the change applies to (old row for deletes)"""
        if self.kind == EventKind.DELETE:
            return self.old_record or self.record or {}
        return self.record or {}


# Cache schemas
class CacheEntry(BaseModel, Generic[T]):
    """Snapshot of items owned by one scope key"""
    scope_key: str
    items: List[T]
    last_write_at: datetime
    # Page-level facts stored with the items, e.g. the raw count of a feed page
    meta: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("last_write_at")
    @classmethod
    def ensure_timezone(cls, value: datetime) -> datetime:
        return _as_utc(value)


class CachePayload(BaseModel, Generic[T]):
    """Items a remote fetch hands to the cache, with meta to store alongside"""
    items: List[T]
    meta: Dict[str, Any] = Field(default_factory=dict)


class CacheResult(BaseModel, Generic[T]):
    """Items returned by a cache lookup and where they came from"""
    items: List[T]
    meta: Dict[str, Any] = Field(default_factory=dict)
    from_cache: bool = False
    is_stale: bool = False


class CacheStats(BaseModel):
    """Cache statistics for a scope key"""
    scope_key: str
    total_items: int = 0
    last_updated: Optional[datetime] = None
    is_stale: bool = True
    hits: int = 0
    misses: int = 0
    fallbacks: int = 0


# Wardrobe schemas
class WardrobeItem(BaseModel):
    """Clothing item in a user's wardrobe"""
    id: str
    user_id: str
    name: str
    category: str
    color: str
    brand: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    is_favorite: bool = False
    created_at: datetime

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> str:
        return str(value)

    @field_validator("images", "tags", mode="before")
    @classmethod
    def default_list(cls, value: Any) -> List[str]:
        return value or []
