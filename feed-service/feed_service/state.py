"""
Feed state and reducers

FeedState is an immutable value; every reducer returns a new state and the
owner (FeedComposer) keeps the single mutable reference.
"""
from dataclasses import dataclass, field, replace
from typing import FrozenSet, Iterable, Optional, Sequence, Tuple
import logging

from .schemas import EventKind, FeedItem, LikeEvent, Post, RealtimeEvent, SourceType

logger = logging.getLogger(__name__)

# Fields a post update may change; author details and viewer state stay
MUTABLE_POST_FIELDS = ("content", "images", "likes_count", "comments_count", "shares_count")


@dataclass(frozen=True)
class PaginationState:
    """Pages fetched so far in the session and whether more may exist"""
    page: int = 0
    has_more: bool = True

    def advance(self, raw_count: int, page_size: int) -> "PaginationState":
        """Count one more page; has_more never turns back on"""
        return PaginationState(
            page=self.page + 1,
            has_more=self.has_more and raw_count >= page_size,
        )


@dataclass(frozen=True)
class FeedState:
    """Current feed of a session"""
    items: Tuple[FeedItem, ...] = ()
    friend_ids: FrozenSet[str] = frozenset()
    trending_ids: FrozenSet[str] = frozenset()
    deleted_ids: FrozenSet[str] = frozenset()
    pagination: PaginationState = field(default_factory=PaginationState)
    generation: int = 0
    from_cache: bool = False
    is_stale: bool = False

    def source_of(self, post_id: str) -> Optional[SourceType]:
        """Provenance recorded for a post, if any"""
        if post_id in self.friend_ids:
            return SourceType.FRIEND
        if post_id in self.trending_ids:
            return SourceType.TRENDING
        return None

    def find(self, post_id: str) -> Optional[FeedItem]:
        for item in self.items:
            if item.id == post_id:
                return item
        return None


def reset_state(state: FeedState) -> FeedState:
    """Empty session state for a full refresh; in-flight results become obsolete"""
    return FeedState(generation=state.generation + 1)


def _with_provenance(state: FeedState, items: Iterable[FeedItem]) -> FeedState:
    friend_ids = set(state.friend_ids)
    trending_ids = set(state.trending_ids)
    for item in items:
        if item.source_type == SourceType.FRIEND:
            friend_ids.add(item.id)
        else:
            trending_ids.add(item.id)
    return replace(state, friend_ids=frozenset(friend_ids), trending_ids=frozenset(trending_ids))


def append_page(
    state: FeedState,
    items: Sequence[FeedItem],
    raw_count: int,
    page_size: int
) -> FeedState:
    """Append a composed page, dropping posts deleted during the session"""
    kept = [item for item in items if item.id not in state.deleted_ids]
    state = _with_provenance(state, kept)
    return replace(
        state,
        items=state.items + tuple(kept),
        pagination=state.pagination.advance(raw_count, page_size),
        from_cache=False,
        is_stale=False,
    )


def replace_first_page(
    state: FeedState,
    items: Sequence[FeedItem],
    raw_count: int,
    page_size: int,
    from_cache: bool = False,
    is_stale: bool = False
) -> FeedState:
    """Replace the feed with page 1"""
    kept = [item for item in items if item.id not in state.deleted_ids]
    state = _with_provenance(state, kept)
    return replace(
        state,
        items=tuple(kept),
        pagination=PaginationState(page=1, has_more=raw_count >= page_size),
        from_cache=from_cache,
        is_stale=is_stale,
    )


def apply_insert(state: FeedState, post: Post, current_user_id: Optional[str]) -> FeedState:
    """Prepend the viewer's own new post; other users' posts are ignored"""
    if current_user_id is None or post.author_id != current_user_id:
        return state
    if state.find(post.id) is not None:
        return state

    source_type = state.source_of(post.id) or SourceType.FRIEND
    item = FeedItem(post=post, source_type=source_type)
    state = _with_provenance(state, [item])
    return replace(
        state,
        items=(item,) + state.items,
        deleted_ids=state.deleted_ids - {post.id},
    )


def apply_update(state: FeedState, post: Post) -> FeedState:
    """Replace mutable fields of the post wherever it appears, keeping order"""
    changes = {name: getattr(post, name) for name in MUTABLE_POST_FIELDS}
    items = tuple(
        item.model_copy(update={"post": item.post.model_copy(update=changes)})
        if item.id == post.id else item
        for item in state.items
    )
    return replace(state, items=items)


def apply_delete(state: FeedState, post_id: str) -> FeedState:
    """Remove the post from the feed and keep later pages from re-adding it"""
    items = tuple(item for item in state.items if item.id != post_id)
    return replace(state, items=items, deleted_ids=state.deleted_ids | {post_id})


def apply_like_delta(state: FeedState, post_id: str, delta: int, is_liked: bool) -> FeedState:
    """
    Adjust likes_count by delta (floored at 0) and set is_liked.

    Items already in the target like state are left alone, so the viewer's
    own like arriving both locally and through realtime counts once.
    """
    def adjust(item: FeedItem) -> FeedItem:
        if item.id != post_id or item.post.is_liked == is_liked:
            return item
        post = item.post.model_copy(update={
            "likes_count": max(0, item.post.likes_count + delta),
            "is_liked": is_liked,
        })
        return item.model_copy(update={"post": post})

    return replace(state, items=tuple(adjust(item) for item in state.items))


def apply_realtime_event(
    state: FeedState,
    event: RealtimeEvent,
    current_user_id: Optional[str]
) -> FeedState:
    """Apply a posts-table change"""
    if event.kind == EventKind.INSERT:
        return apply_insert(state, event.post, current_user_id)
    if event.kind == EventKind.UPDATE:
        return apply_update(state, event.post)
    return apply_delete(state, event.post_id)


def apply_like_event(
    state: FeedState,
    event: LikeEvent,
    current_user_id: Optional[str]
) -> FeedState:
    """
    Apply a likes-table change made by the viewer

    Unlike a plain +1/-1 per event, a change matching the post's current
    is_liked is a no-op (see apply_like_delta).
    """
    if current_user_id is None or event.user_id != current_user_id:
        logger.debug(f"Ignoring like event from user {event.user_id}")
        return state
    if event.kind == EventKind.INSERT:
        return apply_like_delta(state, event.post_id, 1, True)
    return apply_like_delta(state, event.post_id, -1, False)
