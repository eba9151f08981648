"""
Feed ranking - page split, trending score and friend/trending interleave
"""
from datetime import datetime
from typing import List, Sequence, Tuple
import math

from .schemas import FeedItem, Post, SourceType

LIKE_WEIGHT = 2.0
COMMENT_WEIGHT = 1.5
SHARE_WEIGHT = 1.0


def split_page(page_size: int, friend_ratio: float) -> Tuple[int, int]:
    """
    Slots per page for each pool

    Returns:
        Tuple of (friend_count, trending_count)
    """
    friend_count = math.floor(page_size * friend_ratio)
    return friend_count, page_size - friend_count


def engagement_score(post: Post) -> float:
    """Weighted interaction count"""
    return (
        post.likes_count * LIKE_WEIGHT
        + post.comments_count * COMMENT_WEIGHT
        + post.shares_count * SHARE_WEIGHT
    )


def time_decay(created_at: datetime, now: datetime, window_hours: int) -> float:
    """
    Linear decay over the trending window.

    The numerator is floored at 1 before dividing, so posts at or beyond
    the window keep 1/window_hours instead of dropping to zero.
    """
    hours_ago = (now - created_at).total_seconds() / 3600.0
    return max(1.0, window_hours - hours_ago) / window_hours


def trending_score(post: Post, now: datetime, window_hours: int) -> float:
    return engagement_score(post) * time_decay(post.created_at, now, window_hours)


def rank_trending(
    candidates: Sequence[Post],
    now: datetime,
    window_hours: int,
    limit: int
) -> List[Post]:
    """Score candidates, sort by score (stable on source order) and keep the top `limit`"""
    scored = [
        post.model_copy(update={"trending_score": trending_score(post, now, window_hours)})
        for post in candidates
    ]
    scored.sort(key=lambda post: post.trending_score, reverse=True)
    return scored[:max(0, limit)]


def interleave(friend_posts: Sequence[Post], trending_posts: Sequence[Post]) -> List[FeedItem]:
    """Alternate friend, trending, friend, ... skipping an exhausted pool"""
    items: List[FeedItem] = []

    for i in range(max(len(friend_posts), len(trending_posts))):
        if i < len(friend_posts):
            items.append(FeedItem(post=friend_posts[i], source_type=SourceType.FRIEND))
        if i < len(trending_posts):
            items.append(FeedItem(post=trending_posts[i], source_type=SourceType.TRENDING))

    return items
