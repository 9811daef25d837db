"""
Redis key scheme for engagement counters.

The key names are shared with existing deployments and must not change:

    video:{video_id}:like_count    - live like counter (string int, 30 day TTL)
    video:{video_id}:view_count    - live view counter (string int)
    video:{video_id}:likes         - set of user ids who like the video
    user:{user_id}:like:{video_id} - per-user like marker (30 day TTL)
"""

from typing import Iterator, List, Optional, Sequence

LIKE_COUNT_SUFFIX = "like_count"
VIEW_COUNT_SUFFIX = "view_count"

LIKE_COUNT_PATTERN = f"video:*:{LIKE_COUNT_SUFFIX}"
VIEW_COUNT_PATTERN = f"video:*:{VIEW_COUNT_SUFFIX}"


def like_count_key(video_id: str) -> str:
    return f"video:{video_id}:{LIKE_COUNT_SUFFIX}"


def view_count_key(video_id: str) -> str:
    return f"video:{video_id}:{VIEW_COUNT_SUFFIX}"


def likes_set_key(video_id: str) -> str:
    return f"video:{video_id}:likes"


def user_like_key(user_id: str, video_id: str) -> str:
    return f"user:{user_id}:like:{video_id}"


def parse_video_id(counter_key: str) -> Optional[str]:
    """
    Extract the video id embedded in a counter key.

    Returns None for keys that do not follow the ``video:{id}:{suffix}``
    shape or carry an empty id.
    """
    parts = counter_key.split(":")
    if len(parts) < 3 or parts[0] != "video":
        return None
    video_id = ":".join(parts[1:-1])
    return video_id or None


def failed_sync_member(user_id: str, video_id: str) -> str:
    return f"{user_id}:{video_id}"


def parse_failed_sync_member(member: str) -> Optional[tuple]:
    """Split a ``{user_id}:{video_id}`` entry from a failed-sync set."""
    user_id, sep, video_id = member.partition(":")
    if not sep or not user_id or not video_id:
        return None
    return user_id, video_id


def chunked(items: Sequence, size: int) -> Iterator[List]:
    """Yield consecutive slices of at most ``size`` items."""
    if size <= 0:
        raise ValueError("batch size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])
