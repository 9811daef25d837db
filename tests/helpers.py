"""
Test helpers: an in-memory durable store and small builders.

The in-memory repository exposes the same coroutines as LikeRepository so
the engine and the reconciliation job run unchanged against it.
"""

from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.exc import OperationalError

from engagement import LikeEngine
from models import VIDEO_STATUS_PUBLISHED, Video
from utils.rate_limiter import SlidingWindowRateLimiter


class InMemoryLikeRepository:
    """
    Dict-backed stand-in for LikeRepository.

    Set ``fail_writes`` to make the next N write calls raise an
    SQLAlchemy OperationalError, or ``fail_counter_batches`` to fail the
    next N set_counters calls.
    """

    def __init__(self):
        self.videos: Dict[str, Video] = {}
        self.likes: Set[Tuple[str, str]] = set()
        self.fail_writes = 0
        self.fail_counter_batches = 0
        self.write_attempts = 0
        self.counter_batches: List[List[Tuple[str, int]]] = []

    def add_video(self, video_id: str, status: str = VIDEO_STATUS_PUBLISHED,
                  likes_count: int = 0, views_count: int = 0) -> Video:
        video = Video(id=video_id, status=status, likes_count=likes_count, views_count=views_count)
        self.videos[video_id] = video
        return video

    def _maybe_fail(self):
        self.write_attempts += 1
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise OperationalError("INSERT", {}, Exception("database unavailable"))

    async def get_video(self, video_id: str) -> Optional[Video]:
        return self.videos.get(video_id)

    async def get_likes_count(self, video_id: str) -> Optional[int]:
        video = self.videos.get(video_id)
        return video.likes_count if video else None

    async def has_like(self, user_id: str, video_id: str) -> bool:
        return (user_id, video_id) in self.likes

    async def liked_video_ids(self, user_id: str, video_ids: Iterable[str]) -> List[str]:
        return [video_id for video_id in video_ids if (user_id, video_id) in self.likes]

    async def create_like(self, user_id: str, video_id: str) -> bool:
        self._maybe_fail()
        if (user_id, video_id) in self.likes:
            return False
        self.likes.add((user_id, video_id))
        self.videos[video_id].likes_count += 1
        return True

    async def delete_like(self, user_id: str, video_id: str) -> bool:
        self._maybe_fail()
        if (user_id, video_id) not in self.likes:
            return False
        self.likes.discard((user_id, video_id))
        video = self.videos[video_id]
        video.likes_count = max(0, video.likes_count - 1)
        return True

    async def ensure_like_row(self, user_id: str, video_id: str) -> bool:
        self._maybe_fail()
        if (user_id, video_id) in self.likes:
            return False
        self.likes.add((user_id, video_id))
        return True

    async def remove_like_row(self, user_id: str, video_id: str) -> bool:
        self._maybe_fail()
        if (user_id, video_id) not in self.likes:
            return False
        self.likes.discard((user_id, video_id))
        return True

    async def set_counters(self, family: str, counts: List[Tuple[str, int]]) -> int:
        if self.fail_counter_batches > 0:
            self.fail_counter_batches -= 1
            raise OperationalError("UPDATE", {}, Exception("database unavailable"))
        self.counter_batches.append(list(counts))
        column = "likes_count" if family == "likes" else "views_count"
        updated = 0
        for video_id, count in counts:
            video = self.videos.get(video_id)
            if video is not None:
                setattr(video, column, count)
                updated += 1
        return updated


def build_engine(service, repository, like_limit: int = 10, view_limit: int = 5,
                 prefix: str = "test:ratelimit", page_cache=None) -> LikeEngine:
    """LikeEngine with test-prefixed limiters and no retry delays."""
    return LikeEngine(
        service,
        repository,
        like_limiter=SlidingWindowRateLimiter(service, like_limit, 60, f"{prefix}:like"),
        view_limiter=SlidingWindowRateLimiter(service, view_limit, 60, f"{prefix}:view"),
        page_cache=page_cache,
        max_retries=3,
        retry_delays=[0, 0, 0],
    )


def generate_video_ids(prefix: str, count: int) -> List[str]:
    """Deterministic video ids: '{prefix}_{index:06d}'."""
    return [f"{prefix}_{i:06d}" for i in range(1, count + 1)]
