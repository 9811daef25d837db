"""
Rendered-page fragment cache shared with the surrounding web application.

The site caches rendered fragments (video page header, home feed tiles)
under ``page:{path}``. A like toggle changes the count those fragments show,
so the engine drops them and the next render rebuilds them.
"""

import logging
from typing import Optional

from config import PAGE_CACHE_KEY_PREFIX, PAGE_CACHE_TTL
from utils.async_redis_utils import AsyncRedisService

logger = logging.getLogger(__name__)


def video_page_path(video_id: str) -> str:
    return f"/video/{video_id}"


HOME_PAGE_PATH = "/"


class PageCache:
    def __init__(self, redis_service: AsyncRedisService, ttl: int = PAGE_CACHE_TTL):
        self.redis_service = redis_service
        self.ttl = ttl

    def _key(self, path: str) -> str:
        return f"{PAGE_CACHE_KEY_PREFIX}{path}"

    async def get(self, path: str) -> Optional[str]:
        return await self.redis_service.get(self._key(path))

    async def put(self, path: str, fragment: str) -> None:
        await self.redis_service.set(self._key(path), fragment, ex=self.ttl)

    async def invalidate(self, *paths: str) -> int:
        """Drop cached fragments for ``paths``; returns how many existed."""
        if not paths:
            return 0
        removed = await self.redis_service.delete(*(self._key(path) for path in paths))
        logger.debug(f"Invalidated page cache for {paths} ({removed} entries)")
        return removed

    async def invalidate_video(self, video_id: str) -> int:
        """Pages that display this video's like count."""
        return await self.invalidate(video_page_path(video_id), HOME_PAGE_PATH)
