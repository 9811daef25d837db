"""
Durable store access for likes and video counters.

All writes are single statements or short transactions; counter columns are
either changed atomically in SQL (``likes_count = likes_count + 1``) or
overwritten wholesale by the reconciliation job, never read-then-written.
"""

import logging
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import bindparam, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from models import Like, Video

logger = logging.getLogger(__name__)

# Counter families the reconciliation job may overwrite
COUNTER_COLUMNS = {
    "likes": "likes_count",
    "views": "views_count",
}


class LikeRepository:
    """Reads and writes ``videos`` counters and ``likes`` rows."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get_video(self, video_id: str) -> Optional[Video]:
        async with self.session_factory() as session:
            return await session.get(Video, video_id)

    async def get_likes_count(self, video_id: str) -> Optional[int]:
        """Durable like count, or None when the video does not exist."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Video.likes_count).where(Video.id == video_id)
            )
            return result.scalar_one_or_none()

    async def has_like(self, user_id: str, video_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Like.id).where(Like.user_id == user_id, Like.video_id == video_id)
            )
            return result.first() is not None

    async def liked_video_ids(self, user_id: str, video_ids: Iterable[str]) -> List[str]:
        """Subset of ``video_ids`` the user has a like row for."""
        video_ids = list(video_ids)
        if not video_ids:
            return []
        async with self.session_factory() as session:
            result = await session.execute(
                select(Like.video_id).where(
                    Like.user_id == user_id, Like.video_id.in_(video_ids)
                )
            )
            return list(result.scalars().all())

    async def create_like(self, user_id: str, video_id: str) -> bool:
        """
        Insert the like row and bump ``likes_count`` in one transaction.

        Returns:
            True if the row was created, False if it already existed
            (duplicate insert means an earlier attempt already synced)
        """
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    session.add(Like(user_id=user_id, video_id=video_id))
                    await session.flush()
                    await session.execute(
                        update(Video)
                        .where(Video.id == video_id)
                        .values(likes_count=Video.likes_count + 1)
                    )
            except IntegrityError:
                logger.debug(f"Like row not created for user={user_id} video={video_id} (duplicate or missing video)")
                return False
        return True

    async def delete_like(self, user_id: str, video_id: str) -> bool:
        """
        Delete the like row and lower ``likes_count`` in one transaction.

        Returns:
            True if a row was deleted, False if there was none
        """
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(Like).where(Like.user_id == user_id, Like.video_id == video_id)
                )
                if result.rowcount == 0:
                    return False
                await session.execute(
                    update(Video)
                    .where(Video.id == video_id)
                    .values(likes_count=func.greatest(Video.likes_count - 1, 0))
                )
        return True

    async def ensure_like_row(self, user_id: str, video_id: str) -> bool:
        """Create the membership row only; counters are left to reconciliation."""
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    session.add(Like(user_id=user_id, video_id=video_id))
            except IntegrityError:
                return False
        return True

    async def remove_like_row(self, user_id: str, video_id: str) -> bool:
        """Delete the membership row only; counters are left to reconciliation."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(Like).where(Like.user_id == user_id, Like.video_id == video_id)
                )
        return result.rowcount > 0

    async def set_counters(self, family: str, counts: List[Tuple[str, int]]) -> int:
        """
        Overwrite one counter column for many videos in a single transaction.

        Absolute values are written, so running the same batch twice leaves
        the same result. Ids with no ``videos`` row are skipped.

        Args:
            family: "likes" or "views"
            counts: (video_id, count) pairs

        Returns:
            Number of rows updated
        """
        column_name = COUNTER_COLUMNS[family]
        if not counts:
            return 0

        table = Video.__table__
        stmt = (
            update(table)
            .where(table.c.id == bindparam("b_video_id"))
            .values({column_name: bindparam("b_count")})
        )
        # executemany rowcount is driver dependent; count matching rows instead
        async with self.session_factory() as session:
            async with session.begin():
                video_ids = [video_id for video_id, _ in counts]
                rows = await session.execute(select(table.c.id).where(table.c.id.in_(video_ids)))
                existing = set(rows.scalars())
                params = [
                    {"b_video_id": video_id, "b_count": count}
                    for video_id, count in counts
                    if video_id in existing
                ]
                if params:
                    await session.execute(stmt, params)

        updated = len(params)
        if updated < len(counts):
            logger.warning(
                f"{len(counts) - updated} {family} counters had no matching video row"
            )
        return updated
