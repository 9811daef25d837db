"""
Like/view engine with a Redis fast path.

Redis is authoritative for every response this module returns:

    video:{id}:likes        set of user ids who like the video
    video:{id}:like_count   live like counter
    video:{id}:view_count   live view counter
    user:{u}:like:{id}      per-user marker, 30 day TTL

Durable writes (the ``likes`` row and ``videos.likes_count``) run on detached
asyncio tasks after the response is decided. They retry a few times, then
park the (user, video) pair in a failed-sync set; they never surface an error
and never roll the cache back. The reconciliation job in counter_sync.py is
what eventually makes the database agree with Redis.

No process-local lock: toggles are served by several stateless instances
and counts stay consistent only through Redis atomic commands.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Iterable, Optional, Sequence, Set

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

import cache_keys
from config import (
    DB_SYNC_MAX_RETRIES,
    DB_SYNC_RETRY_DELAYS,
    FAILED_LIKE_SYNC_KEY,
    FAILED_UNLIKE_SYNC_KEY,
    LIKE_KEY_TTL,
)
from errors import (
    AuthenticationRequired,
    InvalidState,
    NotFound,
    RateLimited,
    ToggleFailed,
    ViewFailed,
)
from like_store import LikeRepository
from models import VIDEO_STATUS_PUBLISHED
from page_cache import PageCache
from utils.async_redis_utils import AsyncRedisService
from utils.metrics_utils import DB_SYNC_FAILURES, LIKE_TOGGLES, VIEWS_RECORDED
from utils.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


@dataclass
class LikeResult:
    liked: bool
    count: int

    def to_dict(self) -> dict:
        return asdict(self)


class LikeEngine:
    """
    Toggles likes, answers like status and records views.

    Args:
        redis_service: Connected AsyncRedisService
        repository: Durable store access
        like_limiter: Limiter keyed per user for toggles
        view_limiter: Limiter keyed per client (IP) for views
        page_cache: Rendered fragments to drop after a toggle (optional)
        max_retries: Durable sync retries after the first attempt
        retry_delays: Sleep before each retry, in seconds
    """

    def __init__(
        self,
        redis_service: AsyncRedisService,
        repository: LikeRepository,
        like_limiter: SlidingWindowRateLimiter,
        view_limiter: SlidingWindowRateLimiter,
        page_cache: Optional[PageCache] = None,
        max_retries: int = DB_SYNC_MAX_RETRIES,
        retry_delays: Sequence[float] = DB_SYNC_RETRY_DELAYS,
    ):
        self.redis_service = redis_service
        self.repository = repository
        self.like_limiter = like_limiter
        self.view_limiter = view_limiter
        self.page_cache = page_cache
        self.max_retries = max_retries
        self.retry_delays = list(retry_delays)
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Toggle
    # ------------------------------------------------------------------

    async def toggle_like(self, user_id: Optional[str], video_id: str) -> LikeResult:
        """
        Flip whether ``user_id`` likes ``video_id``.

        Algorithm:
            1. Reject anonymous callers, then apply the per-user rate limit
            2. Require the video to exist and be PUBLISHED
            3. SISMEMBER decides like vs unlike
            4. Unlike: SREM + DEL marker + DECR counter (one MULTI)
               Like:   SADD + SET marker EX 30d + INCR counter (one MULTI)
               Both refresh the counter's 30 day TTL
            5. Schedule the durable write without awaiting it
            6. Drop page fragments showing this count
            7. Return the new state and max(0, counter)

        Raises:
            AuthenticationRequired, RateLimited, NotFound, InvalidState,
            ToggleFailed (cache failure, safe to retry)
        """
        if not user_id:
            raise AuthenticationRequired()

        try:
            rate = await self.like_limiter.limit_call(user_id)
        except RedisError as e:
            LIKE_TOGGLES.labels(outcome="failed").inc()
            logger.error(f"Like rate limiter unavailable: {e}")
            raise ToggleFailed() from e
        if not rate.allowed:
            LIKE_TOGGLES.labels(outcome="rejected").inc()
            raise RateLimited(retry_after=rate.retry_after)

        await self._require_published(video_id, ToggleFailed)

        likes_key = cache_keys.likes_set_key(video_id)
        count_key = cache_keys.like_count_key(video_id)
        marker_key = cache_keys.user_like_key(user_id, video_id)

        try:
            currently_liked = await self.redis_service.sismember(likes_key, user_id)

            async with self.redis_service.client.pipeline(transaction=True) as pipe:
                if currently_liked:
                    pipe.srem(likes_key, user_id)
                    pipe.delete(marker_key)
                    pipe.decr(count_key)
                else:
                    pipe.sadd(likes_key, user_id)
                    pipe.set(marker_key, "1", ex=LIKE_KEY_TTL)
                    pipe.incr(count_key)
                pipe.expire(count_key, LIKE_KEY_TTL)
                results = await pipe.execute()
        except RedisError as e:
            LIKE_TOGGLES.labels(outcome="failed").inc()
            logger.error(f"Toggle like failed for video={video_id}: {e}")
            raise ToggleFailed() from e

        new_count = int(results[2])
        liked = not currently_liked

        if liked:
            self._spawn(self._sync_like(user_id, video_id))
            LIKE_TOGGLES.labels(outcome="liked").inc()
        else:
            self._spawn(self._sync_unlike(user_id, video_id))
            LIKE_TOGGLES.labels(outcome="unliked").inc()

        await self._invalidate_pages(video_id)

        return LikeResult(liked=liked, count=max(0, new_count))

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def get_like_status(self, user_id: Optional[str], video_id: str) -> LikeResult:
        """
        Like state and count for the initial page render.

        The count comes from Redis, falling back to ``videos.likes_count``
        without writing the counter key back. Membership comes from Redis,
        falling back to the ``likes`` row; a row found that way is added to
        the cache set. Never raises: internal errors yield (False, 0).
        """
        try:
            raw_count = await self.redis_service.get(cache_keys.like_count_key(video_id))
            if raw_count is not None:
                count = int(raw_count)
            else:
                count = await self.repository.get_likes_count(video_id) or 0

            liked = False
            if user_id:
                likes_key = cache_keys.likes_set_key(video_id)
                liked = await self.redis_service.sismember(likes_key, user_id)
                if not liked:
                    liked = await self.repository.has_like(user_id, video_id)
                    if liked:
                        await self.redis_service.sadd(likes_key, user_id)
                        logger.debug(f"Warmed like membership for user={user_id} video={video_id}")

            return LikeResult(liked=liked, count=max(0, count))

        except Exception as e:
            logger.error(f"Get like status failed for video={video_id}: {e}", exc_info=True)
            return LikeResult(liked=False, count=0)

    async def warmup_likes_cache(self, user_id: Optional[str], video_ids: Iterable[str]) -> int:
        """
        Load the caller's likes for a page of videos into the cache sets.

        One query for the rows, one pipeline for the SADDs. Anonymous
        callers and empty lists do nothing. Errors are logged, not raised.

        Returns:
            Number of memberships written to the cache
        """
        video_ids = [video_id for video_id in video_ids if video_id]
        if not user_id or not video_ids:
            return 0

        try:
            liked_ids = await self.repository.liked_video_ids(user_id, video_ids)
            await self.redis_service.sadd_many(
                [(cache_keys.likes_set_key(video_id), user_id) for video_id in liked_ids]
            )
            return len(liked_ids)
        except Exception as e:
            logger.error(f"Warmup likes cache failed for user={user_id}: {e}", exc_info=True)
            return 0

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def record_view(self, video_id: str, client_key: str) -> int:
        """
        Count one view of ``video_id`` for ``client_key`` (usually the IP).

        Returns:
            The live view counter after the increment

        Raises:
            RateLimited, NotFound, InvalidState, ViewFailed
        """
        try:
            rate = await self.view_limiter.limit_call(client_key)
        except RedisError as e:
            logger.error(f"View rate limiter unavailable: {e}")
            raise ViewFailed() from e
        if not rate.allowed:
            raise RateLimited(retry_after=rate.retry_after)

        await self._require_published(video_id, ViewFailed)

        try:
            views = await self.redis_service.incr(cache_keys.view_count_key(video_id))
        except RedisError as e:
            logger.error(f"Record view failed for video={video_id}: {e}")
            raise ViewFailed() from e

        VIEWS_RECORDED.inc()
        return int(views)

    # ------------------------------------------------------------------
    # Background durable sync
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        # The event loop only keeps weak references to tasks
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._on_sync_done)
        return task

    def _on_sync_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Durable sync task crashed: {task.exception()!r}")

    @property
    def pending_syncs(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every in-flight durable write (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _sync_like(self, user_id: str, video_id: str) -> None:
        await self._sync_with_retry(
            "like",
            user_id,
            video_id,
            self.repository.create_like,
            FAILED_LIKE_SYNC_KEY,
        )

    async def _sync_unlike(self, user_id: str, video_id: str) -> None:
        await self._sync_with_retry(
            "unlike",
            user_id,
            video_id,
            self.repository.delete_like,
            FAILED_UNLIKE_SYNC_KEY,
        )

    async def _sync_with_retry(self, action, user_id, video_id, write, failed_key) -> None:
        """
        Run ``write`` until it succeeds or retries run out.

        A False result (duplicate row on like, missing row on unlike) means
        an earlier attempt already landed. After the last failure the pair
        goes to ``failed_key`` for the reconciliation job.
        """
        for attempt in range(self.max_retries + 1):
            try:
                applied = await write(user_id, video_id)
                if not applied:
                    logger.debug(f"DB {action} sync for video={video_id} was already applied")
                return
            except SQLAlchemyError as e:
                if attempt < self.max_retries:
                    logger.warning(
                        f"DB {action} sync retry {attempt + 1}/{self.max_retries} "
                        f"for video={video_id}: {e}"
                    )
                    await asyncio.sleep(self._retry_delay(attempt))
                    continue

                DB_SYNC_FAILURES.labels(action=action).inc()
                logger.error(
                    f"DB {action} sync FAILED after {self.max_retries} retries "
                    f"for user={user_id} video={video_id}: {e}"
                )
                try:
                    await self.redis_service.sadd(
                        failed_key, cache_keys.failed_sync_member(user_id, video_id)
                    )
                except RedisError as redis_error:
                    logger.error(f"Could not park failed {action} sync: {redis_error}")

    def _retry_delay(self, attempt: int) -> float:
        if not self.retry_delays:
            return 0
        return self.retry_delays[min(attempt, len(self.retry_delays) - 1)]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_published(self, video_id: str, failure_cls) -> None:
        try:
            video = await self.repository.get_video(video_id)
        except SQLAlchemyError as e:
            logger.error(f"Video lookup failed for video={video_id}: {e}")
            raise failure_cls() from e

        if video is None:
            raise NotFound()
        if video.status != VIDEO_STATUS_PUBLISHED:
            raise InvalidState()

    async def _invalidate_pages(self, video_id: str) -> None:
        # The toggle already happened; a stale fragment only lives for its TTL
        if self.page_cache is None:
            return
        try:
            await self.page_cache.invalidate_video(video_id)
        except RedisError as e:
            logger.warning(f"Page cache invalidation failed for video={video_id}: {e}")
