"""
Reconciliation of Redis counters into the durable store.

An external scheduler calls the guarded endpoint every few minutes (or the
internal APScheduler job does, when enabled). Each pass:
1. Scans every ``video:*:like_count`` key, then every ``video:*:view_count``
2. Overwrites ``videos.likes_count`` / ``videos.views_count`` with the
   current cache values, one transaction per batch of keys
3. Replays like/unlike membership writes that exhausted their retries

Cache keys are never deleted here; Redis stays the live read source and the
database is a mirror for reporting, analytics and backup. Writing absolute
values means two passes with no toggles in between leave identical rows.
"""

import os
import socket
import time
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

import cache_keys
from config import (
    FAILED_LIKE_SYNC_KEY,
    FAILED_UNLIKE_SYNC_KEY,
    JOB_LOCK_KEY_PREFIX,
    JOB_LOCK_TTL,
    LIKE_KEY_TTL,
    SCAN_COUNT,
    SYNC_BATCH_SIZE,
)
from errors import ServerMisconfigured, Unauthorized
from job_logger import get_job_logger
from like_store import LikeRepository
from utils.async_redis_utils import AsyncRedisService
from utils.common_utils import time_execution, utc_now_iso
from utils.metrics_utils import (
    COUNTER_SYNC_BATCH_FAILURES,
    COUNTER_SYNC_DURATION,
    COUNTER_SYNC_ROWS,
)

logger = logging.getLogger(__name__)

COUNTER_SYNC_JOB = "counter_sync"


@dataclass
class CounterFamily:
    name: str  # "likes" or "views", also the LikeRepository family
    pattern: str
    refresh_ttl: Optional[int] = None


# View keys are left without a TTL refresh; like counters get 30 more days
LIKE_FAMILY = CounterFamily("likes", cache_keys.LIKE_COUNT_PATTERN, refresh_ttl=LIKE_KEY_TTL)
VIEW_FAMILY = CounterFamily("views", cache_keys.VIEW_COUNT_PATTERN)


@dataclass
class FamilySyncStats:
    keys_found: int = 0
    rows_synced: int = 0
    failed_batches: int = 0


@dataclass
class CounterSyncResult:
    likes: FamilySyncStats = field(default_factory=FamilySyncStats)
    views: FamilySyncStats = field(default_factory=FamilySyncStats)
    memberships_replayed: int = 0
    duration_ms: int = 0
    timestamp: str = ""

    def to_response(self) -> dict:
        return {
            "success": True,
            "duration": self.duration_ms,
            "stats": {
                "likesSynced": self.likes.rows_synced,
                "viewsSynced": self.views.rows_synced,
                "likesFound": self.likes.keys_found,
                "viewsFound": self.views.keys_found,
                "membershipsReplayed": self.memberships_replayed,
            },
            "timestamp": self.timestamp,
        }


# ============================================================================
# CALLER AUTHENTICATION
# ============================================================================


def verify_cron_secret(authorization: Optional[str], configured_secret: Optional[str]) -> None:
    """
    Check the scheduler's ``Authorization: Bearer <secret>`` header.

    Plain string equality against the configured secret.

    Raises:
        ServerMisconfigured: no secret configured on this server
        Unauthorized: header missing or secret mismatch
    """
    if not configured_secret:
        logger.error("CRON_SECRET not configured")
        raise ServerMisconfigured()

    token = (authorization or "").replace("Bearer ", "", 1)
    if token != configured_secret:
        logger.warning("Invalid cron secret presented to counter sync endpoint")
        raise Unauthorized()


# ============================================================================
# DISTRIBUTED LOCKING (internal scheduler only)
# ============================================================================


def _worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


async def acquire_job_lock(redis_client, job_name: str, ttl: int = JOB_LOCK_TTL) -> bool:
    """
    Acquire distributed lock for job execution.

    Algorithm:
        1. Build worker ID from hostname and PID
        2. SET lock key NX EX ttl
        3. Return whether this worker now holds it
    """
    lock_key = f"{JOB_LOCK_KEY_PREFIX}{job_name}"
    worker_id = _worker_id()

    try:
        acquired = await redis_client.set(lock_key, worker_id, nx=True, ex=ttl)
        if acquired:
            logger.info(f"Acquired lock for {job_name} (worker: {worker_id}, TTL: {ttl}s)")
            return True

        current_holder = await redis_client.get(lock_key)
        logger.info(f"Lock for {job_name} held by: {current_holder}")
        return False

    except RedisError as e:
        logger.error(f"Error acquiring lock for {job_name}: {e}")
        return False


async def release_job_lock(redis_client, job_name: str) -> bool:
    """Delete the lock key if this worker still owns it."""
    lock_key = f"{JOB_LOCK_KEY_PREFIX}{job_name}"

    try:
        current_holder = await redis_client.get(lock_key)
        if current_holder == _worker_id():
            return bool(await redis_client.delete(lock_key))

        logger.warning(f"Cannot release lock for {job_name} - not owned by this worker")
        return False

    except RedisError as e:
        logger.error(f"Error releasing lock for {job_name}: {e}")
        return False


# ============================================================================
# COUNTER FAMILIES
# ============================================================================


def parse_counter_values(keys: List[str], values: List[Optional[str]]) -> List[Tuple[str, int]]:
    """
    Pair each counter key's video id with its value.

    Drops keys whose value is None (expired between SCAN and GET), keys
    without a video id, and non-integer values. Negative values, possible
    after an unlike against an expired counter, are written as 0.
    """
    pairs = []
    for key, value in zip(keys, values):
        video_id = cache_keys.parse_video_id(key)
        if value is None or not video_id:
            continue
        try:
            count = int(value)
        except (TypeError, ValueError):
            logger.warning(f"Skipping non-integer counter {key}={value!r}")
            continue
        pairs.append((video_id, max(0, count)))
    return pairs


@time_execution
async def sync_counter_family(
    redis_service: AsyncRedisService,
    repository: LikeRepository,
    family: CounterFamily,
    batch_size: int = SYNC_BATCH_SIZE,
    job_logger: Optional[logging.Logger] = None,
) -> FamilySyncStats:
    """
    Mirror one family of Redis counters into the database.

    Algorithm:
        1. SCAN until the cursor returns to 0, collecting matching keys
        2. Split keys into batches of ``batch_size``
        3. Per batch: pipeline GET all keys, parse (video_id, count) pairs
        4. Write the pairs in one transaction; a failed batch is logged and
           the remaining batches still run
        5. Refresh the TTL of observed keys when the family asks for it

    A failing SCAN propagates: without the key list there is nothing to do
    and the scheduler should see the pass fail.
    """
    log = job_logger or logger
    stats = FamilySyncStats()

    # Duplicates are possible when keys appear mid-scan
    keys = list(dict.fromkeys(await redis_service.scan_all(family.pattern, count=SCAN_COUNT)))
    stats.keys_found = len(keys)
    log.info(f"Found {len(keys)} {family.name} counter keys to sync")

    for batch_number, batch in enumerate(cache_keys.chunked(keys, batch_size), start=1):
        try:
            values = await redis_service.get_many(batch)
            pairs = parse_counter_values(batch, values)
            if pairs:
                stats.rows_synced += await repository.set_counters(family.name, pairs)
            if family.refresh_ttl:
                await redis_service.expire_many(
                    [key for key, value in zip(batch, values) if value is not None],
                    family.refresh_ttl,
                )
        except (RedisError, SQLAlchemyError) as e:
            stats.failed_batches += 1
            COUNTER_SYNC_BATCH_FAILURES.labels(family=family.name).inc()
            log.error(f"Failed to sync {family.name} batch {batch_number} ({len(batch)} keys): {e}")

    COUNTER_SYNC_ROWS.labels(family=family.name).inc(stats.rows_synced)
    return stats


# ============================================================================
# FAILED MEMBERSHIP REPLAY
# ============================================================================


async def replay_failed_memberships(
    redis_service: AsyncRedisService,
    repository: LikeRepository,
    batch_size: int = SYNC_BATCH_SIZE,
    job_logger: Optional[logging.Logger] = None,
) -> int:
    """
    Retry ``likes`` row writes that exhausted their retries on the hot path.

    Each parked pair is only applied if the cache still agrees: a parked
    like is written only while the user is still in the video's like set,
    a parked unlike only once they are out of it. Counters are not touched;
    the family sync already overwrote them with absolute values.

    Entries are read without removing them and SREM'd one by one once
    handled, so a failure anywhere leaves the rest parked for the next pass.
    Both row writes are idempotent, which makes a repeated entry harmless.

    Returns:
        Number of rows created or deleted
    """
    log = job_logger or logger
    applied = 0

    for failed_key, is_like in ((FAILED_LIKE_SYNC_KEY, True), (FAILED_UNLIKE_SYNC_KEY, False)):
        members = await redis_service.srandmember(failed_key, batch_size)
        for member in members:
            parsed = cache_keys.parse_failed_sync_member(member)
            if parsed is None:
                log.warning(f"Dropping malformed failed-sync entry {member!r}")
                await redis_service.srem(failed_key, member)
                continue
            user_id, video_id = parsed

            try:
                still_liked = await redis_service.sismember(
                    cache_keys.likes_set_key(video_id), user_id
                )
                if is_like and still_liked:
                    applied += int(await repository.ensure_like_row(user_id, video_id))
                elif not is_like and not still_liked:
                    applied += int(await repository.remove_like_row(user_id, video_id))
                await redis_service.srem(failed_key, member)
            except (RedisError, SQLAlchemyError) as e:
                log.error(f"Replay of {failed_key} entry {member} failed, left parked: {e}")

    if applied:
        log.info(f"Replayed {applied} parked like memberships")
    return applied


# ============================================================================
# FULL PASS
# ============================================================================


async def run_counter_sync(
    redis_service: AsyncRedisService,
    repository: LikeRepository,
    batch_size: int = SYNC_BATCH_SIZE,
    job_logger: Optional[logging.Logger] = None,
) -> CounterSyncResult:
    """
    One reconciliation pass: likes, then views, then parked memberships.

    No internal retry; the scheduler runs the next pass on its own clock.
    """
    log = job_logger or logger
    log.info("Starting Redis to DB counter sync...")
    start = time.perf_counter()

    result = CounterSyncResult()
    result.likes = await sync_counter_family(redis_service, repository, LIKE_FAMILY, batch_size, log)
    result.views = await sync_counter_family(redis_service, repository, VIEW_FAMILY, batch_size, log)
    result.memberships_replayed = await replay_failed_memberships(
        redis_service, repository, batch_size, log
    )

    elapsed = time.perf_counter() - start
    COUNTER_SYNC_DURATION.observe(elapsed)
    result.duration_ms = int(elapsed * 1000)
    result.timestamp = utc_now_iso()

    log.info(
        f"Sync completed in {result.duration_ms}ms: "
        f"likes {result.likes.rows_synced}/{result.likes.keys_found}, "
        f"views {result.views.rows_synced}/{result.views.keys_found}, "
        f"failed batches {result.likes.failed_batches + result.views.failed_batches}"
    )
    return result


async def run_scheduled_counter_sync(
    redis_service: AsyncRedisService,
    repository: LikeRepository,
) -> Optional[CounterSyncResult]:
    """
    Lock-guarded pass for the in-process scheduler.

    Every worker schedules the job; only the one holding the lock runs it.
    Returns None when another worker held the lock.
    """
    job_logger = get_job_logger(COUNTER_SYNC_JOB, redis_service.client)

    if not await acquire_job_lock(redis_service.client, COUNTER_SYNC_JOB):
        job_logger.info(f"Skipping {COUNTER_SYNC_JOB} - another worker is handling it")
        return None

    try:
        return await run_counter_sync(redis_service, repository, job_logger=job_logger)
    finally:
        await release_job_lock(redis_service.client, COUNTER_SYNC_JOB)
