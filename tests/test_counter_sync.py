"""
Counter reconciliation tests.

Seeds counter keys in a real Redis and checks what lands in the in-memory
durable store. Other keys may exist in the test Redis, so assertions only
look at the videos each test seeded.
"""

import uuid

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

import cache_keys
from config import FAILED_LIKE_SYNC_KEY, FAILED_UNLIKE_SYNC_KEY, LIKE_KEY_TTL
from counter_sync import (
    LIKE_FAMILY,
    VIEW_FAMILY,
    acquire_job_lock,
    release_job_lock,
    replay_failed_memberships,
    run_counter_sync,
    sync_counter_family,
)
from utils.async_redis_utils import AsyncRedisService
from helpers import InMemoryLikeRepository, generate_video_ids


@pytest.fixture
def sync_prefix(cleanup_keys):
    prefix = f"sync_vid_{uuid.uuid4().hex[:8]}"
    cleanup_keys.append(f"video:{prefix}_*")
    return prefix


def seed_counters(redis_client, repository, video_ids, family="likes", ttl=None):
    """Seed counter key i+1 for each video and an empty DB row."""
    key_fn = cache_keys.like_count_key if family == "likes" else cache_keys.view_count_key
    expected = {}
    for index, video_id in enumerate(video_ids):
        repository.add_video(video_id)
        redis_client.set(key_fn(video_id), index + 1, ex=ttl)
        expected[video_id] = index + 1
    return expected


class TestCounterFamilySync:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_every_key_synced_past_one_scan_page(self, redis_client, redis_config, sync_prefix):
        """
        More keys than one SCAN page and several batches all reach the DB.

        Algorithm:
            1. Seed 175 like counters
            2. Sync the likes family with batch size 50
            3. Every seeded row carries its Redis value
        """
        repository = InMemoryLikeRepository()
        expected = seed_counters(redis_client, repository, generate_video_ids(sync_prefix, 175))

        service = AsyncRedisService(**redis_config)
        await service.connect()
        try:
            stats = await sync_counter_family(service, repository, LIKE_FAMILY, batch_size=50)
        finally:
            await service.close()

        assert stats.keys_found >= 175
        assert stats.failed_batches == 0
        assert stats.rows_synced == 175
        assert all(len(batch) <= 50 for batch in repository.counter_batches)
        for video_id, count in expected.items():
            assert repository.videos[video_id].likes_count == count

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_batch_does_not_stop_the_pass(self, redis_client, redis_config, sync_prefix):
        repository = InMemoryLikeRepository()
        expected = seed_counters(redis_client, repository, generate_video_ids(sync_prefix, 120))
        repository.fail_counter_batches = 1

        service = AsyncRedisService(**redis_config)
        await service.connect()
        try:
            stats = await sync_counter_family(service, repository, LIKE_FAMILY, batch_size=50)
        finally:
            await service.close()

        assert stats.failed_batches == 1
        synced = sum(
            1 for video_id, count in expected.items()
            if repository.videos[video_id].likes_count == count
        )
        assert synced >= 70

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_like_ttl_refreshed_view_ttl_untouched(self, redis_client, redis_config, sync_prefix):
        repository = InMemoryLikeRepository()
        like_id, view_id = generate_video_ids(sync_prefix, 2)
        seed_counters(redis_client, repository, [like_id], "likes", ttl=100)
        seed_counters(redis_client, repository, [view_id], "views")

        service = AsyncRedisService(**redis_config)
        await service.connect()
        try:
            await sync_counter_family(service, repository, LIKE_FAMILY)
            await sync_counter_family(service, repository, VIEW_FAMILY)
        finally:
            await service.close()

        assert redis_client.ttl(cache_keys.like_count_key(like_id)) > LIKE_KEY_TTL - 60
        assert redis_client.ttl(cache_keys.view_count_key(view_id)) == -1
        assert repository.videos[view_id].views_count == 1


class TestRunCounterSync:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_two_passes_leave_identical_rows(self, redis_client, redis_config, sync_prefix):
        """
        Reconciliation is idempotent and keeps cache keys.

        Algorithm:
            1. Seed like and view counters
            2. Run two full passes with no writes in between
            3. Rows equal after both; keys still present
        """
        repository = InMemoryLikeRepository()
        video_ids = generate_video_ids(sync_prefix, 30)
        likes = seed_counters(redis_client, repository, video_ids, "likes")
        views = {}
        for video_id in video_ids:
            redis_client.set(cache_keys.view_count_key(video_id), 100)
            views[video_id] = 100

        service = AsyncRedisService(**redis_config)
        await service.connect()
        try:
            first = await run_counter_sync(service, repository)
            snapshot = {
                vid: (v.likes_count, v.views_count) for vid, v in repository.videos.items()
            }
            second = await run_counter_sync(service, repository)
        finally:
            await service.close()

        assert snapshot == {
            vid: (v.likes_count, v.views_count) for vid, v in repository.videos.items()
        }
        for video_id in video_ids:
            assert repository.videos[video_id].likes_count == likes[video_id]
            assert repository.videos[video_id].views_count == views[video_id]
            assert redis_client.exists(cache_keys.like_count_key(video_id))

        response = second.to_response()
        assert response["success"] is True
        assert response["stats"]["likesSynced"] >= 30
        assert response["stats"]["viewsFound"] >= 30
        assert isinstance(response["duration"], int)
        assert first.timestamp.endswith("Z")


class TestReplayFailedMemberships:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_parked_pairs_applied_only_when_cache_agrees(
        self, redis_client, redis_config, sync_prefix
    ):
        """
        Algorithm:
            1. Park a like whose user is still in the like set
            2. Park a like whose user has since unliked
            3. Park an unlike for a pair that still has a DB row
            4. Replay: only the first becomes a row, the unlike removes the row
        """
        repository = InMemoryLikeRepository()
        still_liked, since_unliked, unliked = generate_video_ids(sync_prefix, 3)
        for video_id in (still_liked, since_unliked, unliked):
            repository.add_video(video_id)
        user_id = f"replay_user_{uuid.uuid4().hex[:8]}"

        redis_client.sadd(cache_keys.likes_set_key(still_liked), user_id)
        repository.likes.add((user_id, unliked))
        members = {
            FAILED_LIKE_SYNC_KEY: [
                cache_keys.failed_sync_member(user_id, still_liked),
                cache_keys.failed_sync_member(user_id, since_unliked),
            ],
            FAILED_UNLIKE_SYNC_KEY: [cache_keys.failed_sync_member(user_id, unliked)],
        }
        for key, entries in members.items():
            redis_client.sadd(key, *entries)

        service = AsyncRedisService(**redis_config)
        await service.connect()
        try:
            applied = await replay_failed_memberships(service, repository, batch_size=1000)
        finally:
            await service.close()
            for key, entries in members.items():
                redis_client.srem(key, *entries)

        assert applied >= 2
        assert (user_id, still_liked) in repository.likes
        assert (user_id, since_unliked) not in repository.likes
        assert (user_id, unliked) not in repository.likes
        for key, entries in members.items():
            for entry in entries:
                assert not redis_client.sismember(key, entry)


    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cache_failure_mid_replay_keeps_entries_parked(
        self, redis_client, redis_config, sync_prefix, monkeypatch
    ):
        """
        Algorithm:
            1. Park three likes whose users are still in the like sets
            2. Make SISMEMBER and SADD fail with a connection error
            3. Replay: nothing applied, all three entries still parked
            4. Restore Redis and replay again: all three rows written
        """
        repository = InMemoryLikeRepository()
        video_ids = generate_video_ids(sync_prefix, 3)
        user_id = f"replay_user_{uuid.uuid4().hex[:8]}"
        entries = [cache_keys.failed_sync_member(user_id, video_id) for video_id in video_ids]
        for video_id in video_ids:
            repository.add_video(video_id)
            redis_client.sadd(cache_keys.likes_set_key(video_id), user_id)
        redis_client.sadd(FAILED_LIKE_SYNC_KEY, *entries)

        async def connection_lost(*args, **kwargs):
            raise RedisConnectionError("connection reset by peer")

        service = AsyncRedisService(**redis_config)
        await service.connect()
        try:
            with monkeypatch.context() as patched:
                patched.setattr(service, "sismember", connection_lost)
                patched.setattr(service, "sadd", connection_lost)
                applied = await replay_failed_memberships(service, repository, batch_size=1000)

            assert applied == 0
            assert repository.likes == set()
            for entry in entries:
                assert redis_client.sismember(FAILED_LIKE_SYNC_KEY, entry)

            await replay_failed_memberships(service, repository, batch_size=1000)
            for video_id in video_ids:
                assert (user_id, video_id) in repository.likes
        finally:
            await service.close()
            redis_client.srem(FAILED_LIKE_SYNC_KEY, *entries)


class TestDistributedLocking:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_second_lock_fails_when_held(self, redis_client, redis_config):
        """
        Algorithm:
            1. Clear any stale lock
            2. Acquire lock, then try again
            3. Second acquisition fails; release frees it
        """
        service = AsyncRedisService(**redis_config)
        await service.connect()
        job_name = f"test_job_lock_{uuid.uuid4().hex[:8]}"

        try:
            redis_client.delete(f"job:lock:{job_name}")

            assert await acquire_job_lock(service.client, job_name, ttl=60) is True
            assert await acquire_job_lock(service.client, job_name, ttl=60) is False
            assert await release_job_lock(service.client, job_name) is True
            assert not redis_client.exists(f"job:lock:{job_name}")
        finally:
            redis_client.delete(f"job:lock:{job_name}")
            await service.close()
