"""
Key scheme and batching tests. No Redis needed.
"""

import pytest

import cache_keys
from counter_sync import parse_counter_values, verify_cron_secret
from errors import ServerMisconfigured, Unauthorized


class TestKeyScheme:

    def test_keys_match_deployed_names(self):
        assert cache_keys.like_count_key("abc") == "video:abc:like_count"
        assert cache_keys.view_count_key("abc") == "video:abc:view_count"
        assert cache_keys.likes_set_key("abc") == "video:abc:likes"
        assert cache_keys.user_like_key("u1", "abc") == "user:u1:like:abc"

    def test_patterns_cover_counter_keys(self):
        assert cache_keys.LIKE_COUNT_PATTERN == "video:*:like_count"
        assert cache_keys.VIEW_COUNT_PATTERN == "video:*:view_count"

    @pytest.mark.parametrize(
        "key,expected",
        [
            ("video:abc:like_count", "abc"),
            ("video:a:b:view_count", "a:b"),
            ("video::like_count", None),
            ("user:abc:like_count", None),
            ("video:like_count", None),
        ],
    )
    def test_parse_video_id(self, key, expected):
        assert cache_keys.parse_video_id(key) == expected

    def test_failed_sync_member_parses_back(self):
        member = cache_keys.failed_sync_member("u1", "vid:with:colons")
        assert cache_keys.parse_failed_sync_member(member) == ("u1", "vid:with:colons")

    @pytest.mark.parametrize("member", ["", "nocolon", ":vid", "user:"])
    def test_malformed_failed_sync_member(self, member):
        assert cache_keys.parse_failed_sync_member(member) is None


class TestChunked:

    def test_splits_into_batches_of_fifty(self):
        batches = list(cache_keys.chunked(list(range(120)), 50))
        assert [len(b) for b in batches] == [50, 50, 20]
        assert sum(batches, []) == list(range(120))

    def test_empty_input_yields_nothing(self):
        assert list(cache_keys.chunked([], 50)) == []

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            list(cache_keys.chunked([1, 2], 0))


class TestParseCounterValues:

    def test_skips_missing_and_garbage_values(self):
        keys = [
            "video:a:like_count",
            "video:b:like_count",
            "video:c:like_count",
            "video::like_count",
        ]
        values = ["7", None, "seven", "3"]
        assert parse_counter_values(keys, values) == [("a", 7)]

    def test_negative_counter_written_as_zero(self):
        assert parse_counter_values(["video:a:like_count"], ["-2"]) == [("a", 0)]


class TestCronSecret:

    def test_valid_bearer_token(self):
        verify_cron_secret("Bearer s3cret", "s3cret")

    @pytest.mark.parametrize("header", [None, "", "Bearer wrong", "s3cretx"])
    def test_bad_token_is_unauthorized(self, header):
        with pytest.raises(Unauthorized):
            verify_cron_secret(header, "s3cret")

    def test_missing_secret_is_misconfiguration(self):
        with pytest.raises(ServerMisconfigured):
            verify_cron_secret("Bearer anything", "")
