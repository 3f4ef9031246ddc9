"""Tests for the MFA session token cache.

The 5-minute safety margin is what keeps a caller from starting a role
assumption with a token about to expire, so the boundary is checked on
both sides.
"""

from __future__ import annotations

import datetime
import json
import pathlib
import stat

import pytest

from cloudkey.cache.mfa_cache import (
    JsonFileCacheBackend,
    MemoryCacheBackend,
    MFATokenCache,
    cache_key,
)
from tests.conftest import FakeClock, make_credentials


def _expiring_in(clock: FakeClock, **kwargs: float):
    return make_credentials(clock() + datetime.timedelta(**kwargs))


class TestSafetyMargin:
    def test_four_minutes_left_is_not_valid(self, token_cache: MFATokenCache, clock: FakeClock) -> None:
        token_cache.put("base", "mfa-1", _expiring_in(clock, minutes=4))
        assert not token_cache.has_valid("base", "mfa-1")
        assert token_cache.get("base", "mfa-1") is None

    def test_six_minutes_left_is_valid(self, token_cache: MFATokenCache, clock: FakeClock) -> None:
        creds = _expiring_in(clock, minutes=6)
        token_cache.put("base", "mfa-1", creds)
        assert token_cache.has_valid("base", "mfa-1")
        assert token_cache.get("base", "mfa-1") == creds

    def test_exactly_five_minutes_left_is_not_valid(
        self, token_cache: MFATokenCache, clock: FakeClock
    ) -> None:
        token_cache.put("base", "mfa-1", _expiring_in(clock, minutes=5))
        assert not token_cache.has_valid("base", "mfa-1")

    def test_token_ages_out_of_validity(self, token_cache: MFATokenCache, clock: FakeClock) -> None:
        token_cache.put("base", "mfa-1", _expiring_in(clock, minutes=30))
        clock.advance(minutes=26)
        assert not token_cache.has_valid("base", "mfa-1")

    def test_keys_are_per_source_and_device(self, token_cache: MFATokenCache, clock: FakeClock) -> None:
        token_cache.put("base", "mfa-1", _expiring_in(clock, hours=1))
        assert not token_cache.has_valid("base", "mfa-2")
        assert not token_cache.has_valid("other", "mfa-1")
        assert cache_key("base", "mfa-1") == "base-mfa-1"


class TestPersistence:
    def test_put_persists_immediately(
        self, token_cache: MFATokenCache, cache_backend: MemoryCacheBackend, clock: FakeClock
    ) -> None:
        token_cache.put("base", "mfa-1", _expiring_in(clock, hours=12))

        assert cache_backend.save_count == 1
        entry = cache_backend.data["base-mfa-1"]
        assert entry["credentials"]["AccessKeyId"] == "ASIACACHED"
        assert entry["expiration"] == "2025-06-02T00:00:00Z"

    def test_load_drops_expired_entries(self, clock: FakeClock) -> None:
        backend = MemoryCacheBackend()
        MFATokenCache(backend, clock=clock).put("live", "mfa", _expiring_in(clock, hours=1))
        MFATokenCache(backend, clock=clock).put("dead", "mfa", _expiring_in(clock, minutes=1))

        clock.advance(minutes=2)
        reloaded = MFATokenCache(backend, clock=clock)

        assert [e.key for e in reloaded.entries()] == ["live-mfa"]

    def test_load_skips_malformed_entries(self, clock: FakeClock) -> None:
        good = MemoryCacheBackend()
        MFATokenCache(good, clock=clock).put("base", "mfa-1", _expiring_in(clock, hours=1))
        data = dict(good.data)
        data["broken"] = {"credentials": {"AccessKeyId": "x"}}
        data["garbage"] = "not-an-object"

        cache = MFATokenCache(MemoryCacheBackend(data), clock=clock)

        assert [e.key for e in cache.entries()] == ["base-mfa-1"]

    def test_get_prunes_expired_entry(
        self, token_cache: MFATokenCache, cache_backend: MemoryCacheBackend, clock: FakeClock
    ) -> None:
        token_cache.put("base", "mfa-1", _expiring_in(clock, minutes=10))
        clock.advance(minutes=11)

        assert token_cache.get("base", "mfa-1") is None
        assert token_cache.entries() == []
        assert cache_backend.data == {}

    def test_prune_expired_counts(self, token_cache: MFATokenCache, clock: FakeClock) -> None:
        token_cache.put("a", "mfa", _expiring_in(clock, minutes=1))
        token_cache.put("b", "mfa", _expiring_in(clock, minutes=2))
        token_cache.put("c", "mfa", _expiring_in(clock, hours=2))
        clock.advance(minutes=3)

        assert token_cache.prune_expired() == 2
        assert token_cache.prune_expired() == 0
        assert [e.key for e in token_cache.entries()] == ["c-mfa"]

    def test_clear_empties_memory_and_backend(
        self, token_cache: MFATokenCache, cache_backend: MemoryCacheBackend, clock: FakeClock
    ) -> None:
        token_cache.put("base", "mfa-1", _expiring_in(clock, hours=1))
        token_cache.clear()

        assert not token_cache.has_valid("base", "mfa-1")
        assert cache_backend.data == {}

    def test_save_failure_keeps_memory_cache(self, clock: FakeClock) -> None:
        class FailingBackend(MemoryCacheBackend):
            def save(self, data):
                raise OSError("disk full")

        cache = MFATokenCache(FailingBackend(), clock=clock)
        cache.put("base", "mfa-1", _expiring_in(clock, hours=1))

        assert cache.has_valid("base", "mfa-1")

    def test_reload_picks_up_other_writers(self, clock: FakeClock) -> None:
        backend = MemoryCacheBackend()
        reader = MFATokenCache(backend, clock=clock)
        MFATokenCache(backend, clock=clock).put("base", "mfa-1", _expiring_in(clock, hours=1))

        assert not reader.has_valid("base", "mfa-1")
        reader.reload()
        assert reader.has_valid("base", "mfa-1")


class TestJsonFileBackend:
    def test_survives_restart(self, tmp_path: pathlib.Path, clock: FakeClock) -> None:
        path = tmp_path / "data" / "mfa-cache.json"
        MFATokenCache(JsonFileCacheBackend(path), clock=clock).put(
            "base", "mfa-1", _expiring_in(clock, hours=12)
        )

        restarted = MFATokenCache(JsonFileCacheBackend(path), clock=clock)

        assert restarted.has_valid("base", "mfa-1")
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert "base-mfa-1" in json.loads(path.read_text())

    def test_clear_deletes_file(self, tmp_path: pathlib.Path, clock: FakeClock) -> None:
        path = tmp_path / "mfa-cache.json"
        cache = MFATokenCache(JsonFileCacheBackend(path), clock=clock)
        cache.put("base", "mfa-1", _expiring_in(clock, hours=1))

        cache.clear()

        assert not path.exists()

    def test_corrupt_file_starts_empty(self, tmp_path: pathlib.Path, clock: FakeClock) -> None:
        path = tmp_path / "mfa-cache.json"
        path.write_text("{not json")
        assert MFATokenCache(JsonFileCacheBackend(path), clock=clock).entries() == []

    def test_non_object_file_starts_empty(self, tmp_path: pathlib.Path, clock: FakeClock) -> None:
        path = tmp_path / "mfa-cache.json"
        path.write_text("[1, 2]")
        assert MFATokenCache(JsonFileCacheBackend(path), clock=clock).entries() == []


class TestDescribe:
    def test_empty(self, token_cache: MFATokenCache) -> None:
        assert token_cache.describe() == "No cached MFA tokens"

    def test_lists_remaining_time(self, token_cache: MFATokenCache, clock: FakeClock) -> None:
        token_cache.put("base", "mfa-1", _expiring_in(clock, hours=2, minutes=15))
        assert token_cache.describe() == "Cached MFA tokens:\n  - base-mfa-1: expires in 2h 15m"


@pytest.mark.parametrize("minutes", [0, -1])
def test_expired_token_is_never_returned(
    token_cache: MFATokenCache, clock: FakeClock, minutes: int
) -> None:
    token_cache.put("base", "mfa-1", _expiring_in(clock, minutes=minutes))
    assert token_cache.get("base", "mfa-1") is None
