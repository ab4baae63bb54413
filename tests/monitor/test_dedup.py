"""Tests for the recent key cache."""

import pytest

from supermolt_arena.monitor.dedup import RecentKeyCache


class TestRecentKeyCache:
    """Tests for RecentKeyCache."""

    def test_second_sighting_is_duplicate(self) -> None:
        cache = RecentKeyCache(capacity=3)
        assert cache.check_and_add(("sig1", "w")) is False
        assert cache.check_and_add(("sig1", "w")) is True
        assert cache.check_and_add(("sig1", "other")) is False

    def test_evicts_oldest_first(self) -> None:
        cache = RecentKeyCache(capacity=2)
        cache.check_and_add("a")
        cache.check_and_add("b")
        cache.check_and_add("a")  # still the oldest entry
        cache.check_and_add("c")
        assert "a" not in cache
        assert "b" in cache
        assert "c" in cache
        assert len(cache) == 2

    def test_rejects_zero_capacity(self) -> None:
        with pytest.raises(ValueError):
            RecentKeyCache(capacity=0)
