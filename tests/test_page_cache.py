"""Tests for the compressed page cache."""

from __future__ import annotations

import sqlite3
from datetime import date

import pytest

from listing_sync.sync.cache import CacheKind, PageCache, cache_key


@pytest.fixture
def cache(tmp_path):
    c = PageCache(tmp_path / "cache.db")
    yield c
    c.close()


class TestCacheKey:
    def test_page_key_uses_epoch_and_padded_number(self):
        key = cache_key(CacheKind.PAGE, 7, date(2026, 10, 18))
        assert key == "listings-xml_2026-10-18_007"

    def test_page_key_changes_with_epoch(self):
        today = cache_key(CacheKind.PAGE, 1, date(2026, 10, 18))
        tomorrow = cache_key(CacheKind.PAGE, 1, date(2026, 10, 19))
        assert today != tomorrow

    def test_windowed_keys_ignore_epoch(self):
        a = cache_key(CacheKind.CHANGED, "2026-10-01", date(2026, 10, 18))
        b = cache_key(CacheKind.CHANGED, "2026-10-01", date(2026, 10, 19))
        assert a == b == "listings-xml_changed_2026-10-01"

    def test_stale_and_changed_keys_differ(self):
        epoch = date(2026, 10, 18)
        assert cache_key(CacheKind.STALE, "2026-10-01", epoch) != cache_key(
            CacheKind.CHANGED, "2026-10-01", epoch
        )


class TestPageCache:
    def test_miss_returns_none(self, cache):
        assert cache.get("absent") is None
        assert cache.read("absent") is None

    def test_put_then_read(self, cache):
        raw = b"<RESULTS>" + b"x" * 500 + b"</RESULTS>"
        cache.put("k", raw)

        assert cache.read("k") == raw
        row = cache.get("k")
        assert row.cache_key == "k"
        assert len(row.payload) < len(raw)
        assert row.last_updated

    def test_put_replaces_existing_row(self, cache):
        cache.put("k", b"first")
        cache.put("k", b"second")
        assert cache.read("k") == b"second"
        assert cache.count() == 1

    def test_corrupt_payload_is_a_miss(self, cache, tmp_path):
        conn = sqlite3.connect(str(tmp_path / "cache.db"))
        conn.execute(
            "INSERT INTO page_cache (name, payload, last_updated) "
            "VALUES (?, ?, ?)",
            ("bad", b"not zlib", "2026-10-18T00:00:00+00:00"),
        )
        conn.commit()
        conn.close()

        assert cache.get("bad") is not None
        assert cache.read("bad") is None

    def test_purge_all_counts_rows(self, cache):
        cache.put("a", b"1")
        cache.put("b", b"2")

        assert cache.purge_all() == 2
        assert cache.count() == 0

    def test_survives_reopen(self, tmp_path):
        first = PageCache(tmp_path / "cache.db")
        first.put("k", b"kept")
        first.close()

        second = PageCache(tmp_path / "cache.db")
        try:
            assert second.read("k") == b"kept"
        finally:
            second.close()
