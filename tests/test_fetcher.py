"""Tests for cache-through fetching."""

from __future__ import annotations

import zlib
from datetime import date

import pytest

from conftest import FakeListingClient, build_xml, make_listing
from listing_sync.core.client import EmptyResultError, FetchError, SourceError
from listing_sync.sync.cache import CacheKind, PageCache, cache_key
from listing_sync.sync.fetcher import ListingFetcher

EPOCH = date(2026, 10, 18)


@pytest.fixture
def cache(tmp_path):
    c = PageCache(tmp_path / "cache.db")
    yield c
    c.close()


def _fetcher(client, cache) -> ListingFetcher:
    return ListingFetcher(client, cache, page_size=2, today=lambda: EPOCH)


class TestFetchPage:
    def test_miss_fetches_and_caches(self, cache):
        client = FakeListingClient(
            pages={1: [make_listing("1", "A"), make_listing("2", "B")]},
            total=5,
        )
        batch = _fetcher(client, cache).fetch_page(1)

        assert batch.total == 5
        assert [r.external_id for r in batch.records] == ["1", "2"]
        assert not batch.from_cache
        assert client.calls == [("getListings", 1, 2)]
        assert cache.read(cache_key(CacheKind.PAGE, 1, EPOCH)) is not None

    def test_hit_skips_remote(self, cache):
        client = FakeListingClient(pages={1: [make_listing("1", "A")]})
        fetcher = _fetcher(client, cache)
        fetcher.fetch_page(1)

        batch = fetcher.fetch_page(1)

        assert batch.from_cache
        assert batch.records[0].name == "A"
        assert len(client.calls) == 1

    def test_empty_result_is_not_cached(self, cache):
        client = FakeListingClient(pages={})
        fetcher = _fetcher(client, cache)

        with pytest.raises(EmptyResultError):
            fetcher.fetch_page(3)

        assert cache.count() == 0

    def test_source_error_is_not_cached(self, cache):
        client = FakeListingClient()

        def rejected(page, size):
            raise SourceError("getListings", ["Invalid login"])

        client.get_listings = rejected

        with pytest.raises(FetchError):
            _fetcher(client, cache).fetch_page(1)

        assert cache.count() == 0

    def test_unusable_cached_entry_is_refetched(self, cache):
        key = cache_key(CacheKind.PAGE, 1, EPOCH)
        cache.put(key, build_xml("LISTINGS", [], total=0))
        client = FakeListingClient(pages={1: [make_listing("1", "A")]})

        batch = _fetcher(client, cache).fetch_page(1)

        assert not batch.from_cache
        assert len(client.calls) == 1

    def test_corrupt_cached_entry_is_refetched(self, cache):
        key = cache_key(CacheKind.PAGE, 1, EPOCH)
        cache._conn.execute(
            "INSERT INTO page_cache (name, payload, last_updated) "
            "VALUES (?, ?, ?)",
            (key, b"garbage", "2026-10-18T00:00:00+00:00"),
        )
        cache._conn.commit()
        client = FakeListingClient(pages={1: [make_listing("1", "A")]})

        batch = _fetcher(client, cache).fetch_page(1)

        assert len(batch.records) == 1
        assert zlib.decompress(cache.get(key).payload).startswith(b"<RESULTS")


class TestDateWindows:
    def test_changed_listings_keyed_by_window(self, cache):
        client = FakeListingClient(changed=[{"LISTINGID": "4"}])
        fetcher = _fetcher(client, cache)

        batch = fetcher.fetch_changed("2026-10-01")
        fetcher.fetch_changed("2026-10-01")

        assert [r.external_id for r in batch.records] == ["4"]
        assert batch.records[0].is_partial
        assert client.calls == [("getChangedListings", "2026-10-01")]

    def test_invalid_listings_use_their_own_key(self, cache):
        client = FakeListingClient(
            changed=[{"LISTINGID": "4"}], invalid=[{"LISTINGID": "8"}]
        )
        fetcher = _fetcher(client, cache)

        fetcher.fetch_changed("2026-10-01")
        batch = fetcher.fetch_invalid("2026-10-01")

        assert [r.external_id for r in batch.records] == ["8"]
        assert cache.count() == 2


class TestFetchListing:
    def test_returns_complete_record(self, cache):
        client = FakeListingClient(
            listings={"9": make_listing("9", "Solo", CITY="Everett")}
        )

        record = _fetcher(client, cache).fetch_listing("9")

        assert record.name == "Solo"
        assert record.attributes["CITY"] == "Everett"
        assert cache.count() == 0

    def test_missing_listing_raises(self, cache):
        with pytest.raises(FetchError):
            _fetcher(FakeListingClient(), cache).fetch_listing("9")
