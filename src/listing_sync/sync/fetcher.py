"""Cache-through access to the listings API.

``ListingFetcher`` puts the page cache in front of ``ListingClient``:
a cached response short-circuits the remote call entirely, and a fresh
response is cached only after it has been classified as a usable result
set, so failed or empty fetches are never replayed from the cache.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable

from pydantic import BaseModel

from ..core.client import (
    EmptyResultError,
    FetchError,
    ListingClient,
    ListingResponse,
    parse_response,
)
from .cache import CacheKind, PageCache, cache_key
from .models import RemoteRecord, as_list

logger = logging.getLogger(__name__)


class ListingBatch(BaseModel):
    """Records of one classified response.

    Attributes:
        total: ``REQUESTSTATUS/RESULTS`` -- size of the whole result set,
            not of this batch.
        records: Decoded records in the order the source returned them.
        from_cache: Whether the response was served from the page cache.
    """

    total: int
    records: list[RemoteRecord]
    from_cache: bool = False

    model_config = {"frozen": True}


class ListingFetcher:
    """Fetch pages and date windows through the page cache.

    Args:
        client: Remote API client.
        cache: Page cache.
        page_size: Listings requested per page.
        today: Returns the current cache epoch; injectable for tests.
    """

    def __init__(
        self,
        client: ListingClient,
        cache: PageCache,
        page_size: int,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.client = client
        self.cache = cache
        self.page_size = page_size
        self._today = today

    def fetch_page(self, page: int) -> ListingBatch:
        """Fetch page *page* (1-based) of all listings."""
        key = cache_key(CacheKind.PAGE, page, self._today())
        return self._fetch(
            key,
            lambda: self.client.get_listings(page, self.page_size),
            "LISTINGS",
        )

    def fetch_changed(self, since: str) -> ListingBatch:
        """Fetch identifiers of listings changed since *since*."""
        key = cache_key(CacheKind.CHANGED, since, self._today())
        return self._fetch(
            key,
            lambda: self.client.get_changed_listings(since),
            "CHANGEDLISTINGS",
        )

    def fetch_invalid(self, since: str) -> ListingBatch:
        """Fetch identifiers of listings invalidated since *since*."""
        key = cache_key(CacheKind.STALE, since, self._today())
        return self._fetch(
            key,
            lambda: self.client.get_invalid_listings(since),
            "INVALIDLISTINGS",
        )

    def fetch_listing(self, listing_id: str) -> RemoteRecord:
        """Fetch one complete listing, bypassing the cache.

        Raises:
            FetchError: If the listing could not be fetched.
        """
        data = self.client.get_listing(listing_id)
        listing = data.get("LISTING")
        if isinstance(listing, list):
            listing = listing[0] if listing else None
        if not isinstance(listing, dict):
            raise EmptyResultError(
                f"getListing: no data returned for listing {listing_id}"
            )
        return RemoteRecord.from_api(listing)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _fetch(
        self,
        key: str,
        load: Callable[[], ListingResponse],
        collection: str,
    ) -> ListingBatch:
        data = self._read_cached(key)
        from_cache = data is not None
        if data is None:
            response = load()
            self.cache.put(key, response.raw)
            data = response.data
        else:
            logger.debug("Cache hit: %s", key)
        return _to_batch(data, collection, from_cache)

    def _read_cached(self, key: str) -> dict[str, Any] | None:
        raw = self.cache.read(key)
        if raw is None:
            return None
        try:
            return parse_response(raw, key)
        except FetchError as e:
            logger.warning("Unusable cache entry %s treated as miss: %s", key, e)
            return None


def _to_batch(
    data: dict[str, Any], collection: str, from_cache: bool
) -> ListingBatch:
    container = data.get(collection)
    items = (
        as_list(container.get("LISTING"))
        if isinstance(container, dict)
        else []
    )
    records = [
        RemoteRecord.from_api(item) for item in items if isinstance(item, dict)
    ]
    try:
        total = int(data["REQUESTSTATUS"]["RESULTS"])
    except (KeyError, TypeError, ValueError):
        total = len(records)
    return ListingBatch(total=total, records=records, from_cache=from_cache)
