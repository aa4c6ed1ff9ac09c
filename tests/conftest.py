"""Shared pytest fixtures for listing-sync tests."""

from __future__ import annotations

from typing import Any
from xml.etree import ElementTree

import pytest

from listing_sync.config import Config
from listing_sync.core.client import (
    ListingResponse,
    MediaProbe,
    TransportError,
    parse_response,
)
from listing_sync.sync.engine import SyncEngine


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live listings API",
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------------
# XML builders
# ---------------------------------------------------------------------------


def _append(parent: ElementTree.Element, tag: str, value: Any) -> None:
    if isinstance(value, list):
        for item in value:
            _append(parent, tag, item)
        return
    child = ElementTree.SubElement(parent, tag)
    if isinstance(value, dict):
        for key, inner in value.items():
            _append(child, key, inner)
    elif value is not None:
        child.text = str(value)


def build_xml(
    collection: str | None = None,
    listings: list[dict[str, Any]] | None = None,
    total: int | None = None,
    errors: list[dict[str, str]] | None = None,
    extra: dict[str, Any] | None = None,
) -> bytes:
    """Build an API response body.

    ``listings`` land under ``<collection><LISTING>``; ``total`` defaults
    to the number of listings.
    """
    listings = listings or []
    root = ElementTree.Element("RESULTS")
    status: dict[str, Any] = {
        "HASERRORS": "1" if errors else "0",
        "RESULTS": str(len(listings) if total is None else total),
    }
    if errors:
        status["ERRORS"] = {"ITEM": errors}
    _append(root, "REQUESTSTATUS", status)
    if collection:
        _append(root, collection, {"LISTING": listings})
    for key, value in (extra or {}).items():
        _append(root, key, value)
    return ElementTree.tostring(root)


def make_listing(listing_id: str, name: str, **fields: Any) -> dict[str, Any]:
    """A listing as the API sends it."""
    data: dict[str, Any] = {"LISTINGID": listing_id, "COMPANY": name}
    data.update(fields)
    return data


def make_image(
    media_file: str,
    media_id: str = "",
    sort_order: int | None = None,
    type_id: str = "2",
) -> dict[str, Any]:
    item: dict[str, Any] = {
        "MEDIAID": media_id or media_file,
        "MEDIAFILE": media_file,
        "MEDIANAME": media_file.rsplit(".", 1)[0],
        "TYPEID": type_id,
    }
    if sort_order is not None:
        item["SORTORDER"] = str(sort_order)
    return item


IMAGE_BASE = "https://img.example.com/"


# ---------------------------------------------------------------------------
# Fake remote client
# ---------------------------------------------------------------------------


class FakeListingClient:
    """In-memory stand-in for ``ListingClient``.

    Responses are real XML bodies run through ``parse_response``, so the
    classification path is the production one.
    """

    def __init__(
        self,
        pages: dict[int, list[dict[str, Any]]] | None = None,
        total: int | None = None,
        changed: list[dict[str, Any]] | None = None,
        invalid: list[dict[str, Any]] | None = None,
        listings: dict[str, dict[str, Any]] | None = None,
        media: dict[str, tuple[bytes, str]] | None = None,
    ) -> None:
        self.pages = pages or {}
        self.total = (
            total
            if total is not None
            else sum(len(items) for items in self.pages.values())
        )
        self.changed = changed or []
        self.invalid = invalid or []
        self.listings = listings or {}
        self.media = media or {}
        self.calls: list[tuple] = []
        self.downloads: list[str] = []

    def _response(
        self, action: str, collection: str, items: list, total: int
    ) -> ListingResponse:
        raw = build_xml(collection, items, total)
        return ListingResponse(
            action=action, raw=raw, data=parse_response(raw, action)
        )

    def get_listings(self, page: int, page_size: int) -> ListingResponse:
        self.calls.append(("getListings", page, page_size))
        items = self.pages.get(page, [])
        total = self.total if items else 0
        return self._response("getListings", "LISTINGS", items, total)

    def get_changed_listings(self, since: str) -> ListingResponse:
        self.calls.append(("getChangedListings", since))
        return self._response(
            "getChangedListings",
            "CHANGEDLISTINGS",
            self.changed,
            len(self.changed),
        )

    def get_invalid_listings(self, since: str) -> ListingResponse:
        self.calls.append(("getInvalidListings", since))
        return self._response(
            "getInvalidListings",
            "INVALIDLISTINGS",
            self.invalid,
            len(self.invalid),
        )

    def get_listing(self, listing_id: str) -> dict[str, Any]:
        self.calls.append(("getListing", listing_id))
        if listing_id not in self.listings:
            raw = build_xml(total=0)
        else:
            raw = build_xml(
                total=1, extra={"LISTING": self.listings[listing_id]}
            )
        return parse_response(raw, "getListing")

    def probe_media(self, url: str) -> MediaProbe:
        if url not in self.media:
            return MediaProbe(url=url, ok=False)
        data, content_type = self.media[url]
        return MediaProbe(
            url=url,
            ok=True,
            content_type=content_type,
            content_length=len(data),
        )

    def download_media(self, url: str) -> tuple[bytes, str | None]:
        self.downloads.append(url)
        if url not in self.media:
            raise TransportError(f"download of {url} failed (404)")
        return self.media[url]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_config(tmp_path):
    """Config with a small chunk size and a temporary data directory."""
    return Config(
        api_url="https://api.example.com/listings",
        username="testuser",
        password="testpass",
        insecure=False,
        chunk_size=2,
        data_dir=str(tmp_path / "data"),
        image_base_url=IMAGE_BASE,
    )


@pytest.fixture
def fake_client():
    return FakeListingClient()


@pytest.fixture
def make_engine(mock_config):
    """Factory building a SQLite-backed engine around a fake client."""
    engines: list[SyncEngine] = []

    def _make(client: FakeListingClient, **overrides: Any) -> SyncEngine:
        engine = SyncEngine.from_config(mock_config, client=client)
        for key, value in overrides.items():
            setattr(engine, key, value)
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        engine.cache.close()
        engine.store.close()
