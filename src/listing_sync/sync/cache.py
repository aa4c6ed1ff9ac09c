"""
SQLite-backed cache of raw listings API responses.

Every successful remote fetch is stored zlib-compressed under a
deterministic key, so retrying a phase re-reads the same page instead of
querying the remote source again.

Usage:
    from listing_sync.sync.cache import PageCache, CacheKind, cache_key

    cache = PageCache(config.cache_path)
    key = cache_key(CacheKind.PAGE, 3, date.today())
    cache.put(key, raw_xml)
    raw = cache.read(key)
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import zlib
from datetime import date
from enum import Enum
from pathlib import Path

from .models import CachedPage
from .state import utc_now

logger = logging.getLogger(__name__)

CACHE_NAME_PREFIX = "listings-xml_"


class CacheKind(str, Enum):
    PAGE = "page"
    CHANGED = "changed"
    STALE = "stale"


def cache_key(kind: CacheKind, window: int | str, epoch: date) -> str:
    """Build the cache key for one query.

    Pages are keyed by the day they were fetched (the cache epoch) and the
    zero-padded page number; date-windowed queries are keyed by the
    window's start date alone.

    >>> cache_key(CacheKind.PAGE, 7, date(2024, 5, 1))
    'listings-xml_2024-05-01_007'
    >>> cache_key(CacheKind.STALE, "2024-04-29", date(2024, 5, 1))
    'listings-xml_stale_2024-04-29'
    """
    match kind:
        case CacheKind.PAGE:
            return f"{CACHE_NAME_PREFIX}{epoch.isoformat()}_{int(window):03d}"
        case CacheKind.CHANGED:
            return f"{CACHE_NAME_PREFIX}changed_{window}"
        case CacheKind.STALE:
            return f"{CACHE_NAME_PREFIX}stale_{window}"
    raise ValueError(f"Unknown cache kind: {kind!r}")


class PageCache:
    """Compressed raw responses keyed by ``cache_key``."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()
        logger.info("Page cache initialized: %s", self.db_path)

    def _create_tables(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS page_cache (
                name TEXT PRIMARY KEY,
                payload BLOB NOT NULL,
                last_updated TEXT NOT NULL
            );
        """)
        self._conn.commit()

    def get(self, key: str) -> CachedPage | None:
        """Return the cached row for *key*, or ``None``."""
        with self._lock:
            row = self._conn.execute(
                "SELECT name, payload, last_updated FROM page_cache WHERE name = ?",
                (key,),
            ).fetchone()
        if row is None:
            return None
        return CachedPage(
            cache_key=row[0], payload=bytes(row[1]), last_updated=row[2]
        )

    def read(self, key: str) -> bytes | None:
        """Return the decompressed payload for *key*.

        A payload that does not decompress is logged and reported as a
        miss so the caller fetches again.
        """
        page = self.get(key)
        if page is None:
            return None
        try:
            return zlib.decompress(page.payload)
        except zlib.error as e:
            logger.warning("Corrupt cache entry %s treated as miss: %s", key, e)
            return None

    def put(self, key: str, raw: bytes) -> None:
        """Store *raw* under *key*, replacing any previous row."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO page_cache (name, payload, last_updated) "
                "VALUES (?, ?, ?)",
                (key, zlib.compress(raw), utc_now()),
            )
            self._conn.commit()
        logger.debug("Cached %s (%d bytes)", key, len(raw))

    def count(self) -> int:
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(*) FROM page_cache"
            ).fetchone()[0]

    def purge_all(self) -> int:
        """Delete every cached response and return how many were removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM page_cache")
            self._conn.commit()
        removed = cursor.rowcount
        logger.info("Purged %d cached responses", removed)
        return removed

    def close(self) -> None:
        self._conn.close()
