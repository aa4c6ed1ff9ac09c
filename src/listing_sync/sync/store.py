"""
Local entity store for synchronized listings.

``EntityStore`` is the contract the record applier and asset reconciler
write through; ``SqliteEntityStore`` implements it with SQLite tables for
entities, their meta values and taxonomy terms, plus stored media assets
(files under the media directory) and the attachments linking entities
to assets.

Usage:
    from listing_sync.sync.store import SqliteEntityStore

    store = SqliteEntityStore(config.store_path, config.media_dir)
    entity_id = store.upsert_entity(None, "1234", "Pike Place", "pike-place")
    store.set_meta(entity_id, {"city": "Seattle"})
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Protocol

from .mapper import slugify
from .models import AssetRef, LocalEntity
from .state import utc_now

logger = logging.getLogger(__name__)

PRIMARY = "primary"
SECONDARY = "secondary"


class EntityStore(Protocol):
    """Operations the sync engine needs from the local record store."""

    entity_type: str

    def entity_type_available(self) -> bool: ...

    # Entities
    def id_map(self) -> dict[str, int]: ...
    def find_by_external_id(self, external_id: str) -> list[int]: ...
    def upsert_entity(
        self,
        entity_id: int | None,
        external_id: str,
        title: str,
        slug: str,
        content: str = "",
    ) -> int: ...
    def get_entity(self, entity_id: int) -> LocalEntity | None: ...
    def list_entities(self, limit: int) -> list[LocalEntity]: ...
    def count_entities(self) -> int: ...
    def delete_entity(self, entity_id: int) -> bool: ...

    # Meta and taxonomy
    def set_meta(self, entity_id: int, values: dict[str, str]) -> None: ...
    def delete_meta(self, entity_id: int, prefix: str) -> None: ...
    def ensure_term(
        self, taxonomy: str, name: str, parent_id: int = 0
    ) -> int: ...
    def set_entity_terms(
        self,
        entity_id: int,
        taxonomy: str,
        term_ids: list[int],
    ) -> None: ...
    def prune_empty_terms(self) -> int: ...

    # Assets
    def get_asset(self, asset_id: int) -> AssetRef | None: ...
    def find_asset_by_filename(self, filename: str) -> AssetRef | None: ...
    def create_asset(
        self,
        filename: str,
        data: bytes,
        content_type: str | None,
        title: str = "",
    ) -> AssetRef: ...
    def update_asset(
        self, asset_id: int, data: bytes, content_type: str | None
    ) -> AssetRef: ...
    def delete_asset(self, asset_id: int) -> None: ...
    def entity_assets(self, entity_id: int) -> list[AssetRef]: ...
    def primary_asset(self, entity_id: int) -> AssetRef | None: ...
    def set_attachments(
        self,
        entity_id: int,
        primary_id: int | None,
        secondary_ids: list[int],
    ) -> None: ...
    def asset_reference_count(self, asset_id: int) -> int: ...
    def close(self) -> None: ...


class SqliteEntityStore:
    """``EntityStore`` backed by a SQLite database and a media directory."""

    def __init__(
        self,
        db_path: str | Path,
        media_dir: str | Path,
        entity_type: str = "partners",
    ) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.media_dir = Path(media_dir)
        self.entity_type = entity_type
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()
        logger.info("Entity store initialized: %s", self.db_path)

    def _create_tables(self) -> None:
        """Create tables and indexes if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS entities (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_type TEXT NOT NULL,
                external_id TEXT NOT NULL,
                title TEXT NOT NULL,
                slug TEXT NOT NULL,
                content TEXT DEFAULT '',
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS entity_meta (
                entity_id INTEGER NOT NULL
                    REFERENCES entities(id) ON DELETE CASCADE,
                key TEXT NOT NULL,
                value TEXT DEFAULT '',
                PRIMARY KEY (entity_id, key)
            );

            CREATE TABLE IF NOT EXISTS terms (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                taxonomy TEXT NOT NULL,
                name TEXT NOT NULL,
                slug TEXT NOT NULL,
                parent_id INTEGER NOT NULL DEFAULT 0,
                UNIQUE (taxonomy, slug, parent_id)
            );

            CREATE TABLE IF NOT EXISTS entity_terms (
                entity_id INTEGER NOT NULL
                    REFERENCES entities(id) ON DELETE CASCADE,
                term_id INTEGER NOT NULL
                    REFERENCES terms(id) ON DELETE CASCADE,
                PRIMARY KEY (entity_id, term_id)
            );

            CREATE TABLE IF NOT EXISTS assets (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                filename TEXT NOT NULL,
                path TEXT NOT NULL,
                content_type TEXT,
                size INTEGER DEFAULT 0,
                title TEXT DEFAULT '',
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS attachments (
                entity_id INTEGER NOT NULL
                    REFERENCES entities(id) ON DELETE CASCADE,
                asset_id INTEGER NOT NULL
                    REFERENCES assets(id) ON DELETE CASCADE,
                role TEXT NOT NULL,
                position INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (entity_id, asset_id)
            );

            CREATE INDEX IF NOT EXISTS idx_entities_external_id
                ON entities(external_id);

            CREATE INDEX IF NOT EXISTS idx_assets_filename
                ON assets(filename);

            CREATE INDEX IF NOT EXISTS idx_attachments_asset
                ON attachments(asset_id);
        """)
        self._conn.commit()

    def entity_type_available(self) -> bool:
        """Whether the configured entity type can be written to."""
        if not self.entity_type:
            logger.error("No entity type configured")
            return False
        with self._lock:
            row = self._conn.execute(
                "SELECT name FROM sqlite_master "
                "WHERE type = 'table' AND name = 'entities'"
            ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def id_map(self) -> dict[str, int]:
        """Map external ids to entity ids (newest entity wins on duplicates)."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT external_id, id FROM entities "
                "WHERE entity_type = ? ORDER BY id ASC",
                (self.entity_type,),
            ).fetchall()
        return {row["external_id"]: row["id"] for row in rows}

    def find_by_external_id(self, external_id: str) -> list[int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id FROM entities "
                "WHERE entity_type = ? AND external_id = ? ORDER BY id",
                (self.entity_type, external_id),
            ).fetchall()
        return [row["id"] for row in rows]

    def upsert_entity(
        self,
        entity_id: int | None,
        external_id: str,
        title: str,
        slug: str,
        content: str = "",
    ) -> int:
        """Update *entity_id* in place, or insert a new entity when ``None``."""
        now = utc_now()
        with self._lock:
            if entity_id is not None:
                cursor = self._conn.execute(
                    "UPDATE entities SET external_id = ?, title = ?, slug = ?, "
                    "content = ?, updated_at = ? WHERE id = ?",
                    (external_id, title, slug, content, now, entity_id),
                )
                if cursor.rowcount:
                    self._conn.commit()
                    return entity_id
            cursor = self._conn.execute(
                "INSERT INTO entities "
                "(entity_type, external_id, title, slug, content, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (self.entity_type, external_id, title, slug, content, now),
            )
            self._conn.commit()
            return cursor.lastrowid

    def get_entity(self, entity_id: int) -> LocalEntity | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT id, external_id, title, slug, content FROM entities "
                "WHERE id = ?",
                (entity_id,),
            ).fetchone()
            if row is None:
                return None
            meta_rows = self._conn.execute(
                "SELECT key, value FROM entity_meta WHERE entity_id = ?",
                (entity_id,),
            ).fetchall()
            term_rows = self._conn.execute(
                "SELECT t.taxonomy, t.name FROM terms t "
                "JOIN entity_terms et ON et.term_id = t.id "
                "WHERE et.entity_id = ? ORDER BY t.parent_id, t.id",
                (entity_id,),
            ).fetchall()
        terms: dict[str, list[str]] = {}
        for term in term_rows:
            terms.setdefault(term["taxonomy"], []).append(term["name"])
        return LocalEntity(
            id=row["id"],
            external_id=row["external_id"],
            title=row["title"],
            slug=row["slug"],
            content=row["content"] or "",
            meta={m["key"]: m["value"] for m in meta_rows},
            terms=terms,
        )

    def list_entities(self, limit: int) -> list[LocalEntity]:
        """Return up to *limit* entities ordered by title."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id FROM entities WHERE entity_type = ? "
                "ORDER BY title, id LIMIT ?",
                (self.entity_type, limit),
            ).fetchall()
        entities = [self.get_entity(row["id"]) for row in rows]
        return [e for e in entities if e is not None]

    def count_entities(self) -> int:
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(*) FROM entities WHERE entity_type = ?",
                (self.entity_type,),
            ).fetchone()[0]

    def delete_entity(self, entity_id: int) -> bool:
        """Delete an entity with its meta, term links and attachments.

        Assets themselves are left in place; callers decide whether an
        asset is still referenced elsewhere.
        """
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM entities WHERE id = ?", (entity_id,)
            )
            self._conn.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Meta and taxonomy
    # ------------------------------------------------------------------

    def set_meta(self, entity_id: int, values: dict[str, str]) -> None:
        with self._lock:
            self._conn.executemany(
                "INSERT OR REPLACE INTO entity_meta (entity_id, key, value) "
                "VALUES (?, ?, ?)",
                [(entity_id, k, v) for k, v in values.items()],
            )
            self._conn.commit()

    def delete_meta(self, entity_id: int, prefix: str) -> None:
        """Delete every meta key of *entity_id* starting with *prefix*."""
        escaped = (
            prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        )
        with self._lock:
            self._conn.execute(
                "DELETE FROM entity_meta WHERE entity_id = ? "
                "AND key LIKE ? ESCAPE '\\'",
                (entity_id, escaped + "%"),
            )
            self._conn.commit()

    def ensure_term(self, taxonomy: str, name: str, parent_id: int = 0) -> int:
        """Return the id of a term, creating it if needed."""
        slug = slugify(name)
        with self._lock:
            row = self._conn.execute(
                "SELECT id FROM terms "
                "WHERE taxonomy = ? AND slug = ? AND parent_id = ?",
                (taxonomy, slug, parent_id),
            ).fetchone()
            if row is not None:
                return row["id"]
            cursor = self._conn.execute(
                "INSERT INTO terms (taxonomy, name, slug, parent_id) "
                "VALUES (?, ?, ?, ?)",
                (taxonomy, name, slug, parent_id),
            )
            self._conn.commit()
            return cursor.lastrowid

    def set_entity_terms(
        self, entity_id: int, taxonomy: str, term_ids: list[int]
    ) -> None:
        """Replace the terms of *entity_id* within *taxonomy*."""
        with self._lock:
            self._conn.execute(
                "DELETE FROM entity_terms WHERE entity_id = ? AND term_id IN "
                "(SELECT id FROM terms WHERE taxonomy = ?)",
                (entity_id, taxonomy),
            )
            self._conn.executemany(
                "INSERT OR IGNORE INTO entity_terms (entity_id, term_id) "
                "VALUES (?, ?)",
                [(entity_id, term_id) for term_id in term_ids],
            )
            self._conn.commit()

    def prune_empty_terms(self) -> int:
        """Delete terms no entity uses and that have no used children."""
        removed = 0
        with self._lock:
            while True:
                cursor = self._conn.execute(
                    "DELETE FROM terms WHERE id NOT IN "
                    "(SELECT term_id FROM entity_terms) "
                    "AND id NOT IN (SELECT parent_id FROM terms)"
                )
                if cursor.rowcount <= 0:
                    break
                removed += cursor.rowcount
            self._conn.commit()
        if removed:
            logger.info("Removed %d empty terms", removed)
        return removed

    # ------------------------------------------------------------------
    # Assets
    # ------------------------------------------------------------------

    def get_asset(self, asset_id: int) -> AssetRef | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM assets WHERE id = ?", (asset_id,)
            ).fetchone()
        return _asset_from_row(row) if row is not None else None

    def find_asset_by_filename(self, filename: str) -> AssetRef | None:
        """Return the most recently updated asset stored as *filename*."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM assets WHERE lower(filename) = lower(?) "
                "ORDER BY updated_at DESC, id DESC LIMIT 1",
                (filename,),
            ).fetchone()
        return _asset_from_row(row) if row is not None else None

    def create_asset(
        self,
        filename: str,
        data: bytes,
        content_type: str | None,
        title: str = "",
    ) -> AssetRef:
        with self._lock:
            cursor = self._conn.execute(
                "INSERT INTO assets "
                "(filename, path, content_type, size, title, updated_at) "
                "VALUES (?, '', ?, ?, ?, ?)",
                (filename, content_type, len(data), title, utc_now()),
            )
            asset_id = cursor.lastrowid
            path = self._write_file(asset_id, filename, data)
            self._conn.execute(
                "UPDATE assets SET path = ? WHERE id = ?", (str(path), asset_id)
            )
            self._conn.commit()
        logger.debug("Stored asset %d (%s)", asset_id, filename)
        return self.get_asset(asset_id)

    def update_asset(
        self, asset_id: int, data: bytes, content_type: str | None
    ) -> AssetRef:
        """Replace the content of *asset_id*, keeping its identity."""
        with self._lock:
            row = self._conn.execute(
                "SELECT filename FROM assets WHERE id = ?", (asset_id,)
            ).fetchone()
            if row is None:
                raise KeyError(f"Asset {asset_id} not found")
            path = self._write_file(asset_id, row["filename"], data)
            self._conn.execute(
                "UPDATE assets SET path = ?, content_type = ?, size = ?, "
                "updated_at = ? WHERE id = ?",
                (str(path), content_type, len(data), utc_now(), asset_id),
            )
            self._conn.commit()
        logger.debug("Updated asset %d in place", asset_id)
        return self.get_asset(asset_id)

    def delete_asset(self, asset_id: int) -> None:
        asset = self.get_asset(asset_id)
        if asset is None:
            return
        with self._lock:
            self._conn.execute("DELETE FROM assets WHERE id = ?", (asset_id,))
            self._conn.commit()
        Path(asset.path).unlink(missing_ok=True)
        logger.debug("Deleted asset %d (%s)", asset_id, asset.filename)

    def entity_assets(self, entity_id: int) -> list[AssetRef]:
        """Assets attached to *entity_id*, primary first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT a.* FROM assets a "
                "JOIN attachments att ON att.asset_id = a.id "
                "WHERE att.entity_id = ? "
                "ORDER BY att.role = 'primary' DESC, att.position",
                (entity_id,),
            ).fetchall()
        return [_asset_from_row(row) for row in rows]

    def primary_asset(self, entity_id: int) -> AssetRef | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT a.* FROM assets a "
                "JOIN attachments att ON att.asset_id = a.id "
                "WHERE att.entity_id = ? AND att.role = ?",
                (entity_id, PRIMARY),
            ).fetchone()
        return _asset_from_row(row) if row is not None else None

    def set_attachments(
        self,
        entity_id: int,
        primary_id: int | None,
        secondary_ids: list[int],
    ) -> None:
        """Replace the attachments of *entity_id*."""
        rows: list[tuple[int, int, str, int]] = []
        if primary_id is not None:
            rows.append((entity_id, primary_id, PRIMARY, 0))
        for position, asset_id in enumerate(secondary_ids, start=1):
            if asset_id != primary_id:
                rows.append((entity_id, asset_id, SECONDARY, position))
        with self._lock:
            self._conn.execute(
                "DELETE FROM attachments WHERE entity_id = ?", (entity_id,)
            )
            self._conn.executemany(
                "INSERT OR IGNORE INTO attachments "
                "(entity_id, asset_id, role, position) VALUES (?, ?, ?, ?)",
                rows,
            )
            self._conn.commit()

    def asset_reference_count(self, asset_id: int) -> int:
        """Number of entities attaching *asset_id* in any role."""
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(DISTINCT entity_id) FROM attachments "
                "WHERE asset_id = ?",
                (asset_id,),
            ).fetchone()[0]

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _write_file(self, asset_id: int, filename: str, data: bytes) -> Path:
        self.media_dir.mkdir(parents=True, exist_ok=True)
        path = (self.media_dir / f"{asset_id}_{filename}").resolve()
        path.write_bytes(data)
        return path


def _asset_from_row(row: sqlite3.Row) -> AssetRef:
    return AssetRef(
        id=row["id"],
        filename=row["filename"],
        path=row["path"],
        content_type=row["content_type"],
        size=row["size"] or 0,
        title=row["title"] or "",
        updated_at=row["updated_at"],
    )
