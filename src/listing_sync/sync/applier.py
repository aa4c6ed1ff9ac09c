"""Apply one remote listing onto the local entity store."""

from __future__ import annotations

import logging

from ..core.client import FetchError
from . import mapper
from .assets import AssetReconciler
from .context import RunContext
from .fetcher import ListingFetcher
from .models import RemoteRecord
from .store import EntityStore

logger = logging.getLogger(__name__)


class RecordApplier:
    """Create or update the local entity for a remote listing.

    The applier owns every entity field write; media are handed to the
    ``AssetReconciler``.  A failing record is logged and reported as
    ``False`` so the rest of the chunk still runs.
    """

    def __init__(
        self,
        store: EntityStore,
        fetcher: ListingFetcher,
        reconciler: AssetReconciler,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.reconciler = reconciler

    def apply(self, record: RemoteRecord, ctx: RunContext) -> bool:
        """Upsert *record* and reconcile its media.

        Returns:
            ``True`` if the entity was created or updated.
        """
        try:
            return self._apply(record, ctx)
        except Exception:
            logger.exception(
                "Failed to apply listing %s", record.external_id or "<none>"
            )
            return False

    def apply_images(self, record: RemoteRecord, ctx: RunContext) -> bool:
        """Reconcile media of an already imported listing.

        Listings without a photo, or without a local entity, are skipped.
        """
        try:
            ctx.ensure_id_map()
            if not record.photo_file:
                return False
            record = self._complete(record)
            if record is None:
                return False
            entity_id = ctx.entity_id(record.external_id)
            if entity_id is None:
                logger.warning(
                    "No local entity for listing %s, skipping media",
                    record.external_id,
                )
                return False
            return self.reconciler.reconcile(entity_id, record, ctx)
        except Exception:
            logger.exception(
                "Failed to update media of listing %s", record.external_id
            )
            return False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _apply(self, record: RemoteRecord, ctx: RunContext) -> bool:
        ctx.ensure_id_map()

        completed = self._complete(record)
        if completed is None:
            return False
        record = completed

        if not record.external_id:
            logger.warning("Skipping listing without id (name %r)", record.name)
            return False
        if not record.name:
            logger.warning(
                "Listing %s has no company or sort name", record.external_id
            )
            return False

        entity_id = self.store.upsert_entity(
            ctx.entity_id(record.external_id),
            record.external_id,
            record.name,
            mapper.entity_slug(record),
            record.attributes.get("DESCRIPTION", ""),
        )
        ctx.remember(record.external_id, entity_id)

        self.store.set_meta(entity_id, mapper.build_meta(record))
        self._set_terms(entity_id, record)
        self._set_groups(entity_id, record)

        self.reconciler.reconcile(entity_id, record, ctx)
        logger.debug("Applied listing %s as entity %d", record.external_id, entity_id)
        return True

    def _complete(self, record: RemoteRecord) -> RemoteRecord | None:
        """Return *record*, fetching the full listing first when partial."""
        if not record.is_partial:
            return record
        try:
            return self.fetcher.fetch_listing(record.external_id)
        except FetchError as e:
            logger.error(
                "No or incomplete data returned for listing %s: %s",
                record.external_id,
                e,
            )
            return None

    def _set_terms(self, entity_id: int, record: RemoteRecord) -> None:
        attrs = record.attributes

        type_term = self.store.ensure_term(
            mapper.TYPES_TAXONOMY,
            mapper.normalize_type(mapper.type_name(record)),
        )
        self.store.set_entity_terms(
            entity_id, mapper.TYPES_TAXONOMY, [type_term]
        )

        category_terms: list[int] = []
        category = attrs.get("CATNAME", "")
        if category:
            category_id = self.store.ensure_term(
                mapper.CATEGORIES_TAXONOMY, category
            )
            category_terms.append(category_id)
            subcategory = attrs.get("SUBCATNAME", "")
            if subcategory:
                category_terms.append(
                    self.store.ensure_term(
                        mapper.CATEGORIES_TAXONOMY, subcategory, category_id
                    )
                )
        self.store.set_entity_terms(
            entity_id, mapper.CATEGORIES_TAXONOMY, category_terms
        )

        region = attrs.get("REGION", "")
        region_terms = (
            [self.store.ensure_term(mapper.REGIONS_TAXONOMY, region)]
            if region
            else []
        )
        self.store.set_entity_terms(
            entity_id, mapper.REGIONS_TAXONOMY, region_terms
        )

    def _set_groups(self, entity_id: int, record: RemoteRecord) -> None:
        """Rewrite the repeated social/amenity groups and the tag list."""
        self.store.delete_meta(entity_id, mapper.SOCIAL_PREFIX)
        self.store.delete_meta(entity_id, mapper.AMENITY_PREFIX)
        self.store.delete_meta(entity_id, "tags")

        meta = {}
        meta.update(
            mapper.group_meta(
                mapper.SOCIAL_PREFIX,
                mapper.social_links(record),
                "social_media_name",
                "social_media_value",
            )
        )
        meta.update(
            mapper.group_meta(
                mapper.AMENITY_PREFIX,
                mapper.amenities(record),
                "amenity_name",
                "amenity_value",
            )
        )
        tags = mapper.tags(record)
        if tags:
            meta["tags"] = tags
        if meta:
            self.store.set_meta(entity_id, meta)
