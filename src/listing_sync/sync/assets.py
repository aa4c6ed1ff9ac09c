"""Media reconciliation for synchronized listings.

Given a listing's declared media and the assets already attached to its
entity, ``AssetReconciler`` adds, updates and removes stored assets so the
entity ends up attached to exactly the declared images.

Identity rules:

* An asset's key is its lower-cased, sanitized file basename.  The source
  renames a file whenever its content changes, so equal keys denote the
  same image.
* Within one run, media already stored for another entity are reused
  through ``RunContext.processed_media``; across runs, the store is
  searched by filename before anything is downloaded.
* An asset is deleted only when no entity references it any more.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable

from ..core.client import ListingClient, TransportError
from .context import RunContext
from .models import AssetRef, MediaItem, RemoteRecord
from .store import EntityStore

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ("jpg", "jpeg", "gif", "png")
DISPLAYABLE_TYPE_ID = "2"
DEFAULT_SORT_START = 99

_UNSAFE_FILENAME_CHARS = re.compile(r"[?\[\]/\\=<>:;,'\"&$#*()|~`!{}%+’«»“”]")


def sanitize_filename(filename: str) -> str:
    """Strip characters unsafe in stored file names."""
    name = _UNSAFE_FILENAME_CHARS.sub("", filename)
    name = re.sub(r"\s+", "-", name)
    name = re.sub(r"-{2,}", "-", name)
    return name.strip(".-_")


def media_key(filename: str) -> str:
    """Identity key of a media file: lower-cased sanitized basename."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    return sanitize_filename(basename).lower()


def is_displayable(item: MediaItem) -> bool:
    """Whether *item* is an image the reconciler should store."""
    if not isinstance(item.media_file, str) or not item.media_file:
        return False
    if item.type_id and item.type_id != DISPLAYABLE_TYPE_ID:
        return False
    _, dot, extension = item.filename.rpartition(".")
    if not dot:
        return False
    return extension.lower() in IMAGE_EXTENSIONS


class AssetReconciler:
    """Reconcile declared media against stored assets.

    Args:
        store: Local entity store.
        client: Remote client used to probe and download media.
        image_base_url: Prefix for media files that carry no path of
            their own.
    """

    def __init__(
        self,
        store: EntityStore,
        client: ListingClient,
        image_base_url: str,
    ) -> None:
        self.store = store
        self.client = client
        self.image_base_url = image_base_url

    def media_url(self, item: MediaItem) -> str:
        return (item.img_path or self.image_base_url) + item.media_file

    def reconcile(
        self, entity_id: int, record: RemoteRecord, ctx: RunContext
    ) -> bool:
        """Make *entity_id*'s attachments match *record*'s declared images.

        Returns:
            ``False`` when the record declares no usable image (nothing
            is changed), ``True`` otherwise.
        """
        usable = [item for item in record.images if is_displayable(item)]
        if not usable:
            logger.debug(
                "No displayable media for listing %s", record.external_id
            )
            return False

        existing_by_key = {
            media_key(asset.filename): asset
            for asset in self.store.entity_assets(entity_id)
        }
        to_delete = dict(existing_by_key)
        resolved: dict[int, int] = {}

        for index, item in enumerate(usable):
            asset_id = self._resolve(item, existing_by_key, to_delete, ctx)
            if asset_id is not None:
                resolved[index] = asset_id

        primary_id, secondary_ids = self._order(usable, resolved, record)
        self.store.set_attachments(entity_id, primary_id, secondary_ids)

        # Attach first, then delete, so reference counts are current
        self.delete_unreferenced(to_delete.values())
        return True

    def delete_unreferenced(self, assets: Iterable[AssetRef]) -> int:
        """Delete each asset in *assets* that no entity references."""
        deleted = 0
        for asset in assets:
            if self.store.asset_reference_count(asset.id) == 0:
                self.store.delete_asset(asset.id)
                deleted += 1
            else:
                logger.debug("Keeping shared asset %d", asset.id)
        return deleted

    def is_same_image(self, asset: AssetRef, url: str) -> bool:
        """Compare a stored asset with the remote copy at *url*.

        An unreachable remote copy keeps the stored one; a missing stored
        file prefers the remote copy.  Otherwise both content type and
        byte length must match.
        """
        probe = self.client.probe_media(url)
        if not probe.ok:
            return True
        path = Path(asset.path)
        if not path.is_file():
            return False
        if asset.content_type != probe.content_type:
            return False
        return path.stat().st_size == probe.content_length

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _resolve(
        self,
        item: MediaItem,
        existing_by_key: dict[str, AssetRef],
        to_delete: dict[str, AssetRef],
        ctx: RunContext,
    ) -> int | None:
        key = media_key(item.filename)
        dedup_key = item.media_id or key
        url = self.media_url(item)

        existing = existing_by_key.get(key)
        if existing is not None:
            if not self.is_same_image(existing, url):
                self._refresh(existing, url)
            to_delete.pop(key, None)
            ctx.processed_media[dedup_key] = existing.id
            return existing.id

        asset_id = ctx.processed_media.get(dedup_key)
        if asset_id is None:
            found = self.store.find_asset_by_filename(
                sanitize_filename(item.filename)
            )
            if found is not None:
                if not self.is_same_image(found, url):
                    self._refresh(found, url)
                asset_id = found.id
        if asset_id is None:
            created = self._store_new(item, url)
            asset_id = created.id if created is not None else None
        if asset_id is not None:
            ctx.processed_media[dedup_key] = asset_id
        return asset_id

    def _refresh(self, asset: AssetRef, url: str) -> None:
        try:
            data, content_type = self.client.download_media(url)
        except TransportError as e:
            logger.warning("Keeping asset %d, refresh failed: %s", asset.id, e)
            return
        self.store.update_asset(asset.id, data, content_type)

    def _store_new(self, item: MediaItem, url: str) -> AssetRef | None:
        try:
            data, content_type = self.client.download_media(url)
        except TransportError as e:
            logger.warning("Skipping media %s: %s", item.media_file, e)
            return None
        filename = sanitize_filename(item.filename)
        return self.store.create_asset(
            filename,
            data,
            content_type,
            title=item.media_name or media_key(item.filename),
        )

    def _order(
        self,
        usable: list[MediaItem],
        resolved: dict[int, int],
        record: RemoteRecord,
    ) -> tuple[int | None, list[int]]:
        """Sort resolved media and split them into primary and secondaries."""
        default_order = DEFAULT_SORT_START
        keyed: list[tuple[int, int]] = []
        for index, item in enumerate(usable):
            if item.sort_order is None:
                order = default_order
                default_order += 1
            else:
                order = item.sort_order
            keyed.append((order, index))
        keyed.sort()

        ordered = [index for _, index in keyed if index in resolved]
        if not ordered:
            return None, []

        primary_index = ordered[0]
        photo = record.photo_file
        if photo:
            for index in ordered:
                if usable[index].media_file == photo:
                    primary_index = index
                    break

        primary_id = resolved[primary_index]
        secondary_ids: list[int] = []
        for index in ordered:
            asset_id = resolved[index]
            if asset_id != primary_id and asset_id not in secondary_ids:
                secondary_ids.append(asset_id)
        return primary_id, secondary_ids
