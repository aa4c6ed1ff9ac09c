"""Run-scoped caches shared by the record applier and asset reconciler."""

from __future__ import annotations

import logging

from .store import EntityStore

logger = logging.getLogger(__name__)


class RunContext:
    """State that lives for one engine invocation and is never persisted.

    Attributes:
        processed_media: Remote media id -> stored asset id for media
            already reconciled during this run, so entities sharing a file
            reuse one fetch and one stored asset.
    """

    def __init__(self, store: EntityStore) -> None:
        self._store = store
        self._id_map: dict[str, int] | None = None
        self.processed_media: dict[str, int] = {}

    def ensure_id_map(self) -> dict[str, int]:
        """Return the external id -> entity id map, building it on first use."""
        if self._id_map is None:
            self._id_map = self._store.id_map()
            logger.debug("Built id map with %d entities", len(self._id_map))
        return self._id_map

    def entity_id(self, external_id: str) -> int | None:
        return self.ensure_id_map().get(external_id)

    def remember(self, external_id: str, entity_id: int) -> None:
        self.ensure_id_map()[external_id] = entity_id

    def forget(self, external_id: str) -> None:
        self.ensure_id_map().pop(external_id, None)
