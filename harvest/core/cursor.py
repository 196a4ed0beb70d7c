"""
Resumable cursor store.

Each source keeps one document in the `import-state` collection. Loading is
forgiving (missing or malformed -> start from the initial cursor) and saving
is best effort: a failed save only means the next run re-fetches the same
window, which dedup then absorbs.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from harvest.core.models import Cursor, SourceResult

if TYPE_CHECKING:
    from harvest.sources.base import SourceAdapter
    from harvest.store import CatalogStore

logger = logging.getLogger(__name__)

MIGRATION_MARKER_DOC = "storage-migration"


class CursorStore:
    def __init__(self, catalog: "CatalogStore", collection: str = "import-state") -> None:
        self.catalog = catalog
        self.collection = collection

    async def load(self, source_name: str) -> Cursor | None:
        """Return the persisted cursor, or None when there is no usable one."""
        try:
            data = await self.catalog.get(self.collection, source_name)
        except Exception as e:  # noqa: BLE001 - a lost cursor must not fail the run
            logger.warning("Could not load cursor for %s: %s", source_name, e)
            return None
        if data is None:
            return None
        try:
            return Cursor.from_document(data)
        except ValueError as e:
            logger.warning("Ignoring cursor for %s: %s", source_name, e)
            return None

    async def save(self, source_name: str, cursor: Cursor) -> bool:
        try:
            await self.catalog.set(self.collection, source_name, cursor.to_document())
        except Exception as e:  # noqa: BLE001 - next run restarts from the previous cursor
            logger.warning("Could not save cursor for %s: %s", source_name, e)
            return False
        logger.info(
            "Cursor saved for %s: query=%d sort=%d offset=%d",
            source_name,
            cursor.query_index,
            cursor.sort_index,
            cursor.page_offset,
        )
        return True

    async def load_marker(self, name: str = MIGRATION_MARKER_DOC) -> str | None:
        """Last scanned document id of a previous migration pass."""
        try:
            data = await self.catalog.get(self.collection, name)
        except Exception as e:  # noqa: BLE001
            logger.warning("Could not load resume marker %s: %s", name, e)
            return None
        if not data:
            return None
        value = data.get("lastDocId")
        return str(value) if value else None

    async def save_marker(self, doc_id: str, name: str = MIGRATION_MARKER_DOC) -> bool:
        try:
            await self.catalog.set(self.collection, name, {"lastDocId": doc_id})
        except Exception as e:  # noqa: BLE001
            logger.warning("Could not save resume marker %s: %s", name, e)
            return False
        return True


async def harvest_source(
    adapter: "SourceAdapter",
    cursors: CursorStore,
    *,
    persist: bool = True,
) -> SourceResult:
    """
    Run one adapter with its own cursor: load, fetch, save.

    Sources do this independently of each other; with `persist=False` (dry
    runs) the advanced cursor is reported but not written.
    """
    cursor = await cursors.load(adapter.name)
    if cursor is None:
        logger.info("%s: no saved cursor, starting from the initial rotation", adapter.name)
    result = await adapter.fetch(cursor)
    if persist and result.next_cursor is not None and result.next_cursor != cursor:
        await cursors.save(adapter.name, result.next_cursor)
    return result
