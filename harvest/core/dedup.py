"""
Deduplication against the catalog.

The catalog caps existence lookups at 100 keys, so candidate ids are checked
in sequential chunks and the per-chunk hits are unioned.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from harvest.core import DedupError

if TYPE_CHECKING:
    from harvest.store import CatalogStore

logger = logging.getLogger(__name__)


class DedupChecker:
    """
    Find which candidate ids already exist in the catalog.

    A failed chunk raises `DedupError`. With `conservative=True` the chunk's
    ids are reported as existing instead: new tracks may be skipped this run
    but existing ones are never rewritten.
    """

    def __init__(
        self,
        catalog: "CatalogStore",
        collection: str = "tracks",
        chunk_size: int = 100,
        *,
        conservative: bool = False,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.catalog = catalog
        self.collection = collection
        self.chunk_size = chunk_size
        self.conservative = conservative

    async def existing(self, ids: Iterable[str]) -> set[str]:
        unique = list(dict.fromkeys(ids))
        found: set[str] = set()

        for start in range(0, len(unique), self.chunk_size):
            chunk = unique[start : start + self.chunk_size]
            try:
                docs = await self.catalog.get_many(self.collection, chunk)
            except Exception as e:
                if not self.conservative:
                    raise DedupError(
                        f"Existence lookup failed for ids {start}-{start + len(chunk) - 1}: {e}"
                    ) from e
                logger.warning(
                    "Existence lookup failed for %d ids, treating them as existing: %s",
                    len(chunk),
                    e,
                )
                found.update(chunk)
                continue
            found.update(doc_id for doc_id in docs if doc_id in chunk)

        logger.debug("Dedup: %d of %d ids already in catalog", len(found), len(unique))
        return found
