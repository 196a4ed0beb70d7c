"""
Batch writer for new catalog records.

Commits are atomic per chunk only. If chunk k fails, chunks 0..k-1 stay
committed and the run aborts with `BatchWriteError`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

from harvest.core import BatchWriteError
from harvest.core.models import TrackRecord
from harvest.store import SERVER_TIMESTAMP

if TYPE_CHECKING:
    from harvest.store import CatalogStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class BatchWriter:
    def __init__(
        self,
        catalog: "CatalogStore",
        collection: str = "tracks",
        batch_size: int = 500,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.catalog = catalog
        self.collection = collection
        self.batch_size = batch_size

    async def write_new(
        self,
        tracks: Sequence[TrackRecord],
        progress: ProgressCallback | None = None,
    ) -> int:
        """
        Write `tracks` in chunks of `batch_size`, stamping `addedAt`.

        Returns the number of records written.
        """
        total = len(tracks)
        written = 0
        for start in range(0, total, self.batch_size):
            chunk = tracks[start : start + self.batch_size]
            docs = [(t.id, {**t.to_document(), "addedAt": SERVER_TIMESTAMP}) for t in chunk]
            try:
                await self.catalog.commit_batch(self.collection, docs)
            except Exception as e:
                raise BatchWriteError(
                    f"Batch commit failed after {written}/{total} tracks: {e}",
                    committed=written,
                ) from e

            written += len(chunk)
            logger.info("Wrote batch of %d tracks (%d/%d)", len(chunk), written, total)
            if progress is not None:
                progress(written, total)
        return written
