"""
Storage migration pass.

Walks the `tracks` collection in document-id order and relocates the media of
records that still point at a provider host into our own object storage.

Per item:

    UNSCANNED -> SKIPPED                      (already migrated / not eligible)
    UNSCANNED -> MIGRATING -> MIGRATED | FAILED

FAILED ids are collected for the operator and never block later items. The
pass is resumable: the last scanned document id is persisted after every page
and can be handed back as `start_after`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from typing import Any

from harvest.config import MigrationSettings
from harvest.core.cursor import CursorStore
from harvest.core.media import MediaTransferEngine
from harvest.core.models import MigrationState, MigrationStats, TrackRecord
from harvest.store import CatalogStore

logger = logging.getLogger(__name__)


class StorageMigration:
    def __init__(
        self,
        catalog: CatalogStore,
        media: MediaTransferEngine,
        cursors: CursorStore,
        settings: MigrationSettings | None = None,
        *,
        collection: str = "tracks",
        concurrency: int = 3,
        dry_run: bool = False,
    ) -> None:
        self.catalog = catalog
        self.media = media
        self.cursors = cursors
        self.settings = settings or MigrationSettings()
        self.collection = collection
        self.concurrency = max(1, concurrency)
        self.dry_run = dry_run

    def is_eligible(self, audio_url: str) -> bool:
        if not audio_url.startswith("http"):
            return False
        hosts = self.settings.eligible_hosts
        return not hosts or any(host in audio_url for host in hosts)

    def classify(self, data: Mapping[str, Any]) -> MigrationState:
        """First transition out of UNSCANNED."""
        if data.get("originalAudioUrl"):
            return MigrationState.SKIPPED
        if not self.is_eligible(str(data.get("audioUrl") or "")):
            return MigrationState.SKIPPED
        return MigrationState.MIGRATING

    async def migrate_one(self, doc_id: str, data: Mapping[str, Any]) -> MigrationState:
        state = self.classify(data)
        if state is MigrationState.SKIPPED:
            return state

        track = TrackRecord.from_document(doc_id, data)
        if self.dry_run:
            logger.info('[DRY RUN] Would migrate: %s - "%s"', doc_id, track.title)
            return MigrationState.MIGRATED

        try:
            transfer = await self.media.transfer_track_media(doc_id, track.audio_url, track.artwork)
            if transfer is None:
                return MigrationState.FAILED
            fields: dict[str, Any] = {
                "audioUrl": transfer.audio_url,
                "artwork": transfer.artwork,
                "originalAudioUrl": transfer.original_audio_url,
                "originalArtwork": transfer.original_artwork,
            }
            if not track.duration and transfer.duration:
                fields["duration"] = transfer.duration
            await self.catalog.update(self.collection, doc_id, fields)
        except Exception as e:  # noqa: BLE001 - recorded as FAILED for follow-up
            logger.warning("Migration of %s failed: %s", doc_id, e)
            return MigrationState.FAILED

        logger.info('OK: %s - "%s"', doc_id, track.title)
        return MigrationState.MIGRATED

    async def _resolve_start(self) -> str | None:
        start_after = self.settings.start_after
        if not start_after:
            return None
        if await self.catalog.get(self.collection, start_after) is None:
            logger.warning('START_AFTER doc "%s" not found, starting from beginning', start_after)
            return None
        logger.info("Resuming after document: %s", start_after)
        return start_after

    async def run(self) -> MigrationStats:
        started = time.monotonic()
        limit = self.settings.limit
        logger.info("=== Storage Migration ===")
        logger.info("Mode: %s", "DRY RUN" if self.dry_run else "LIVE")
        logger.info("Concurrency: %d", self.concurrency)
        if limit is not None:
            logger.info("Limit: %d", limit)

        stats = MigrationStats()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _guarded(doc_id: str, data: Mapping[str, Any]) -> MigrationState:
            async with semaphore:
                return await self.migrate_one(doc_id, data)

        position = await self._resolve_start()
        while limit is None or stats.scanned < limit:
            page = await self.catalog.page(
                self.collection, start_after=position, limit=self.settings.page_size
            )
            if not page:
                break

            docs = page if limit is None else page[: limit - stats.scanned]
            states = await asyncio.gather(*(_guarded(doc_id, data) for doc_id, data in docs))
            for (doc_id, _data), state in zip(docs, states):
                stats.record(doc_id, state)

            position = docs[-1][0]
            stats.last_doc_id = position
            if not self.dry_run:
                await self.cursors.save_marker(position)

            if len(page) < self.settings.page_size:
                break

        elapsed = time.monotonic() - started
        logger.info("=== Migration Summary ===")
        logger.info("  Total scanned: %d", stats.scanned)
        logger.info("  Migrated: %d", stats.migrated)
        logger.info("  Skipped (already done or not eligible): %d", stats.skipped)
        logger.info("  Failed: %d", stats.failed)
        logger.info("  Last doc ID: %s", stats.last_doc_id or "-")
        logger.info("  Completed in %.1fs", elapsed)
        if stats.failed_ids:
            logger.info("  Failed IDs: %s", ", ".join(stats.failed_ids))
        return stats
