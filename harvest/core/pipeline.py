"""
Import orchestrator.

One run:
  (a) fetch every source concurrently (each with its own cursor)
  (b) validate harvested records
  (c) find which ids already exist in the catalog
  (d) relocate media for the new records (bounded concurrency)
  (e) write the new records in atomic batches
  (f) log a per-source summary and the elapsed time

A failing source never stops the others. Media failures keep the record
with its provider URLs. Only the write phase can abort a run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence

from harvest.core.cursor import CursorStore, harvest_source
from harvest.core.dedup import DedupChecker
from harvest.core.media import MediaTransferEngine
from harvest.core.models import ImportReport, ImportStats, SourceResult, TrackRecord
from harvest.core.normalize import filter_valid
from harvest.core.writer import BatchWriter
from harvest.sources.base import SourceAdapter

logger = logging.getLogger(__name__)

DRY_RUN_SAMPLE = 5


class ImportPipeline:
    def __init__(
        self,
        sources: Sequence[SourceAdapter],
        cursors: CursorStore,
        dedup: DedupChecker,
        writer: BatchWriter,
        media: MediaTransferEngine | None = None,
        *,
        dry_run: bool = False,
    ) -> None:
        self.sources = list(sources)
        self.cursors = cursors
        self.dedup = dedup
        self.writer = writer
        self.media = media
        self.dry_run = dry_run

    async def _collect(self) -> tuple[list[TrackRecord], dict[str, ImportStats]]:
        """Steps (a) + (b): fan out to sources, validate, build per-source stats."""
        outcomes = await asyncio.gather(
            *(harvest_source(s, self.cursors, persist=not self.dry_run) for s in self.sources),
            return_exceptions=True,
        )

        candidates: list[TrackRecord] = []
        stats: dict[str, ImportStats] = {}
        for adapter, outcome in zip(self.sources, outcomes):
            stat = ImportStats(source=adapter.name)
            stats[adapter.name] = stat
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error("Source %s failed: %s", adapter.name, outcome)
                stat.errors = 1
                continue

            result: SourceResult = outcome
            valid, invalid = filter_valid(result.tracks)
            stat.fetched = len(result.tracks)
            stat.invalid = invalid
            stat.errors = len(result.errors)
            if result.errors:
                logger.warning("%s warnings: %s", adapter.name, "; ".join(result.errors))
            if invalid:
                logger.info("%s: dropped %d invalid records", adapter.name, invalid)
            candidates.extend(valid)

        return candidates, stats

    def _source_of(self, track: TrackRecord) -> str | None:
        for adapter in self.sources:
            if track.id.startswith(adapter.id_prefix):
                return adapter.name
        return None

    async def _relocate(
        self, media: MediaTransferEngine, tracks: list[TrackRecord]
    ) -> tuple[list[TrackRecord], int, int]:
        """Step (d): move media for records that are not migrated yet."""
        pending = [t for t in tracks if not t.is_migrated]
        logger.info("Uploading media for %d tracks to storage...", len(pending))
        transfers = await media.transfer_many(pending)

        uploaded = kept = 0
        relocated: list[TrackRecord] = []
        for track in tracks:
            if track.is_migrated:
                relocated.append(track)
                continue
            transfer = transfers.get(track.id)
            if transfer is None:
                logger.warning("Could not upload %s to storage, keeping source URL", track.id)
                kept += 1
                relocated.append(track)
            else:
                uploaded += 1
                relocated.append(track.with_media(transfer))
        logger.info("Storage upload complete: %d uploaded, %d kept original URL", uploaded, kept)
        return relocated, uploaded, kept

    async def run(self) -> ImportReport:
        started = time.monotonic()
        logger.info("=== Import starting%s ===", " (DRY RUN)" if self.dry_run else "")

        candidates, stats = await self._collect()
        logger.info("Total valid tracks fetched: %d", len(candidates))

        # Step (c). Ids repeated within this run collapse to their first record.
        unique: dict[str, TrackRecord] = {}
        for track in candidates:
            unique.setdefault(track.id, track)
        existing = await self.dedup.existing(unique)
        new_tracks = [t for t in unique.values() if t.id not in existing]
        logger.info(
            "After dedup: %d new, %d duplicates", len(new_tracks), len(candidates) - len(new_tracks)
        )

        new_ids = {t.id for t in new_tracks}
        for track in candidates:
            name = self._source_of(track)
            if name is None:
                continue
            if track.id in new_ids:
                stats[name].new_tracks += 1
                # Only the first occurrence counts as new.
                new_ids.discard(track.id)
            else:
                stats[name].duplicates += 1

        uploaded = kept = written = 0
        if self.dry_run:
            logger.info("[DRY RUN] Would write %d tracks", len(new_tracks))
            for t in new_tracks[:DRY_RUN_SAMPLE]:
                logger.info('  - %s: "%s" by %s [%s]', t.id, t.title, t.artist, t.genre)
            if self.media is not None and new_tracks:
                logger.info("[DRY RUN] Would upload media for %d tracks", len(new_tracks))
        elif new_tracks:
            if self.media is not None:
                new_tracks, uploaded, kept = await self._relocate(self.media, new_tracks)
            written = await self.writer.write_new(new_tracks)

        elapsed = time.monotonic() - started
        logger.info("=== Import Summary ===")
        for stat in stats.values():
            logger.info("  %s", stat.summary_line())
        logger.info("Total new tracks written: %d", written)
        logger.info("Completed in %.1fs", elapsed)

        return ImportReport(
            stats=list(stats.values()),
            written=written,
            media_uploaded=uploaded,
            media_kept=kept,
            elapsed=elapsed,
            dry_run=self.dry_run,
        )
