"""
Pipeline models (DTOs) for Harvest.

This module is intentionally lightweight:
- No network or store knowledge
- Pure dataclasses + (de)serialization helpers

`TrackRecord.to_document()` defines the wire contract of the `tracks`
collection: the mobile client reads these camelCase documents directly.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

# Attribute name -> document key. Order matches the client-side type.
_DOCUMENT_KEYS: tuple[tuple[str, str], ...] = (
    ("id", "id"),
    ("title", "title"),
    ("artist", "artist"),
    ("artist_id", "artistId"),
    ("album", "album"),
    ("album_id", "albumId"),
    ("duration", "duration"),
    ("artwork", "artwork"),
    ("audio_url", "audioUrl"),
    ("is_local", "isLocal"),
    ("genre", "genre"),
    ("license", "license"),
    ("uploaded_by", "uploadedBy"),
    ("uploaded_by_name", "uploadedByName"),
    ("title_lower", "titleLower"),
)


@dataclass(frozen=True, slots=True)
class TrackRecord:
    """
    Canonical track record as stored in the catalog.

    Notes:
    - `id` encodes (source, external id[, file]) so repeated harvests of the
      same item land on the same document.
    - `title_lower` is derived from `title` and cannot be passed in; it is
      recomputed on every construction, including `dataclasses.replace()`.
    - A record is migrated iff `original_audio_url` is set.
    """

    id: str
    title: str
    artist: str
    artist_id: str
    album: str
    album_id: str
    duration: int
    artwork: str
    audio_url: str
    is_local: bool
    genre: str
    license: str
    uploaded_by: str
    uploaded_by_name: str
    original_audio_url: str | None = None
    original_artwork: str | None = None
    title_lower: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "title_lower", self.title.lower())

    @property
    def is_migrated(self) -> bool:
        return bool(self.original_audio_url)

    def to_document(self) -> dict[str, Any]:
        doc = {key: getattr(self, attr) for attr, key in _DOCUMENT_KEYS}
        if self.original_audio_url:
            doc["originalAudioUrl"] = self.original_audio_url
            doc["originalArtwork"] = self.original_artwork or ""
        return doc

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any]) -> "TrackRecord":
        """Build a record from a stored document, tolerating missing keys."""
        return cls(
            id=str(data.get("id") or doc_id),
            title=str(data.get("title") or ""),
            artist=str(data.get("artist") or ""),
            artist_id=str(data.get("artistId") or ""),
            album=str(data.get("album") or ""),
            album_id=str(data.get("albumId") or ""),
            duration=int(data.get("duration") or 0),
            artwork=str(data.get("artwork") or ""),
            audio_url=str(data.get("audioUrl") or ""),
            is_local=bool(data.get("isLocal", False)),
            genre=str(data.get("genre") or ""),
            license=str(data.get("license") or ""),
            uploaded_by=str(data.get("uploadedBy") or ""),
            uploaded_by_name=str(data.get("uploadedByName") or ""),
            original_audio_url=data.get("originalAudioUrl") or None,
            original_artwork=data.get("originalArtwork"),
        )

    def with_media(self, transfer: "MediaTransfer") -> "TrackRecord":
        """Return a copy pointing at relocated media, keeping the originals."""
        duration = self.duration
        if not duration and transfer.duration:
            duration = transfer.duration
        return dataclasses.replace(
            self,
            audio_url=transfer.audio_url,
            artwork=transfer.artwork,
            original_audio_url=transfer.original_audio_url,
            original_artwork=transfer.original_artwork,
            duration=duration,
        )


@dataclass(frozen=True, slots=True)
class MediaTransfer:
    """Outcome of relocating one track's audio (and maybe artwork)."""

    audio_url: str
    artwork: str
    original_audio_url: str
    original_artwork: str
    duration: int | None = None


@dataclass(frozen=True, slots=True)
class Cursor:
    """
    Per-source progress marker.

    Cursors are values: adapters read one at the start of a run and hand back
    a new one; nothing mutates a cursor in place.
    """

    query_index: int = 0
    sort_index: int = 0
    page_offset: int = 0
    last_run: str = ""

    @classmethod
    def initial(cls) -> "Cursor":
        return cls()

    def advance(
        self,
        *,
        queries: int,
        query_count: int,
        sort_count: int,
        page_size: int,
        exhausted: bool,
    ) -> "Cursor":
        """
        Move the sliding window forward for the next run.

        `exhausted` means the first query of this run came back short, so the
        next run starts that rotation from the top instead of paging past the end.
        """
        return Cursor(
            query_index=(self.query_index + queries) % max(1, query_count),
            sort_index=(self.sort_index + 1) % max(1, sort_count),
            page_offset=0 if exhausted else self.page_offset + page_size,
            last_run=datetime.now(timezone.utc).isoformat(),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "queryIndex": self.query_index,
            "sortIndex": self.sort_index,
            "pageOffset": self.page_offset,
            "lastRun": self.last_run,
        }

    @classmethod
    def from_document(cls, data: Mapping[str, Any]) -> "Cursor":
        """
        Parse a stored cursor.

        Raises ValueError when the document does not look like a cursor.
        """
        try:
            query_index = int(data["queryIndex"])
            sort_index = int(data["sortIndex"])
            page_offset = int(data["pageOffset"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"malformed cursor document: {e}") from e
        if query_index < 0 or sort_index < 0 or page_offset < 0:
            raise ValueError("malformed cursor document: negative index")
        return cls(
            query_index=query_index,
            sort_index=sort_index,
            page_offset=page_offset,
            last_run=str(data.get("lastRun") or ""),
        )


@dataclass(slots=True)
class SourceResult:
    """What one adapter invocation harvested. Discarded after stats are derived."""

    source_name: str
    tracks: list[TrackRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    next_cursor: Cursor | None = None


@dataclass(slots=True)
class ImportStats:
    """Per-source run summary; only ever logged."""

    source: str
    fetched: int = 0
    new_tracks: int = 0
    duplicates: int = 0
    errors: int = 0
    invalid: int = 0

    def summary_line(self) -> str:
        return (
            f"{self.source}: fetched={self.fetched} new={self.new_tracks} "
            f"dupes={self.duplicates} invalid={self.invalid} errors={self.errors}"
        )


@dataclass(frozen=True, slots=True)
class ImportReport:
    stats: list[ImportStats]
    written: int
    media_uploaded: int
    media_kept: int
    elapsed: float
    dry_run: bool


class MigrationState(Enum):
    """States of one catalog item during a storage-migration pass."""

    UNSCANNED = "unscanned"
    SKIPPED = "skipped"
    MIGRATING = "migrating"
    MIGRATED = "migrated"
    FAILED = "failed"


@dataclass(slots=True)
class MigrationStats:
    scanned: int = 0
    migrated: int = 0
    skipped: int = 0
    failed: int = 0
    failed_ids: list[str] = field(default_factory=list)
    last_doc_id: str | None = None

    def record(self, doc_id: str, state: MigrationState) -> None:
        """Count a terminal state for one scanned item."""
        if state is MigrationState.MIGRATED:
            self.migrated += 1
        elif state is MigrationState.SKIPPED:
            self.skipped += 1
        elif state is MigrationState.FAILED:
            self.failed += 1
            self.failed_ids.append(doc_id)
        else:
            raise ValueError(f"{state} is not a terminal migration state")
        self.scanned += 1
