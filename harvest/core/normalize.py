"""
Record normalization and validation.

Adapters hand `sanitize()` whatever they could extract from a provider
payload; everything optional gets a documented default here so the rest of
the pipeline only ever sees complete `TrackRecord`s.

`validate()` runs after sanitization and before dedup. Invalid records are
dropped and counted; they never abort a run.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any, Final

from harvest.core.models import TrackRecord

MAX_ID_LENGTH: Final[int] = 128

DEFAULT_TITLE: Final[str] = "Unknown Title"
DEFAULT_ARTIST: Final[str] = "Unknown Artist"
DEFAULT_ALBUM: Final[str] = "Singles"
DEFAULT_GENRE: Final[str] = "Other"
DEFAULT_LICENSE: Final[str] = "Creative Commons"
PLACEHOLDER_ARTWORK: Final[str] = "https://via.placeholder.com/300x300.png?text=No+Cover"

# Attribution for everything written by the importer.
IMPORT_UPLOADER: Final[str] = "system-import"
IMPORT_UPLOADER_NAME: Final[str] = "Spotfly Bot"

# Keyword -> genre. First matching keyword wins, so order matters
# ("hip-hop" must not be shadowed by a shorter key that also matches).
GENRE_KEYWORDS: Final[dict[str, str]] = {
    "rock": "Rock",
    "electronic": "Electronic",
    "jazz": "Jazz",
    "classical": "Classical",
    "folk": "Folk",
    "ambient": "Ambient",
    "pop": "Pop",
    "indie": "Indie",
    "experimental": "Experimental",
    "world": "World",
    "piano": "Piano",
    "metal": "Metal",
    "hiphop": "Hip Hop",
    "hip-hop": "Hip Hop",
    "hip_hop": "Hip Hop",
    "blues": "Blues",
    "country": "Country",
    "reggae": "Reggae",
    "soul": "Soul",
    "chillout": "Chillout",
}


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _duration(value: Any) -> int:
    """Accept ints, floats and numeric strings ("215.3"); anything else is 0."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        seconds = round(float(value))
    except (TypeError, ValueError):
        return 0
    return seconds if seconds > 0 else 0


def sanitize(partial: Mapping[str, Any]) -> TrackRecord:
    """
    Fill every optional field with its default and build a `TrackRecord`.

    `partial` uses the record's attribute names (`audio_url`, `artist_id`, ...).
    `id` and `audio_url` are passed through as-is (possibly empty) so that
    `validate()` can reject them.
    """
    return TrackRecord(
        id=_text(partial.get("id")),
        title=_text(partial.get("title")) or DEFAULT_TITLE,
        artist=_text(partial.get("artist")) or DEFAULT_ARTIST,
        artist_id=_text(partial.get("artist_id")),
        album=_text(partial.get("album")) or DEFAULT_ALBUM,
        album_id=_text(partial.get("album_id")),
        duration=_duration(partial.get("duration")),
        artwork=_text(partial.get("artwork")) or PLACEHOLDER_ARTWORK,
        audio_url=_text(partial.get("audio_url")),
        is_local=False,
        genre=_text(partial.get("genre")) or DEFAULT_GENRE,
        license=_text(partial.get("license")) or DEFAULT_LICENSE,
        uploaded_by=IMPORT_UPLOADER,
        uploaded_by_name=IMPORT_UPLOADER_NAME,
    )


def validate(record: TrackRecord) -> bool:
    if not record.id or len(record.id) > MAX_ID_LENGTH:
        return False
    if not record.audio_url or not record.audio_url.startswith("http"):
        return False
    if not record.title:
        return False
    return True


def filter_valid(records: Iterable[TrackRecord]) -> tuple[list[TrackRecord], int]:
    """Split records into (valid, number of invalid)."""
    valid: list[TrackRecord] = []
    invalid = 0
    for record in records:
        if validate(record):
            valid.append(record)
        else:
            invalid += 1
    return valid, invalid


def map_genre(
    tags: Iterable[str] | str | None,
    table: Mapping[str, str] = GENRE_KEYWORDS,
    default: str = DEFAULT_GENRE,
    *,
    separator: str = ";",
) -> str:
    """
    Map free-text tags onto a genre via a keyword table.

    Examples:
      ["Indie Rock", "lo-fi"]    -> "Rock"
      "Electronic; Chill"        -> "Electronic"
      None                       -> default
    """
    if not tags:
        return default
    if isinstance(tags, str):
        tag_list = [t.strip() for t in tags.split(separator)]
    else:
        tag_list = [str(t).strip() for t in tags]

    for tag in tag_list:
        lower = tag.lower()
        if not lower:
            continue
        for keyword, genre in table.items():
            if keyword in lower:
                return genre
    return default


_EXTENSION_RE = re.compile(r"\.[^/.]+$")


def clean_title(filename: str) -> str:
    """'01_My-Song.mp3' -> '01 My Song'"""
    stem = _EXTENSION_RE.sub("", filename)
    stem = re.sub(r"[_-]", " ", stem)
    return re.sub(r"\s+", " ", stem).strip()


def safe_id_fragment(filename: str, max_length: int = 60) -> str:
    """Reduce a file name to an id-safe fragment: extension dropped, [A-Za-z0-9-] only."""
    stem = _EXTENSION_RE.sub("", filename)
    return re.sub(r"[^a-zA-Z0-9-]", "-", stem)[:max_length]


def clamp_id(track_id: str) -> str:
    return track_id[:MAX_ID_LENGTH]
