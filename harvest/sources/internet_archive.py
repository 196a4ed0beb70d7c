"""
Internet Archive source (advanced search + per-item metadata).

One search item can hold many audio files; every usable file becomes its own
track with id `ia-<identifier>-<file stem>`. Several search queries run per
invocation and the cursor rotates through the query and sort lists, so
repeated runs drift over different slices of the archive.
"""

from __future__ import annotations

from typing import TypedDict
from urllib.parse import quote

from harvest.core.normalize import DEFAULT_LICENSE, clamp_id, clean_title, map_genre, safe_id_fragment
from harvest.sources.base import HarvestRun, QueryPlan, SourceAdapter, SourceRequestError

SEARCH_URL = "https://archive.org/advancedsearch.php"
METADATA_URL = "https://archive.org/metadata"
DOWNLOAD_URL = "https://archive.org/download"
ARTWORK_URL = "https://archive.org/services/img"

AUDIO_EXTENSIONS = (".mp3", ".ogg", ".flac")

_CC = "mediatype:audio AND licenseurl:*creativecommons*"


class _SearchDoc(TypedDict, total=False):
    identifier: str
    title: str
    creator: str | list[str]
    subject: str | list[str]
    licenseurl: str


class _SearchResponse(TypedDict, total=False):
    docs: list[_SearchDoc]
    numFound: int


class _SearchPayload(TypedDict, total=False):
    response: _SearchResponse


class _File(TypedDict, total=False):
    name: str
    format: str
    length: str
    source: str


class _ItemMetadata(TypedDict, total=False):
    identifier: str
    title: str
    creator: str | list[str]
    subject: str | list[str]
    licenseurl: str


class _MetadataPayload(TypedDict, total=False):
    metadata: _ItemMetadata
    files: list[_File]


def _first(value: str | list[str] | None) -> str:
    if isinstance(value, list):
        return str(value[0]) if value else ""
    return value or ""


def _usable_audio(files: list[_File]) -> list[_File]:
    """Original uploads (or MP3 derivatives) with a playable extension."""
    return [
        f
        for f in files
        if f.get("name", "").lower().endswith(AUDIO_EXTENSIONS)
        and (f.get("source") == "original" or "mp3" in (f.get("format") or "").lower())
    ]


class InternetArchiveSource(SourceAdapter):
    name = "internet-archive"
    id_prefix = "ia-"
    queries = (
        f"{_CC} AND format:mp3",
        "mediatype:audio AND collection:opensource_audio AND format:mp3",
        "mediatype:audio AND licenseurl:*publicdomain* AND format:mp3",
        "mediatype:audio AND collection:audio_music AND format:mp3",
        f"{_CC} AND subject:rock AND format:mp3",
        f"{_CC} AND subject:electronic AND format:mp3",
        f"{_CC} AND subject:jazz AND format:mp3",
        f"{_CC} AND subject:classical AND format:mp3",
        f"{_CC} AND subject:folk AND format:mp3",
        f"{_CC} AND subject:ambient AND format:mp3",
    )
    sorts = ("addeddate desc", "downloads desc", "date desc", "createdate desc")

    @property
    def items_per_query(self) -> int:
        return max(1, self.settings.max_items // max(1, self.settings.queries_per_run))

    async def run_query(self, plan: QueryPlan, run: HarvestRun) -> bool:
        rows = self.settings.page_size
        first_page = plan.offset // rows + 1
        budget = self.items_per_query

        for page in range(self.settings.max_pages):
            if not run.accepting or budget <= 0:
                return False
            params = {
                "q": plan.query,
                "output": "json",
                "rows": str(rows),
                "page": str(first_page + page),
                "sort[]": plan.sort,
                "fl[]": "identifier,title,creator,subject,licenseurl",
            }
            payload: _SearchPayload = await self.get_json(SEARCH_URL, params, f"Search query {plan.number}")
            docs = (payload.get("response") or {}).get("docs") or []
            self.logger.info(
                "Query %d page %d: found %d items, processing up to %d",
                plan.number,
                first_page + page,
                len(docs),
                budget,
            )

            for doc in docs[:budget]:
                if not run.accepting:
                    break
                budget -= 1
                run.items_processed += 1
                identifier = doc.get("identifier")
                if not identifier:
                    continue
                try:
                    await self._harvest_item(doc, identifier, run)
                except SourceRequestError as e:
                    run.errors.append(f"{e} for {identifier}")
                except Exception as e:  # noqa: BLE001 - item-level, keep harvesting
                    run.errors.append(f"Item {identifier}: {e}")

            if len(docs) < rows:
                return True
        return False

    async def _harvest_item(self, doc: _SearchDoc, identifier: str, run: HarvestRun) -> None:
        meta: _MetadataPayload = await self.get_json(
            f"{METADATA_URL}/{quote(identifier)}", None, "Metadata"
        )
        audio_files = _usable_audio(meta.get("files") or [])
        if not audio_files:
            return

        info = meta.get("metadata") or {}
        artist = _first(info.get("creator")) or _first(doc.get("creator"))
        license_url = info.get("licenseurl") or doc.get("licenseurl") or DEFAULT_LICENSE
        genre = map_genre(doc.get("subject") or info.get("subject"))
        album = doc.get("title") or info.get("title") or "Internet Archive"

        for f in audio_files:
            name = f["name"]
            run.add(
                {
                    "id": clamp_id(f"{self.id_prefix}{identifier}-{safe_id_fragment(name)}"),
                    "title": clean_title(name.rsplit("/", 1)[-1]),
                    "artist": artist,
                    "album": album,
                    "duration": f.get("length"),
                    "artwork": f"{ARTWORK_URL}/{identifier}",
                    "audio_url": f"{DOWNLOAD_URL}/{identifier}/{quote(name)}",
                    "genre": genre,
                    "license": license_url,
                }
            )
