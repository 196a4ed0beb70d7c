"""
ccMixter source (query API, JSON output).

The API sometimes embeds literal `\\0` sequences in its JSON text, which are
stripped before parsing.
"""

from __future__ import annotations

import json
from typing import TypedDict

from harvest.core.normalize import GENRE_KEYWORDS, map_genre
from harvest.sources.base import HarvestRun, QueryPlan, SourceAdapter, SourceRequestError

BASE_URL = "http://ccmixter.org/api/query"
ALBUM = "ccMixter Remixes"
DEFAULT_GENRE = "Remix"


class _FormatInfo(TypedDict, total=False):
    default_ext: str
    ps: float


class _File(TypedDict, total=False):
    download_url: str
    file_format_info: _FormatInfo


class _Upload(TypedDict, total=False):
    upload_id: int
    upload_name: str
    user_real_name: str
    user_name: str
    license_url: str
    upload_tags: str
    files: list[_File]


def _pick_audio(files: list[_File]) -> _File | None:
    """Prefer an MP3; otherwise any file with a download URL."""
    for f in files:
        url = f.get("download_url")
        if url and (
            (f.get("file_format_info") or {}).get("default_ext") == "mp3"
            or url.lower().endswith(".mp3")
        ):
            return f
    for f in files:
        if f.get("download_url"):
            return f
    return None


def parse_listing(text: str) -> list[_Upload]:
    data = json.loads(text.replace("\\0", ""))
    if not isinstance(data, list):
        raise ValueError("listing is not a JSON array")
    return data


class CCMixterSource(SourceAdapter):
    name = "ccmixter"
    id_prefix = "ccmixter-"
    # Tag filters; "" is the unfiltered catalog.
    queries = ("", "instrumental", "electronic", "hip_hop", "ambient", "chill")
    sorts = ("date", "rank", "score")

    async def run_query(self, plan: QueryPlan, run: HarvestRun) -> bool:
        page_size = self.settings.page_size
        for page in range(self.settings.max_pages):
            if not run.accepting:
                return False
            offset = plan.offset + page * page_size
            params: dict[str, str | int] = {
                "f": "json",
                "limit": page_size,
                "offset": offset,
                "sort": plan.sort,
            }
            if plan.query:
                params["tags"] = plan.query

            self.logger.info("Fetching page %d (offset %d)...", page + 1, offset)
            text = await self.get_text(BASE_URL, params, f"Page {page + 1}")
            try:
                uploads = parse_listing(text)
            except ValueError as e:
                raise SourceRequestError(f"JSON parse error on page {page + 1}") from e

            for upload in uploads:
                if not run.accepting:
                    break
                run.items_processed += 1
                try:
                    self._add_upload(upload, run)
                except Exception as e:  # noqa: BLE001 - item-level, keep harvesting
                    run.errors.append(f"Upload {upload.get('upload_id', '?')}: {e}")

            if len(uploads) < page_size:
                return True
        return False

    def _add_upload(self, upload: _Upload, run: HarvestRun) -> None:
        audio = _pick_audio(upload.get("files") or [])
        if audio is None:
            return
        run.add(
            {
                "id": f"{self.id_prefix}{upload['upload_id']}",
                "title": upload.get("upload_name") or "Untitled",
                "artist": upload.get("user_real_name") or upload.get("user_name"),
                "album": ALBUM,
                "duration": (audio.get("file_format_info") or {}).get("ps"),
                "artwork": "",
                "audio_url": audio["download_url"].replace(" ", "%20"),
                "genre": map_genre(
                    upload.get("upload_tags"), GENRE_KEYWORDS, DEFAULT_GENRE, separator=","
                ),
                "license": upload.get("license_url"),
            }
        )
