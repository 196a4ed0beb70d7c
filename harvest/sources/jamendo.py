"""
Jamendo source (https://developer.jamendo.com/v3.0/tracks).

Needs a client id (`JAMENDO_CLIENT_ID`). Each run walks up to `max_pages`
pages of one tag filter / order combination; the cursor rotates both.
"""

from __future__ import annotations

from typing import TypedDict

from harvest.core.normalize import map_genre
from harvest.sources.base import HarvestRun, QueryPlan, SourceAdapter, SourceRequestError

BASE_URL = "https://api.jamendo.com/v3.0/tracks/"


class _JamendoTags(TypedDict, total=False):
    genres: list[str]


class _JamendoMusicInfo(TypedDict, total=False):
    tags: _JamendoTags


class _JamendoTrack(TypedDict, total=False):
    id: str
    name: str
    duration: int
    artist_id: str
    artist_name: str
    album_id: str
    album_name: str
    album_image: str
    audio: str
    audiodownload: str
    image: str
    license_ccurl: str
    musicinfo: _JamendoMusicInfo


class _JamendoHeaders(TypedDict, total=False):
    status: str
    code: int
    error_message: str
    results_count: int


class _JamendoResponse(TypedDict, total=False):
    headers: _JamendoHeaders
    results: list[_JamendoTrack]


def _genre(track: _JamendoTrack) -> str:
    genres = ((track.get("musicinfo") or {}).get("tags") or {}).get("genres") or []
    if not genres:
        return ""
    # Jamendo genre tags are free text ("lounge", "hiphop"); unmapped ones pass through.
    return map_genre(genres, default=genres[0].title())


class JamendoSource(SourceAdapter):
    name = "jamendo"
    id_prefix = "jamendo-"
    requires_credential = True
    credential_env = "JAMENDO_CLIENT_ID"
    # Tag filters; "" is the unfiltered catalog.
    queries = ("", "rock", "electronic", "jazz", "classical", "hiphop", "pop", "ambient", "folk")
    sorts = ("releasedate_desc", "popularity_week", "popularity_month", "listens_total")

    async def run_query(self, plan: QueryPlan, run: HarvestRun) -> bool:
        page_size = self.settings.page_size
        for page in range(self.settings.max_pages):
            if not run.accepting:
                return False
            offset = plan.offset + page * page_size
            params: dict[str, str | int] = {
                "client_id": self.settings.client_id or "",
                "format": "json",
                "limit": page_size,
                "offset": offset,
                "order": plan.sort,
                "include": "musicinfo",
                "audioformat": "mp32",
            }
            if plan.query:
                params["tags"] = plan.query

            self.logger.info("Fetching page %d (offset %d)...", page + 1, offset)
            data: _JamendoResponse = await self.get_json(BASE_URL, params, f"Page {page + 1}")

            code = (data.get("headers") or {}).get("code", 0)
            if code != 0:
                raise SourceRequestError(f"API error code {code} on page {page + 1}")

            results = data.get("results") or []
            for track in results:
                if not run.accepting:
                    break
                run.items_processed += 1
                try:
                    self._add_track(track, run)
                except Exception as e:  # noqa: BLE001 - item-level, keep harvesting
                    run.errors.append(f"Track {track.get('id', '?')}: {e}")

            if len(results) < page_size:
                return True
        return False

    def _add_track(self, track: _JamendoTrack, run: HarvestRun) -> None:
        audio_url = track.get("audio") or track.get("audiodownload")
        if not audio_url:
            return
        artist_id = track.get("artist_id")
        album_id = track.get("album_id")
        run.add(
            {
                "id": f"{self.id_prefix}{track['id']}",
                "title": track.get("name"),
                "artist": track.get("artist_name"),
                "artist_id": f"jamendo-artist-{artist_id}" if artist_id else "",
                "album": track.get("album_name"),
                "album_id": f"jamendo-album-{album_id}" if album_id else "",
                "duration": track.get("duration"),
                "artwork": track.get("album_image") or track.get("image"),
                "audio_url": audio_url,
                "genre": _genre(track),
                "license": track.get("license_ccurl"),
            }
        )
