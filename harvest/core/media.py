"""
Media transfer engine.

Relocates a track's binary assets from the provider into our object store:

1. Audio (mandatory): download with a 60s budget, upload to
   `<audio_prefix>/<track id>.mp3`. Any failure fails the whole track.
2. Artwork (optional): download with a 15s budget, re-encode to a bounded
   JPEG, upload to `<artwork_prefix>/<track id>.jpg`. Failure keeps the
   original artwork URL.

Concurrency:
- tracks run concurrently under a semaphore (default 3) to bound memory and
  outbound bandwidth
- within a track, audio then artwork, sequentially

Whether a track *should* be transferred (already migrated, eligible host) is
the caller's decision; the engine always performs the transfer it is asked for.
"""

from __future__ import annotations

import asyncio
import io
import logging
from collections.abc import Sequence

import httpx
from mutagen import File as mutagen_file
from PIL import Image

from harvest.config import MediaSettings
from harvest.core.models import MediaTransfer, TrackRecord
from harvest.core.normalize import PLACEHOLDER_ARTWORK
from harvest.store import ObjectStore

logger = logging.getLogger(__name__)

ARTWORK_CONTENT_TYPE = "image/jpeg"


def _to_jpeg(data: bytes, max_size: int, quality: int) -> bytes:
    """
    Re-encode image bytes as an RGB JPEG no larger than `max_size` on either side.

    Intentionally synchronous; callers run it in a thread.
    Raises whatever Pillow raises for undecodable input.
    """
    with Image.open(io.BytesIO(data)) as img:
        img = img.convert("RGB")
        img.thumbnail((max_size, max_size))
        out = io.BytesIO()
        img.save(out, format="JPEG", quality=quality, optimize=True)
    return out.getvalue()


def _probe_duration(data: bytes) -> int | None:
    """Length of an audio buffer in whole seconds, if mutagen can tell."""
    try:
        audio = mutagen_file(io.BytesIO(data))
    except Exception as e:  # noqa: BLE001 - probing is best effort
        logger.debug("Duration probe failed: %s", e)
        return None
    length = getattr(getattr(audio, "info", None), "length", None)
    if isinstance(length, (int, float)) and length > 0:
        return round(length)
    return None


class MediaTransferEngine:
    def __init__(
        self,
        client: httpx.AsyncClient,
        objects: ObjectStore,
        settings: MediaSettings | None = None,
    ) -> None:
        self.client = client
        self.objects = objects
        self.settings = settings or MediaSettings()

    def audio_path(self, track_id: str) -> str:
        return f"{self.settings.audio_prefix}/{track_id}.{self.settings.audio_extension}"

    def artwork_path(self, track_id: str) -> str:
        return f"{self.settings.artwork_prefix}/{track_id}.jpg"

    async def download(self, url: str, timeout: float) -> tuple[bytes, str] | None:
        """
        Fetch `url` into memory within `timeout` seconds.

        `timeout` bounds each connect/read phase on the client and the whole
        request through `asyncio.timeout`.

        Returns (body, content type) or None on non-2xx, timeout or network error.
        """
        try:
            async with asyncio.timeout(timeout):
                response = await self.client.get(
                    url, timeout=httpx.Timeout(timeout), follow_redirects=True
                )
        except TimeoutError:
            logger.warning("Timed out after %.0fs downloading %s", timeout, url)
            return None
        except httpx.HTTPError as e:
            logger.warning("Download failed for %s: %s", url, e)
            return None

        if not response.is_success:
            logger.warning("HTTP %d downloading %s", response.status_code, url)
            return None
        content_type = response.headers.get("content-type", "application/octet-stream")
        return response.content, content_type

    async def _upload(self, path: str, data: bytes, content_type: str) -> str | None:
        try:
            return await self.objects.upload(path, data, content_type)
        except Exception as e:  # noqa: BLE001 - reported as a failed transfer
            logger.warning("Upload failed for %s: %s", path, e)
            return None

    async def _transfer_artwork(self, track_id: str, artwork_url: str) -> str | None:
        downloaded = await self.download(artwork_url, self.settings.artwork_timeout)
        if downloaded is None:
            return None
        data, _content_type = downloaded
        try:
            jpeg = await asyncio.to_thread(
                _to_jpeg, data, self.settings.artwork_max_size, self.settings.artwork_quality
            )
        except Exception as e:  # noqa: BLE001 - not an image we can use
            logger.warning("Artwork for %s is not a usable image: %s", track_id, e)
            return None
        return await self._upload(self.artwork_path(track_id), jpeg, ARTWORK_CONTENT_TYPE)

    async def transfer_track_media(
        self, track_id: str, audio_url: str, artwork_url: str
    ) -> MediaTransfer | None:
        """
        Move one track's audio (required) and artwork (optional) into our storage.

        Returns None if the audio could not be transferred.
        """
        downloaded = await self.download(audio_url, self.settings.audio_timeout)
        if downloaded is None:
            logger.warning("SKIP %s: audio download failed", track_id)
            return None
        audio, _content_type = downloaded

        new_audio_url = await self._upload(
            self.audio_path(track_id), audio, self.settings.audio_content_type
        )
        if new_audio_url is None:
            logger.warning("SKIP %s: audio upload failed", track_id)
            return None

        duration = await asyncio.to_thread(_probe_duration, audio)

        new_artwork_url = artwork_url
        if artwork_url and artwork_url != PLACEHOLDER_ARTWORK:
            moved = await self._transfer_artwork(track_id, artwork_url)
            if moved is not None:
                new_artwork_url = moved
            else:
                logger.warning("WARN %s: artwork failed, keeping original", track_id)

        return MediaTransfer(
            audio_url=new_audio_url,
            artwork=new_artwork_url,
            original_audio_url=audio_url,
            original_artwork=artwork_url,
            duration=duration,
        )

    async def transfer_many(
        self, tracks: Sequence[TrackRecord]
    ) -> dict[str, MediaTransfer | None]:
        """Transfer media for several tracks, at most `concurrency` at a time."""
        semaphore = asyncio.Semaphore(max(1, self.settings.concurrency))
        results: dict[str, MediaTransfer | None] = {}

        async def _process(track: TrackRecord) -> None:
            async with semaphore:
                try:
                    results[track.id] = await self.transfer_track_media(
                        track.id, track.audio_url, track.artwork
                    )
                except Exception as e:  # noqa: BLE001 - one track never stops the others
                    logger.warning("Media transfer crashed for %s: %s", track.id, e)
                    results[track.id] = None

        if tracks:
            await asyncio.gather(*(_process(t) for t in tracks))
        return results
