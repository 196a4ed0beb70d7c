"""
Tests for harvest.core.media (download, re-encode, upload).
"""

from __future__ import annotations

import asyncio
import io

import httpx
from PIL import Image

from conftest import MemoryObjectStore, make_track, mock_client
from harvest.config import MediaSettings
from harvest.core.media import MediaTransferEngine, _to_jpeg
from harvest.core.normalize import PLACEHOLDER_ARTWORK

AUDIO_URL = "https://prod-1.storage.jamendo.com/?trackid=1"
ARTWORK_URL = "https://usercontent.jamendo.com/?type=album&id=9"


def _png(width: int = 1200, height: int = 800) -> bytes:
    out = io.BytesIO()
    Image.new("RGBA", (width, height), (200, 30, 30, 255)).save(out, format="PNG")
    return out.getvalue()


def _handler(routes: dict[str, httpx.Response]):
    def handle(request: httpx.Request) -> httpx.Response:
        return routes.get(str(request.url), httpx.Response(404))

    return handle


class TestToJpeg:
    """Tests for the artwork re-encode."""

    def test_bounded_rgb_jpeg(self) -> None:
        data = _to_jpeg(_png(), max_size=600, quality=85)

        with Image.open(io.BytesIO(data)) as img:
            assert img.format == "JPEG"
            assert img.mode == "RGB"
            assert max(img.size) == 600

    def test_small_images_not_upscaled(self) -> None:
        with Image.open(io.BytesIO(_to_jpeg(_png(100, 50), 600, 85))) as img:
            assert img.size == (100, 50)


class TestTransferTrackMedia:
    """Tests for relocating one track."""

    async def test_audio_and_artwork(self) -> None:
        objects = MemoryObjectStore()
        routes = {
            AUDIO_URL: httpx.Response(200, content=b"fake-mp3", headers={"content-type": "audio/mpeg"}),
            ARTWORK_URL: httpx.Response(200, content=_png(), headers={"content-type": "image/png"}),
        }
        async with mock_client(_handler(routes)) as client:
            engine = MediaTransferEngine(client, objects)
            transfer = await engine.transfer_track_media("jamendo-1", AUDIO_URL, ARTWORK_URL)

        assert transfer is not None
        assert transfer.audio_url == "https://storage.test/spotfly-audio/jamendo-1.mp3"
        assert transfer.artwork == "https://storage.test/spotfly-artwork/jamendo-1.jpg"
        assert transfer.original_audio_url == AUDIO_URL
        assert transfer.original_artwork == ARTWORK_URL
        assert objects.objects["spotfly-audio/jamendo-1.mp3"] == (b"fake-mp3", "audio/mpeg")
        artwork, content_type = objects.objects["spotfly-artwork/jamendo-1.jpg"]
        assert content_type == "image/jpeg"
        assert artwork[:2] == b"\xff\xd8"

    async def test_audio_404_fails_track(self) -> None:
        """Test that a missing audio file means no transfer and no uploads."""
        objects = MemoryObjectStore()
        async with mock_client(_handler({})) as client:
            transfer = await MediaTransferEngine(client, objects).transfer_track_media(
                "jamendo-1", AUDIO_URL, ARTWORK_URL
            )

        assert transfer is None
        assert objects.objects == {}

    async def test_artwork_failure_keeps_original(self) -> None:
        objects = MemoryObjectStore()
        routes = {AUDIO_URL: httpx.Response(200, content=b"fake-mp3")}
        async with mock_client(_handler(routes)) as client:
            transfer = await MediaTransferEngine(client, objects).transfer_track_media(
                "jamendo-1", AUDIO_URL, ARTWORK_URL
            )

        assert transfer is not None
        assert transfer.audio_url.endswith("spotfly-audio/jamendo-1.mp3")
        assert transfer.artwork == ARTWORK_URL

    async def test_undecodable_artwork_keeps_original(self) -> None:
        routes = {
            AUDIO_URL: httpx.Response(200, content=b"fake-mp3"),
            ARTWORK_URL: httpx.Response(200, content=b"<html>not an image</html>"),
        }
        async with mock_client(_handler(routes)) as client:
            transfer = await MediaTransferEngine(client, MemoryObjectStore()).transfer_track_media(
                "jamendo-1", AUDIO_URL, ARTWORK_URL
            )

        assert transfer is not None
        assert transfer.artwork == ARTWORK_URL

    async def test_placeholder_artwork_is_not_fetched(self) -> None:
        requested: list[str] = []

        def handle(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            return httpx.Response(200, content=b"fake-mp3")

        async with mock_client(handle) as client:
            transfer = await MediaTransferEngine(client, MemoryObjectStore()).transfer_track_media(
                "ccmixter-1", AUDIO_URL, PLACEHOLDER_ARTWORK
            )

        assert requested == [AUDIO_URL]
        assert transfer.artwork == PLACEHOLDER_ARTWORK

    async def test_audio_upload_failure_fails_track(self) -> None:
        routes = {AUDIO_URL: httpx.Response(200, content=b"fake-mp3")}
        objects = MemoryObjectStore(fail_prefixes=("spotfly-audio/",))
        async with mock_client(_handler(routes)) as client:
            transfer = await MediaTransferEngine(client, objects).transfer_track_media(
                "jamendo-1", AUDIO_URL, ""
            )

        assert transfer is None

    async def test_network_error(self) -> None:
        def handle(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with mock_client(handle) as client:
            engine = MediaTransferEngine(client, MemoryObjectStore())
            assert await engine.transfer_track_media("jamendo-1", AUDIO_URL, "") is None

    async def test_audio_timeout(self) -> None:
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return httpx.Response(200, content=b"late")

        settings = MediaSettings(audio_timeout=0.05)
        async with mock_client(slow) as client:
            engine = MediaTransferEngine(client, MemoryObjectStore(), settings)
            assert await engine.transfer_track_media("jamendo-1", AUDIO_URL, "") is None

    async def test_custom_prefixes(self) -> None:
        settings = MediaSettings(audio_prefix="audio", audio_extension="ogg")
        async with mock_client(_handler({})) as client:
            engine = MediaTransferEngine(client, MemoryObjectStore(), settings)

        assert engine.audio_path("ia-x") == "audio/ia-x.ogg"
        assert engine.artwork_path("ia-x") == "spotfly-artwork/ia-x.jpg"


class TestTransferMany:
    """Tests for bounded fan-out."""

    async def test_results_per_track(self) -> None:
        tracks = [make_track("ok-1"), make_track("missing-1"), make_track("ok-2")]
        routes = {
            t.audio_url: httpx.Response(200, content=b"fake-mp3") for t in tracks if t.id.startswith("ok")
        }
        async with mock_client(_handler(routes)) as client:
            results = await MediaTransferEngine(client, MemoryObjectStore()).transfer_many(tracks)

        assert set(results) == {"ok-1", "missing-1", "ok-2"}
        assert results["missing-1"] is None
        assert results["ok-1"] is not None
        # Artwork 404s: originals are kept.
        assert results["ok-2"].artwork == tracks[2].artwork

    async def test_concurrency_cap(self) -> None:
        in_flight = 0
        peak = 0

        async def handle(request: httpx.Request) -> httpx.Response:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return httpx.Response(200, content=b"fake-mp3")

        tracks = [make_track(f"t-{i}", artwork="") for i in range(10)]
        async with mock_client(handle) as client:
            engine = MediaTransferEngine(client, MemoryObjectStore(), MediaSettings(concurrency=3))
            results = await engine.transfer_many(tracks)

        assert peak == 3
        assert all(r is not None for r in results.values())

    async def test_empty(self) -> None:
        async with mock_client(_handler({})) as client:
            assert await MediaTransferEngine(client, MemoryObjectStore()).transfer_many([]) == {}


class _SlowServer:
    """Loopback HTTP server that waits before answering every request."""

    def __init__(self, delay: float, body: bytes = b"fake-mp3") -> None:
        self.delay = delay
        self.body = body
        self.server: asyncio.Server | None = None

    async def __aenter__(self) -> str:
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        port = self.server.sockets[0].getsockname()[1]
        return f"http://127.0.0.1:{port}"

    async def __aexit__(self, *exc: object) -> None:
        assert self.server is not None
        self.server.close()
        await self.server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            await reader.readuntil(b"\r\n\r\n")
            await asyncio.sleep(self.delay)
            writer.write(
                b"HTTP/1.1 200 OK\r\n"
                b"Content-Type: audio/mpeg\r\n"
                + f"Content-Length: {len(self.body)}\r\n".encode()
                + b"Connection: close\r\n\r\n"
                + self.body
            )
            await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError):
            # Client gave up first.
            pass
        finally:
            writer.close()


class TestDownloadTimeouts:
    """Tests for download budgets against a real socket."""

    async def test_slow_provider_within_audio_budget(self) -> None:
        """Test that a first byte later than the client default still succeeds."""
        objects = MemoryObjectStore()
        async with _SlowServer(delay=5.5) as base_url:
            async with httpx.AsyncClient(headers={"User-Agent": "harvest-test"}) as client:
                engine = MediaTransferEngine(client, objects)
                transfer = await engine.transfer_track_media("jamendo-1", f"{base_url}/a.mp3", "")

        assert transfer is not None
        assert objects.objects["spotfly-audio/jamendo-1.mp3"][0] == b"fake-mp3"

    async def test_budget_still_caps_the_request(self) -> None:
        async with _SlowServer(delay=2) as base_url:
            async with httpx.AsyncClient() as client:
                engine = MediaTransferEngine(client, MemoryObjectStore(), MediaSettings(audio_timeout=0.5))
                assert await engine.transfer_track_media("jamendo-1", f"{base_url}/a.mp3", "") is None
