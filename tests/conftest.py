"""
Shared fixtures for the harvest test suite.

Stores are real where that is cheap (SQLite in memory) and in-memory fakes
where the real one needs a cloud project (object storage).
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

import httpx
import pytest

from harvest.core.models import TrackRecord
from harvest.core.normalize import sanitize
from harvest.store.sqlite import SqliteCatalog


class MemoryObjectStore:
    """ObjectStore that keeps uploads in a dict."""

    def __init__(self, fail_prefixes: tuple[str, ...] = ()) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.fail_prefixes = fail_prefixes

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        if self.fail_prefixes and path.startswith(self.fail_prefixes):
            raise RuntimeError("bucket unavailable")
        self.objects[path] = (data, content_type)
        return f"https://storage.test/{path}"

    async def close(self) -> None:
        return None


def make_track(track_id: str, **fields: Any) -> TrackRecord:
    """Build a valid record; keyword arguments override the sample values."""
    partial: dict[str, Any] = {
        "id": track_id,
        "title": f"Song {track_id}",
        "artist": "Test Artist",
        "album": "Test Album",
        "duration": 180,
        "artwork": f"https://img.example.com/{track_id}.jpg",
        "audio_url": f"https://audio.example.com/{track_id}.mp3",
        "genre": "Rock",
    }
    partial.update(fields)
    return sanitize(partial)


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def json_response(payload: Any, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json=payload)


def track_documents(count: int, **overrides: Any) -> list[tuple[str, Mapping[str, Any]]]:
    """`count` catalog documents with zero-padded ids, so id order == creation order."""
    docs = []
    for i in range(1, count + 1):
        fields = {"audio_url": f"https://prod-1.storage.jamendo.com/?trackid={i}", **overrides}
        track = make_track(f"jamendo-{i:03d}", **fields)
        docs.append((track.id, track.to_document()))
    return docs


@pytest.fixture
async def catalog() -> SqliteCatalog:
    """An in-memory catalog with the schema in place."""
    store = SqliteCatalog(":memory:")
    await store.open()
    await store.ensure_schema()
    yield store
    await store.close()


@pytest.fixture
def objects() -> MemoryObjectStore:
    return MemoryObjectStore()


def jamendo_track(n: int, **fields: Any) -> dict[str, Any]:
    """One item of a Jamendo /tracks listing."""
    track: dict[str, Any] = {
        "id": str(n),
        "name": f"Track {n}",
        "duration": 200 + n,
        "artist_id": "77",
        "artist_name": "Kevin",
        "album_id": "55",
        "album_name": "Morning",
        "album_image": f"https://usercontent.jamendo.com/?type=album&id={n}",
        "audio": f"https://prod-1.storage.jamendo.com/?trackid={n}",
        "license_ccurl": "http://creativecommons.org/licenses/by/3.0/",
        "musicinfo": {"tags": {"genres": ["rock"]}},
    }
    track.update(fields)
    return track


def jamendo_page(tracks: list[dict[str, Any]], code: int = 0) -> httpx.Response:
    return json_response({"headers": {"status": "success", "code": code}, "results": tracks})
