"""
Tests for the local catalog backend (harvest.store.sqlite) and schema.
"""

from __future__ import annotations

import json
from pathlib import Path

import aiosqlite
import pytest

from harvest.config import CatalogSettings, CredentialSettings, Settings, StorageSettings
from harvest.core import CredentialsError, StoreError
from harvest.store import SERVER_TIMESTAMP, open_backends, resolve_service_account
from harvest.store.local import LocalObjectStore
from harvest.store.schema import SCHEMA_VERSION, ensure_schema
from harvest.store.sqlite import SqliteCatalog


class TestSqliteCatalog:
    """Tests for the document operations."""

    async def test_open_close(self) -> None:
        """Test basic open/close lifecycle."""
        store = SqliteCatalog(":memory:")
        assert not store.is_open

        await store.open()
        assert store.is_open

        await store.close()
        assert not store.is_open

    async def test_requires_open(self) -> None:
        store = SqliteCatalog(":memory:")
        with pytest.raises(RuntimeError):
            await store.get("tracks", "x")

    async def test_set_get(self, catalog: SqliteCatalog) -> None:
        await catalog.set("tracks", "a", {"title": "A", "duration": 10})

        assert await catalog.get("tracks", "a") == {"title": "A", "duration": 10}
        assert await catalog.get("tracks", "missing") is None
        assert await catalog.get("import-state", "a") is None

    async def test_set_replaces(self, catalog: SqliteCatalog) -> None:
        await catalog.set("tracks", "a", {"title": "A", "genre": "Rock"})
        await catalog.set("tracks", "a", {"title": "B"})

        assert await catalog.get("tracks", "a") == {"title": "B"}

    async def test_server_timestamp_is_resolved(self, catalog: SqliteCatalog) -> None:
        await catalog.set("tracks", "a", {"addedAt": SERVER_TIMESTAMP})

        doc = await catalog.get("tracks", "a")
        assert isinstance(doc["addedAt"], str)
        assert doc["addedAt"].startswith("20")

    async def test_get_many(self, catalog: SqliteCatalog) -> None:
        await catalog.commit_batch("tracks", [("a", {"n": 1}), ("b", {"n": 2})])

        found = await catalog.get_many("tracks", ["a", "b", "c"])

        assert found == {"a": {"n": 1}, "b": {"n": 2}}
        assert await catalog.get_many("tracks", []) == {}

    async def test_get_many_ceiling(self, catalog: SqliteCatalog) -> None:
        with pytest.raises(ValueError):
            await catalog.get_many("tracks", [str(i) for i in range(101)])

    async def test_batch_ceiling(self, catalog: SqliteCatalog) -> None:
        with pytest.raises(ValueError):
            await catalog.commit_batch("tracks", [(str(i), {}) for i in range(501)])
        assert await catalog.count("tracks") == 0

    async def test_update_merges(self, catalog: SqliteCatalog) -> None:
        await catalog.set("tracks", "a", {"title": "A", "audioUrl": "https://old"})
        await catalog.update("tracks", "a", {"audioUrl": "https://new"})

        assert await catalog.get("tracks", "a") == {"title": "A", "audioUrl": "https://new"}

    async def test_update_missing_document(self, catalog: SqliteCatalog) -> None:
        with pytest.raises(StoreError):
            await catalog.update("tracks", "ghost", {"x": 1})

    async def test_page_orders_by_id(self, catalog: SqliteCatalog) -> None:
        await catalog.commit_batch("tracks", [(f"t{i}", {"i": i}) for i in (3, 1, 4, 2, 5)])

        first = await catalog.page("tracks", start_after=None, limit=2)
        rest = await catalog.page("tracks", start_after=first[-1][0], limit=10)

        assert [doc_id for doc_id, _ in first] == ["t1", "t2"]
        assert [doc_id for doc_id, _ in rest] == ["t3", "t4", "t5"]

    async def test_unicode_survives(self, catalog: SqliteCatalog) -> None:
        await catalog.set("tracks", "a", {"title": "Björk – Jóga"})
        assert (await catalog.get("tracks", "a"))["title"] == "Björk – Jóga"


class TestSchema:
    """Tests for forward-only schema migrations."""

    async def test_fresh_database_gets_current_version(self) -> None:
        async with aiosqlite.connect(":memory:") as conn:
            await ensure_schema(conn)
            cursor = await conn.execute("PRAGMA user_version;")
            row = await cursor.fetchone()
            assert row[0] == SCHEMA_VERSION

    async def test_upgrade_from_v1(self) -> None:
        async with aiosqlite.connect(":memory:") as conn:
            await conn.execute(
                "CREATE TABLE documents (collection TEXT NOT NULL, id TEXT NOT NULL, "
                "data TEXT NOT NULL, PRIMARY KEY (collection, id))"
            )
            await conn.execute(
                "INSERT INTO documents VALUES ('tracks', 'a', ?)", (json.dumps({"title": "A"}),)
            )
            await conn.execute("PRAGMA user_version = 1;")
            await conn.commit()

            await ensure_schema(conn)

            cursor = await conn.execute("SELECT data, updated_at FROM documents")
            row = await cursor.fetchone()
            assert json.loads(row[0]) == {"title": "A"}
            assert row[1] is None

    async def test_newer_schema_rejected(self) -> None:
        async with aiosqlite.connect(":memory:") as conn:
            await conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION + 1};")
            with pytest.raises(RuntimeError):
                await ensure_schema(conn)


class TestLocalObjectStore:
    """Tests for the directory-backed object store."""

    async def test_upload(self, tmp_path: Path) -> None:
        store = LocalObjectStore(tmp_path, "http://localhost:8000/media/")

        url = await store.upload("spotfly-audio/jamendo 1.mp3", b"ID3", "audio/mpeg")

        assert url == "http://localhost:8000/media/spotfly-audio/jamendo%201.mp3"
        assert (tmp_path / "spotfly-audio" / "jamendo 1.mp3").read_bytes() == b"ID3"
        assert (tmp_path / "spotfly-audio" / "jamendo 1.mp3.mime").read_text() == "audio/mpeg"

    async def test_path_escape_rejected(self, tmp_path: Path) -> None:
        store = LocalObjectStore(tmp_path / "root", "http://localhost")
        with pytest.raises(ValueError):
            await store.upload("../outside.mp3", b"x", "audio/mpeg")


class TestBackends:
    """Tests for credential resolution and backend wiring."""

    def test_service_account_from_env(self) -> None:
        info = resolve_service_account(
            Settings(), {"FIREBASE_SERVICE_ACCOUNT": json.dumps({"project_id": "spotfly-app"})}
        )
        assert info["project_id"] == "spotfly-app"

    def test_service_account_from_file(self, tmp_path: Path) -> None:
        key = tmp_path / "key.json"
        key.write_text(json.dumps({"project_id": "from-file"}), encoding="utf-8")
        settings = Settings(credentials=CredentialSettings(service_account_file=key))

        assert resolve_service_account(settings, {})["project_id"] == "from-file"

    def test_missing_service_account(self, tmp_path: Path) -> None:
        settings = Settings(
            credentials=CredentialSettings(service_account_file=tmp_path / "none.json")
        )
        with pytest.raises(CredentialsError):
            resolve_service_account(settings, {})

    @pytest.mark.parametrize("raw", ["not json", json.dumps({"client_email": "x"})])
    def test_unusable_service_account(self, raw: str) -> None:
        with pytest.raises(CredentialsError):
            resolve_service_account(Settings(), {"FIREBASE_SERVICE_ACCOUNT": raw})

    async def test_local_backends_need_no_credentials(self, tmp_path: Path) -> None:
        settings = Settings(
            catalog=CatalogSettings(backend="sqlite", sqlite_path=tmp_path / "c.db"),
            storage=StorageSettings(backend="local", local_root=tmp_path / "media"),
        )

        backends = await open_backends(settings, environ={})
        try:
            await backends.catalog.set("tracks", "a", {"title": "A"})
            assert await backends.catalog.get("tracks", "a") == {"title": "A"}
            assert isinstance(backends.objects, LocalObjectStore)
        finally:
            await backends.close()
