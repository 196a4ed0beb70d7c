"""
Tests for harvest.core.cursor (cursor persistence and per-source harvesting).
"""

from __future__ import annotations

from unittest.mock import AsyncMock

from harvest.core import StoreError
from harvest.core.cursor import CursorStore, harvest_source
from harvest.core.models import Cursor, SourceResult
from harvest.store.sqlite import SqliteCatalog


class _FakeAdapter:
    """Just enough of a SourceAdapter for harvest_source()."""

    name = "jamendo"

    def __init__(self, next_cursor: Cursor | None) -> None:
        self.next_cursor = next_cursor
        self.seen: list[Cursor | None] = []

    async def fetch(self, cursor: Cursor | None = None) -> SourceResult:
        self.seen.append(cursor)
        return SourceResult(source_name=self.name, next_cursor=self.next_cursor)


class TestCursorStore:
    """Tests for loading and saving cursors."""

    async def test_missing_cursor(self, catalog: SqliteCatalog) -> None:
        assert await CursorStore(catalog).load("jamendo") is None

    async def test_save_then_load(self, catalog: SqliteCatalog) -> None:
        store = CursorStore(catalog)
        cursor = Cursor(query_index=3, sort_index=2, page_offset=200, last_run="2026-05-01T00:00:00+00:00")

        assert await store.save("jamendo", cursor)
        assert await store.load("jamendo") == cursor
        assert await catalog.get("import-state", "jamendo") == {
            "queryIndex": 3,
            "sortIndex": 2,
            "pageOffset": 200,
            "lastRun": "2026-05-01T00:00:00+00:00",
        }

    async def test_sources_are_independent(self, catalog: SqliteCatalog) -> None:
        store = CursorStore(catalog)
        await store.save("jamendo", Cursor(query_index=1))
        await store.save("ccmixter", Cursor(query_index=4))

        assert (await store.load("jamendo")).query_index == 1
        assert (await store.load("ccmixter")).query_index == 4

    async def test_malformed_cursor_is_ignored(self, catalog: SqliteCatalog) -> None:
        await catalog.set("import-state", "jamendo", {"queryIndex": "seven"})
        assert await CursorStore(catalog).load("jamendo") is None

    async def test_load_failure_is_not_fatal(self, catalog: SqliteCatalog) -> None:
        catalog.get = AsyncMock(side_effect=StoreError("unavailable"))
        assert await CursorStore(catalog).load("jamendo") is None

    async def test_save_failure_returns_false(self, catalog: SqliteCatalog) -> None:
        catalog.set = AsyncMock(side_effect=StoreError("unavailable"))
        assert await CursorStore(catalog).save("jamendo", Cursor()) is False

    async def test_custom_collection(self, catalog: SqliteCatalog) -> None:
        await CursorStore(catalog, "state").save("ia", Cursor(page_offset=100))
        assert await catalog.get("state", "ia") is not None
        assert await catalog.get("import-state", "ia") is None


class TestMigrationMarker:
    """Tests for the storage-migration resume marker."""

    async def test_roundtrip(self, catalog: SqliteCatalog) -> None:
        store = CursorStore(catalog)
        assert await store.load_marker() is None

        assert await store.save_marker("jamendo-040")
        assert await store.load_marker() == "jamendo-040"

    async def test_save_failure(self, catalog: SqliteCatalog) -> None:
        catalog.set = AsyncMock(side_effect=StoreError("unavailable"))
        assert await CursorStore(catalog).save_marker("x") is False


class TestHarvestSource:
    """Tests for the load/fetch/save cycle of one source."""

    async def test_first_run_starts_without_cursor(self, catalog: SqliteCatalog) -> None:
        adapter = _FakeAdapter(Cursor(query_index=1))
        await harvest_source(adapter, CursorStore(catalog))

        assert adapter.seen == [None]
        assert (await CursorStore(catalog).load("jamendo")).query_index == 1

    async def test_saved_cursor_is_handed_to_adapter(self, catalog: SqliteCatalog) -> None:
        store = CursorStore(catalog)
        await store.save("jamendo", Cursor(query_index=5))
        adapter = _FakeAdapter(Cursor(query_index=6))

        await harvest_source(adapter, store)

        assert adapter.seen[0].query_index == 5
        assert (await store.load("jamendo")).query_index == 6

    async def test_no_persist(self, catalog: SqliteCatalog) -> None:
        result = await harvest_source(_FakeAdapter(Cursor(query_index=1)), CursorStore(catalog), persist=False)

        assert result.next_cursor.query_index == 1
        assert await CursorStore(catalog).load("jamendo") is None

    async def test_unchanged_cursor_not_saved(self, catalog: SqliteCatalog) -> None:
        store = CursorStore(catalog)
        saved = Cursor(query_index=2)
        await store.save("jamendo", saved)
        store.save = AsyncMock()

        await harvest_source(_FakeAdapter(saved), store)

        store.save.assert_not_called()
