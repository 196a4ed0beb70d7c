"""
Local catalog backend: SQLite + aiosqlite, async/await friendly.

`SqliteCatalog` implements the `CatalogStore` protocol on a single document
table. It is used for local runs (no cloud project needed) and by the test
suite; it enforces the same per-call ceilings as the remote store so that
chunking bugs show up locally too.

Usage:
    catalog = SqliteCatalog("harvest.db")
    await catalog.open()
    await catalog.ensure_schema()
    ... queries ...
    await catalog.close()
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from harvest.core import StoreError
from harvest.store import MAX_BATCH_WRITES, MAX_GET_MANY, SERVER_TIMESTAMP
from harvest.store.schema import ensure_schema as ensure_schema_sql


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _encode(data: Mapping[str, Any], now: str) -> str:
    resolved = {k: (now if v is SERVER_TIMESTAMP else v) for k, v in data.items()}
    return json.dumps(resolved, ensure_ascii=False, sort_keys=True)


class SqliteCatalog:
    """
    Async document store on top of SQLite.

    Notes:
    - Connections are not pooled; we keep a single connection.
    - `commit_batch` runs in one transaction and rolls back on any error.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._conn: aiosqlite.Connection | None = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open(self) -> None:
        if self._conn is not None:
            return
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute("PRAGMA journal_mode = WAL;")
        await self._conn.execute("PRAGMA synchronous = NORMAL;")

    async def close(self) -> None:
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("SqliteCatalog is not open. Call await catalog.open() first.")
        return self._conn

    async def ensure_schema(self) -> None:
        conn = self._require_conn()
        await ensure_schema_sql(conn)

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        conn = self._require_conn()
        cursor = await conn.execute(
            "SELECT data FROM documents WHERE collection = ? AND id = ?",
            (collection, doc_id),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return json.loads(row["data"])

    async def get_many(self, collection: str, ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        if len(ids) > MAX_GET_MANY:
            raise ValueError(f"get_many accepts at most {MAX_GET_MANY} ids, got {len(ids)}")
        if not ids:
            return {}
        conn = self._require_conn()
        placeholders = ", ".join("?" for _ in ids)
        cursor = await conn.execute(
            f"SELECT id, data FROM documents WHERE collection = ? AND id IN ({placeholders})",
            (collection, *ids),
        )
        rows = await cursor.fetchall()
        return {r["id"]: json.loads(r["data"]) for r in rows}

    async def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        await self.commit_batch(collection, [(doc_id, data)])

    async def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        conn = self._require_conn()
        now = _now()
        try:
            cursor = await conn.execute(
                "SELECT data FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            )
            row = await cursor.fetchone()
            if row is None:
                raise StoreError(f"No document to update: {collection}/{doc_id}")
            merged = {**json.loads(row["data"]), **fields}
            await conn.execute(
                "UPDATE documents SET data = ?, updated_at = ? WHERE collection = ? AND id = ?",
                (_encode(merged, now), now, collection, doc_id),
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise

    async def commit_batch(
        self, collection: str, docs: Sequence[tuple[str, Mapping[str, Any]]]
    ) -> None:
        if len(docs) > MAX_BATCH_WRITES:
            raise ValueError(f"A batch holds at most {MAX_BATCH_WRITES} writes, got {len(docs)}")
        conn = self._require_conn()
        now = _now()
        try:
            await conn.executemany(
                """
                INSERT INTO documents(collection, id, data, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(collection, id) DO UPDATE SET
                    data       = excluded.data,
                    updated_at = excluded.updated_at
                """,
                [(collection, doc_id, _encode(data, now), now) for doc_id, data in docs],
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise

    async def page(
        self, collection: str, *, start_after: str | None, limit: int
    ) -> list[tuple[str, dict[str, Any]]]:
        conn = self._require_conn()
        cursor = await conn.execute(
            """
            SELECT id, data FROM documents
            WHERE collection = ? AND id > ?
            ORDER BY id
            LIMIT ?
            """,
            (collection, start_after or "", int(limit)),
        )
        rows = await cursor.fetchall()
        return [(r["id"], json.loads(r["data"])) for r in rows]

    async def count(self, collection: str) -> int:
        conn = self._require_conn()
        cursor = await conn.execute(
            "SELECT COUNT(*) AS c FROM documents WHERE collection = ?", (collection,)
        )
        row = await cursor.fetchone()
        return int(row["c"]) if row else 0
