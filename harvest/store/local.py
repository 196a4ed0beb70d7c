"""
Local object store: media files under a directory, served from a base URL.

Pairs with `SqliteCatalog` for runs that should not touch the cloud project.
Serving `root` under `public_base_url` is up to the operator (any static file
server will do).
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from urllib.parse import quote

logger = logging.getLogger(__name__)


class LocalObjectStore:
    def __init__(self, root: Path, public_base_url: str) -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def _target(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise ValueError(f"Object path escapes store root: {path}")
        return target

    def _write_sync(self, target: Path, data: bytes, content_type: str) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)
        target.with_name(target.name + ".mime").write_text(content_type, encoding="utf-8")

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        target = self._target(path)
        await asyncio.to_thread(self._write_sync, target, data, content_type)
        logger.debug("Stored %d bytes at %s", len(data), target)
        return f"{self.public_base_url}/{quote(path)}"

    async def close(self) -> None:
        return None
