"""
Store access layer.

The pipeline talks to two external, shared resources:
- a catalog (document store) holding `tracks` and the `import-state` cursors
- an object store holding relocated audio and artwork

Both are consumed through the small protocols below. `open_backends()` is the
one place where configuration and credentials are resolved; the resulting
`Backends` handle is injected into every component that needs store access.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Protocol

from harvest.config import Settings
from harvest.core import CredentialsError

logger = logging.getLogger(__name__)

# Store-side ceilings the pipeline has to respect.
MAX_GET_MANY: Final[int] = 100
MAX_BATCH_WRITES: Final[int] = 500


class _ServerTimestamp:
    """Sentinel replaced by the backend with its own write time."""

    _instance: "_ServerTimestamp | None" = None

    def __new__(cls) -> "_ServerTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP: Final = _ServerTimestamp()


class CatalogStore(Protocol):
    """Document-store operations the pipeline requires."""

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    async def get_many(self, collection: str, ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        """Return the documents that exist among `ids` (at most MAX_GET_MANY)."""
        ...

    async def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None: ...

    async def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None: ...

    async def commit_batch(
        self, collection: str, docs: Sequence[tuple[str, Mapping[str, Any]]]
    ) -> None:
        """Write all `docs` atomically (at most MAX_BATCH_WRITES)."""
        ...

    async def page(
        self, collection: str, *, start_after: str | None, limit: int
    ) -> list[tuple[str, dict[str, Any]]]:
        """Documents ordered by id, strictly after `start_after`."""
        ...

    async def close(self) -> None: ...


class ObjectStore(Protocol):
    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Store `data` under `path` and return its public URL."""
        ...

    async def close(self) -> None: ...


@dataclass(frozen=True, slots=True)
class Backends:
    """Authenticated store handles shared by every pipeline component."""

    catalog: CatalogStore
    objects: ObjectStore

    async def close(self) -> None:
        await self.objects.close()
        await self.catalog.close()


def resolve_service_account(
    settings: Settings, environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """
    Resolve the service-account credential: env var JSON first, then key file.

    Raises CredentialsError when neither is usable.
    """
    env = os.environ if environ is None else environ
    creds = settings.credentials

    raw = env.get(creds.service_account_env)
    if raw:
        try:
            info = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CredentialsError(f"{creds.service_account_env} is not valid JSON: {e}") from e
        source = creds.service_account_env
    elif creds.service_account_file is not None and creds.service_account_file.exists():
        try:
            info = json.loads(creds.service_account_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise CredentialsError(
                f"Could not read service account file {creds.service_account_file}: {e}"
            ) from e
        source = str(creds.service_account_file)
    else:
        raise CredentialsError(
            f"No service account: set {creds.service_account_env} "
            f"or provide {creds.service_account_file}"
        )

    if not isinstance(info, dict) or "project_id" not in info:
        raise CredentialsError(f"Service account from {source} has no project_id")
    logger.info("Using service account for project %s (%s)", info["project_id"], source)
    return info


async def open_backends(
    settings: Settings, environ: Mapping[str, str] | None = None
) -> Backends:
    """
    Resolve configuration and credentials once and open both stores.

    Only the Firebase backends need the service account; a fully local setup
    (sqlite catalog + local object store) runs without one.
    """
    needs_firebase = settings.catalog.backend == "firestore" or settings.storage.backend == "firebase"
    app = None
    if needs_firebase:
        from harvest.store.firebase import init_firebase_app

        app = init_firebase_app(resolve_service_account(settings, environ), settings.storage.bucket)

    catalog: CatalogStore
    if settings.catalog.backend == "firestore":
        from harvest.store.firebase import FirestoreCatalog

        catalog = FirestoreCatalog(app)
    else:
        from harvest.store.sqlite import SqliteCatalog

        sqlite_catalog = SqliteCatalog(settings.catalog.sqlite_path)
        await sqlite_catalog.open()
        await sqlite_catalog.ensure_schema()
        catalog = sqlite_catalog

    objects: ObjectStore
    if settings.storage.backend == "firebase":
        from harvest.store.firebase import FirebaseStorage

        objects = FirebaseStorage(app, settings.storage.bucket)
    else:
        from harvest.store.local import LocalObjectStore

        objects = LocalObjectStore(settings.storage.local_root, settings.storage.public_base_url)

    logger.info(
        "Backends ready: catalog=%s storage=%s", settings.catalog.backend, settings.storage.backend
    )
    return Backends(catalog=catalog, objects=objects)
