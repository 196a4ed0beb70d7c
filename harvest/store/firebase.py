"""
Firebase backends: Firestore catalog + Cloud Storage bucket.

Both are built on the `firebase-admin` SDK:
- Firestore via the async client (`firebase_admin.firestore_async`)
- Storage via the (blocking) bucket API, called through `asyncio.to_thread`
  so uploads do not stall the event loop.

Public media URLs use the Firebase download-token scheme so the mobile client
can stream them without signing requests.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Mapping, Sequence
from typing import Any
from urllib.parse import quote

import firebase_admin
from firebase_admin import credentials, firestore_async, storage
from google.api_core import exceptions as gexc
from google.cloud import firestore

from harvest.core import CredentialsError, StoreError
from harvest.store import MAX_BATCH_WRITES, MAX_GET_MANY, SERVER_TIMESTAMP

logger = logging.getLogger(__name__)

DOWNLOAD_URL = "https://firebasestorage.googleapis.com/v0/b/{bucket}/o/{path}?alt=media&token={token}"


def init_firebase_app(service_account: Mapping[str, Any], bucket: str) -> firebase_admin.App:
    """Initialize (or reuse) the default Firebase app."""
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass
    try:
        cred = credentials.Certificate(dict(service_account))
        app = firebase_admin.initialize_app(cred, {"storageBucket": bucket})
    except ValueError as e:
        raise CredentialsError(f"Invalid service account: {e}") from e
    logger.info("Firebase Admin initialized")
    return app


def _resolve(data: Mapping[str, Any]) -> dict[str, Any]:
    return {k: (firestore.SERVER_TIMESTAMP if v is SERVER_TIMESTAMP else v) for k, v in data.items()}


class FirestoreCatalog:
    def __init__(self, app: firebase_admin.App | None) -> None:
        self._client = firestore_async.client(app)

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        try:
            snap = await self._client.collection(collection).document(doc_id).get()
        except gexc.GoogleAPIError as e:
            raise StoreError(f"get {collection}/{doc_id} failed: {e}") from e
        return snap.to_dict() if snap.exists else None

    async def get_many(self, collection: str, ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        if len(ids) > MAX_GET_MANY:
            raise ValueError(f"get_many accepts at most {MAX_GET_MANY} ids, got {len(ids)}")
        if not ids:
            return {}
        col = self._client.collection(collection)
        refs = [col.document(doc_id) for doc_id in ids]
        found: dict[str, dict[str, Any]] = {}
        try:
            async for snap in self._client.get_all(refs):
                if snap.exists:
                    found[snap.id] = snap.to_dict() or {}
        except gexc.GoogleAPIError as e:
            raise StoreError(f"get_many on {collection} failed: {e}") from e
        return found

    async def set(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        try:
            await self._client.collection(collection).document(doc_id).set(_resolve(data))
        except gexc.GoogleAPIError as e:
            raise StoreError(f"set {collection}/{doc_id} failed: {e}") from e

    async def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        try:
            await self._client.collection(collection).document(doc_id).update(_resolve(fields))
        except gexc.GoogleAPIError as e:
            raise StoreError(f"update {collection}/{doc_id} failed: {e}") from e

    async def commit_batch(
        self, collection: str, docs: Sequence[tuple[str, Mapping[str, Any]]]
    ) -> None:
        if len(docs) > MAX_BATCH_WRITES:
            raise ValueError(f"A batch holds at most {MAX_BATCH_WRITES} writes, got {len(docs)}")
        col = self._client.collection(collection)
        batch = self._client.batch()
        for doc_id, data in docs:
            batch.set(col.document(doc_id), _resolve(data))
        try:
            await batch.commit()
        except gexc.GoogleAPIError as e:
            raise StoreError(f"batch commit on {collection} failed: {e}") from e

    async def page(
        self, collection: str, *, start_after: str | None, limit: int
    ) -> list[tuple[str, dict[str, Any]]]:
        col = self._client.collection(collection)
        query = col.order_by("__name__").limit(int(limit))
        if start_after:
            query = query.start_after({"__name__": col.document(start_after)})
        try:
            return [(snap.id, snap.to_dict() or {}) async for snap in query.stream()]
        except gexc.GoogleAPIError as e:
            raise StoreError(f"paging {collection} failed: {e}") from e

    async def close(self) -> None:
        # The SDK owns the gRPC channel for the lifetime of the app.
        return None


class FirebaseStorage:
    def __init__(self, app: firebase_admin.App | None, bucket: str) -> None:
        self._bucket_name = bucket
        self._bucket = storage.bucket(bucket, app=app)

    def _upload_sync(self, path: str, data: bytes, content_type: str, token: str) -> None:
        blob = self._bucket.blob(path)
        blob.metadata = {"firebaseStorageDownloadTokens": token}
        blob.upload_from_string(data, content_type=content_type)

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        token = str(uuid.uuid4())
        try:
            await asyncio.to_thread(self._upload_sync, path, data, content_type, token)
        except gexc.GoogleAPIError as e:
            raise StoreError(f"upload {path} failed: {e}") from e
        return DOWNLOAD_URL.format(bucket=self._bucket_name, path=quote(path, safe=""), token=token)

    async def close(self) -> None:
        return None
