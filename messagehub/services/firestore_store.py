"""Firestore implementation of :class:`~messagehub.services.store.DocumentStore`.

Uses the async server client, which is not subject to security rules.
Collection-group lookups on ``integrations`` need a single-field
collection-group index on each looked-up field (``phoneNumberId``,
``pageId``, ``evolutionInstanceName``).
"""

from __future__ import annotations

import logging
from typing import Any

from google.api_core.exceptions import AlreadyExists, NotFound
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from messagehub.services.store import Document, DocumentNotFoundError, DocumentStore

logger = logging.getLogger(__name__)


def _to_dict(snapshot) -> Document:
    return {"id": snapshot.id, **(snapshot.to_dict() or {})}


class FirestoreStore(DocumentStore):
    """Thin async wrapper around ``google.cloud.firestore.AsyncClient``."""

    def __init__(self, project: str | None = None, *, client: firestore.AsyncClient | None = None):
        self._client = client or firestore.AsyncClient(project=project)

    def _collection(self, path: str):
        return self._client.collection(path.strip("/"))

    async def get(self, collection: str, doc_id: str) -> Document | None:
        snapshot = await self._collection(collection).document(doc_id).get()
        return _to_dict(snapshot) if snapshot.exists else None

    async def find(
        self, collection: str, field: str, value: Any, *, limit: int | None = None,
    ) -> list[Document]:
        query = self._collection(collection).where(filter=FieldFilter(field, "==", value))
        if limit is not None:
            query = query.limit(limit)
        return [_to_dict(snap) async for snap in query.stream()]

    async def find_in_group(
        self, group: str, field: str, value: Any, *, limit: int = 1,
    ) -> list[tuple[str, Document]]:
        query = (
            self._client.collection_group(group)
            .where(filter=FieldFilter(field, "==", value))
            .limit(limit)
        )
        return [(snap.reference.path, _to_dict(snap)) async for snap in query.stream()]

    async def latest(self, collection: str, order_by: str, limit: int) -> list[Document]:
        query = (
            self._collection(collection)
            .order_by(order_by, direction=firestore.Query.DESCENDING)
            .limit(limit)
        )
        docs = [_to_dict(snap) async for snap in query.stream()]
        docs.reverse()
        return docs

    async def list(self, collection: str) -> list[Document]:
        return [_to_dict(snap) async for snap in self._collection(collection).stream()]

    async def add(self, collection: str, data: Document) -> str:
        _, ref = await self._collection(collection).add(data)
        return ref.id

    async def create(self, collection: str, doc_id: str, data: Document) -> bool:
        try:
            await self._collection(collection).document(doc_id).create(data)
        except AlreadyExists:
            return False
        return True

    async def set(self, collection: str, doc_id: str, data: Document) -> None:
        await self._collection(collection).document(doc_id).set(data)

    async def update(self, collection: str, doc_id: str, data: Document) -> None:
        try:
            await self._collection(collection).document(doc_id).update(data)
        except NotFound as exc:
            raise DocumentNotFoundError(f"{collection}/{doc_id}") from exc

    async def increment(
        self, collection: str, doc_id: str, field: str, amount: int = 1,
    ) -> None:
        await self.update(collection, doc_id, {field: firestore.Increment(amount)})

    async def count(self, collection: str) -> int:
        results = await self._collection(collection).count(alias="total").get()
        return int(results[0][0].value) if results else 0

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._collection(collection).document(doc_id).delete()
