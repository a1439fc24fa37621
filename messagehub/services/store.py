"""Document-store collaborator used by the response engine.

The engine only needs a small, Firestore-shaped surface: read-by-id,
equality filters (including across every collection with the same name),
an ordered-limited read, inserts, updates, an insert-if-absent used for
idempotency markers, and an atomic increment.  No cross-document
transactions are assumed.

Collections are addressed by slash-separated paths, e.g.
``organizations/org1/conversations/conv1/messages``.  Documents are returned
as plain dicts with their id under the ``"id"`` key.

:class:`InMemoryStore` backs the test-suite and local development; the
Firestore implementation lives in :mod:`messagehub.services.firestore_store`.
"""

from __future__ import annotations

import copy
import itertools
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any

logger = logging.getLogger(__name__)

Document = dict[str, Any]


class DocumentStore(ABC):
    """Async document-store interface."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Document | None:
        """Return the document or ``None`` if it does not exist."""

    @abstractmethod
    async def find(
        self, collection: str, field: str, value: Any, *, limit: int | None = None,
    ) -> list[Document]:
        """Return documents where ``field == value``."""

    @abstractmethod
    async def find_in_group(
        self, group: str, field: str, value: Any, *, limit: int = 1,
    ) -> list[tuple[str, Document]]:
        """Equality lookup across every collection named *group*.

        Returns ``(document_path, document)`` pairs so callers can recover
        the parent documents from the path.
        """

    @abstractmethod
    async def latest(self, collection: str, order_by: str, limit: int) -> list[Document]:
        """Return the last *limit* documents by *order_by*, oldest first."""

    @abstractmethod
    async def list(self, collection: str) -> list[Document]:
        """Return every document in *collection* in insertion/id order."""

    @abstractmethod
    async def add(self, collection: str, data: Document) -> str:
        """Insert with a generated id and return the id."""

    @abstractmethod
    async def create(self, collection: str, doc_id: str, data: Document) -> bool:
        """Insert under *doc_id* only if absent.  Returns ``False`` if it existed."""

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Document) -> None:
        """Insert or overwrite under *doc_id*."""

    @abstractmethod
    async def update(self, collection: str, doc_id: str, data: Document) -> None:
        """Merge *data* into an existing document."""

    @abstractmethod
    async def increment(
        self, collection: str, doc_id: str, field: str, amount: int = 1,
    ) -> None:
        """Atomically add *amount* to a numeric field."""

    @abstractmethod
    async def count(self, collection: str) -> int:
        """Number of documents in *collection*."""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Remove a document (no-op if missing)."""


class DocumentNotFoundError(LookupError):
    """Raised by :meth:`DocumentStore.update` when the target is missing."""


class InMemoryStore(DocumentStore):
    """Dict-backed store.  Every read and write copies, like a real store.

    All operations complete without awaiting anything, so under asyncio each
    one is atomic with respect to other coroutines.
    """

    def __init__(self) -> None:
        # collection path → (doc id → data)
        self._collections: dict[str, OrderedDict[str, Document]] = {}
        self._ids = itertools.count(1)

    # ── Fixtures ─────────────────────────────────────────────────────

    def load_fixture(self, fixture: dict[str, dict[str, Document]]) -> None:
        """Bulk-load ``{collection_path: {doc_id: data}}``."""
        for collection, docs in fixture.items():
            bucket = self._bucket(collection)
            for doc_id, data in docs.items():
                bucket[doc_id] = copy.deepcopy(data)

    def dump(self, collection: str) -> list[Document]:
        """Synchronous snapshot of a collection (handy in tests)."""
        return [self._with_id(k, v) for k, v in self._collections.get(collection, {}).items()]

    # ── Internal helpers ─────────────────────────────────────────────

    def _bucket(self, collection: str) -> OrderedDict[str, Document]:
        return self._collections.setdefault(collection.strip("/"), OrderedDict())

    @staticmethod
    def _with_id(doc_id: str, data: Document) -> Document:
        return {"id": doc_id, **copy.deepcopy(data)}

    def _new_id(self) -> str:
        return f"doc{next(self._ids):06d}"

    # ── DocumentStore API ────────────────────────────────────────────

    async def get(self, collection: str, doc_id: str) -> Document | None:
        data = self._collections.get(collection.strip("/"), {}).get(doc_id)
        return None if data is None else self._with_id(doc_id, data)

    async def find(
        self, collection: str, field: str, value: Any, *, limit: int | None = None,
    ) -> list[Document]:
        matches = [
            self._with_id(doc_id, data)
            for doc_id, data in self._collections.get(collection.strip("/"), {}).items()
            if data.get(field) == value
        ]
        return matches if limit is None else matches[:limit]

    async def find_in_group(
        self, group: str, field: str, value: Any, *, limit: int = 1,
    ) -> list[tuple[str, Document]]:
        results: list[tuple[str, Document]] = []
        for path, docs in self._collections.items():
            if path.rsplit("/", 1)[-1] != group:
                continue
            for doc_id, data in docs.items():
                if data.get(field) == value:
                    results.append((f"{path}/{doc_id}", self._with_id(doc_id, data)))
                    if len(results) >= limit:
                        return results
        return results

    async def latest(self, collection: str, order_by: str, limit: int) -> list[Document]:
        docs = await self.list(collection)
        # Stable sort keeps insertion order for equal timestamps
        docs.sort(key=lambda d: (d.get(order_by) is not None, d.get(order_by) or 0))
        return docs[-limit:] if limit else []

    async def list(self, collection: str) -> list[Document]:
        return [
            self._with_id(doc_id, data)
            for doc_id, data in self._collections.get(collection.strip("/"), {}).items()
        ]

    async def add(self, collection: str, data: Document) -> str:
        doc_id = self._new_id()
        self._bucket(collection)[doc_id] = copy.deepcopy(data)
        return doc_id

    async def create(self, collection: str, doc_id: str, data: Document) -> bool:
        bucket = self._bucket(collection)
        if doc_id in bucket:
            return False
        bucket[doc_id] = copy.deepcopy(data)
        return True

    async def set(self, collection: str, doc_id: str, data: Document) -> None:
        self._bucket(collection)[doc_id] = copy.deepcopy(data)

    async def update(self, collection: str, doc_id: str, data: Document) -> None:
        bucket = self._bucket(collection)
        if doc_id not in bucket:
            raise DocumentNotFoundError(f"{collection}/{doc_id}")
        bucket[doc_id].update(copy.deepcopy(data))

    async def increment(
        self, collection: str, doc_id: str, field: str, amount: int = 1,
    ) -> None:
        bucket = self._bucket(collection)
        if doc_id not in bucket:
            raise DocumentNotFoundError(f"{collection}/{doc_id}")
        bucket[doc_id][field] = (bucket[doc_id].get(field) or 0) + amount

    async def count(self, collection: str) -> int:
        return len(self._collections.get(collection.strip("/"), {}))

    async def delete(self, collection: str, doc_id: str) -> None:
        self._collections.get(collection.strip("/"), {}).pop(doc_id, None)


def create_store(backend: str = "memory", project: str | None = None) -> DocumentStore:
    """Store for a ``STORE_BACKEND`` value (``memory`` or ``firestore``)."""
    if backend == "firestore":
        from messagehub.services.firestore_store import FirestoreStore

        return FirestoreStore(project=project)
    if backend != "memory":
        logger.warning("Unknown store backend %r; using the in-memory store", backend)
    return InMemoryStore()
