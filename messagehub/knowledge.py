"""Knowledge-base retrieval for prompt grounding.

For every knowledge base assigned to an agent the retriever loads the
metadata and all rows, ranks the rows against the customer's message and
keeps a bounded subset:

* query has terms/years → top ``RANKED_ROW_LIMIT`` rows with score > 0
* nothing matched, or empty query → first ``FALLBACK_ROW_LIMIT`` rows

The budget keeps the prompt small however large a base is.  Loading is
best-effort: a base that is missing or fails to load is skipped with a
warning and never aborts the others.

Full snapshots stay in an :class:`LRUCache` keyed by ``(org, kb)`` so the
``query_database`` tool can search every row later in the same run without
touching the store again.  A retriever also keeps the snapshots it
loaded itself, so a base the cache evicted or refused as too large is still
searchable for the rest of that run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from messagehub.search import SearchTerms, expand_search_terms, rank_rows
from messagehub.services.cache import LRUCache, kb_cache_key
from messagehub.services.crm import kb_rows_path, knowledge_bases_path
from messagehub.services.store import DocumentStore

logger = logging.getLogger(__name__)

RANKED_ROW_LIMIT = 30
FALLBACK_ROW_LIMIT = 20


@dataclass
class KnowledgeSnapshot:
    """Metadata plus every row of one knowledge base."""

    id: str
    name: str
    description: str = ""
    columns: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)

    def display_columns(self) -> list[str]:
        """Advisory column list, or the keys of the first row."""
        if self.columns:
            return list(self.columns)
        return list(self.rows[0].keys()) if self.rows else []


@dataclass
class RetrievedBase:
    """The rows of one base selected for the prompt."""

    id: str
    name: str
    description: str
    columns: list[str]
    rows: list[dict[str, Any]]
    total_rows: int


def select_rows(rows: list[dict[str, Any]], search: SearchTerms) -> list[dict[str, Any]]:
    """Apply the ranked / fallback row budget."""
    if not search.is_empty:
        ranked = rank_rows(rows, search, RANKED_ROW_LIMIT)
        if ranked:
            return ranked
    return rows[:FALLBACK_ROW_LIMIT]


class KnowledgeRetriever:
    """Loads, caches and ranks knowledge-base rows for one run.

    Create one per auto-responder run or console turn; *cache* may outlive it.
    """

    def __init__(self, store: DocumentStore, cache: LRUCache | None = None) -> None:
        self._store = store
        self._cache = cache if cache is not None else LRUCache()
        self._loaded: dict[str, KnowledgeSnapshot] = {}

    async def load(self, org_id: str, kb_id: str) -> KnowledgeSnapshot | None:
        """Snapshot of one base, from the cache when possible."""
        key = kb_cache_key(org_id, kb_id)
        cached = self._loaded.get(key) or self._cache.get(key)
        if cached is not None:
            self._loaded[key] = cached
            return cached

        meta = await self._store.get(knowledge_bases_path(org_id), kb_id)
        if meta is None:
            return None

        rows = []
        for doc in await self._store.list(kb_rows_path(org_id, kb_id)):
            doc.pop("id", None)
            rows.append(doc)

        snapshot = KnowledgeSnapshot(
            id=kb_id,
            name=meta.get("name") or kb_id,
            description=meta.get("description") or "",
            columns=[c for c in (meta.get("columns") or []) if c != "id"],
            rows=rows,
        )
        self._loaded[key] = snapshot
        self._cache.put(key, snapshot)
        return snapshot

    def cached(self, org_id: str, kb_id: str) -> KnowledgeSnapshot | None:
        """Snapshot already loaded by this retriever, without any I/O."""
        key = kb_cache_key(org_id, kb_id)
        return self._loaded.get(key) or self._cache.get(key)

    async def retrieve(
        self, org_id: str, kb_ids: list[str], query: str | SearchTerms,
    ) -> list[RetrievedBase]:
        """Rank each base against *query* and return the bounded subsets."""
        search = query if isinstance(query, SearchTerms) else expand_search_terms(query)

        results: list[RetrievedBase] = []
        for kb_id in kb_ids:
            try:
                snapshot = await self.load(org_id, kb_id)
            except Exception:
                logger.warning(
                    "Knowledge base %s of org %s could not be loaded; skipping",
                    kb_id, org_id, exc_info=True,
                )
                continue
            if snapshot is None:
                logger.warning("Knowledge base %s not found in org %s; skipping", kb_id, org_id)
                continue

            results.append(
                RetrievedBase(
                    id=snapshot.id,
                    name=snapshot.name,
                    description=snapshot.description,
                    columns=snapshot.display_columns(),
                    rows=select_rows(snapshot.rows, search),
                    total_rows=len(snapshot.rows),
                )
            )
        return results


async def replace_rows(
    store: DocumentStore,
    org_id: str,
    kb_id: str,
    rows: list[dict[str, Any]],
    *,
    columns: list[str] | None = None,
) -> int:
    """Full re-import: delete every old row, write *rows*, refresh metadata.

    Callers must invalidate any cached snapshot of the base afterwards.
    Returns the number of rows written.
    """
    path = kb_rows_path(org_id, kb_id)
    for old in await store.list(path):
        await store.delete(path, old["id"])

    for index, row in enumerate(rows):
        await store.set(path, f"row{index:06d}", row)

    if columns is None:
        columns = list(rows[0].keys()) if rows else []
    await store.update(
        knowledge_bases_path(org_id), kb_id,
        {"columns": columns, "rowCount": len(rows)},
    )
    logger.info("Re-imported %d rows into knowledge base %s of org %s", len(rows), kb_id, org_id)
    return len(rows)
