"""In-process DocumentStore used by tests, the CLI, and ``memory://`` deployments."""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Optional

from taskweave.db.documents import (
    Filter, Sort, Update, apply_update, match_filter, sort_documents, to_jsonable,
)


class InMemoryDocumentStore:
    """Dict-of-dicts store.  Reads and writes hand out deep copies."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _docs(self, collection: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    def _select(self, collection: str, flt: Optional[Filter]) -> list[dict[str, Any]]:
        flt = to_jsonable(flt or {})
        return [d for d in self._docs(collection).values() if match_filter(d, flt)]

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        doc = self._docs(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def find(
        self,
        collection: str,
        flt: Optional[Filter] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> list[dict[str, Any]]:
        docs = sort_documents(self._select(collection, flt), sort)
        docs = docs[skip:]
        if limit is not None:
            docs = docs[:limit]
        return copy.deepcopy(docs)

    async def find_one(
        self, collection: str, flt: Filter, sort: Optional[Sort] = None
    ) -> Optional[dict[str, Any]]:
        docs = await self.find(collection, flt, sort=sort, limit=1)
        return docs[0] if docs else None

    async def count(self, collection: str, flt: Optional[Filter] = None) -> int:
        return len(self._select(collection, flt))

    async def insert(self, collection: str, doc: dict[str, Any]) -> dict[str, Any]:
        doc = to_jsonable(doc)
        async with self._lock:
            docs = self._docs(collection)
            if doc["id"] in docs:
                raise ValueError(f"Duplicate id {doc['id']!r} in {collection}")
            docs[doc["id"]] = copy.deepcopy(doc)
        return doc

    async def update(self, collection: str, flt: Filter, update: Update) -> Optional[dict[str, Any]]:
        async with self._lock:
            matches = self._select(collection, flt)
            if not matches:
                return None
            updated = apply_update(matches[0], to_jsonable(update))
            self._docs(collection)[updated["id"]] = updated
            return copy.deepcopy(updated)

    async def update_many(self, collection: str, flt: Filter, update: Update) -> int:
        async with self._lock:
            matches = self._select(collection, flt)
            update = to_jsonable(update)
            for doc in matches:
                updated = apply_update(doc, update)
                self._docs(collection)[updated["id"]] = updated
            return len(matches)
