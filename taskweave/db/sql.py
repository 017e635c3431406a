"""DocumentStore backed by one SQLAlchemy ``documents`` table.

Plain string matches on ``id``, ``workflow_run_id`` and ``parent_id`` are
pushed into the SQL query; the full filter is then evaluated in Python over
the selected rows so the same operators work on every SQL backend.  Writes
are serialized under an asyncio.Lock, which makes find-and-modify atomic
within one process.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select

from taskweave.db.documents import (
    Filter, Sort, Update, apply_update, match_filter, sort_documents, to_jsonable,
)
from taskweave.db.models import DocumentModel

# Body fields mirrored into indexed columns.
INDEXED_FIELDS = ("workflow_run_id", "parent_id")


def _indexed_values(doc: dict[str, Any]) -> dict[str, Any]:
    return {name: doc.get(name) if isinstance(doc.get(name), str) else None for name in INDEXED_FIELDS}


class SqlDocumentStore:

    def __init__(self, engine, session_factory) -> None:
        self._engine = engine
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        await self._engine.dispose()

    async def _rows(self, session, collection: str, flt: Filter) -> list[DocumentModel]:
        query = select(DocumentModel).where(DocumentModel.collection == collection)
        for name in ("id",) + INDEXED_FIELDS:
            if isinstance(flt.get(name), str):
                query = query.where(getattr(DocumentModel, name) == flt[name])
        result = await session.execute(query.order_by(DocumentModel.created_at))
        return list(result.scalars().all())

    async def _select(self, collection: str, flt: Optional[Filter]) -> list[dict[str, Any]]:
        flt = to_jsonable(flt or {})
        async with self._session_factory() as session:
            rows = await self._rows(session, collection, flt)
        return [row.body for row in rows if match_filter(row.body, flt)]

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        async with self._session_factory() as session:
            row = await session.get(DocumentModel, (collection, doc_id))
            return dict(row.body) if row is not None else None

    async def find(
        self,
        collection: str,
        flt: Optional[Filter] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> list[dict[str, Any]]:
        docs = sort_documents(await self._select(collection, flt), sort)[skip:]
        return docs[:limit] if limit is not None else docs

    async def find_one(
        self, collection: str, flt: Filter, sort: Optional[Sort] = None
    ) -> Optional[dict[str, Any]]:
        docs = await self.find(collection, flt, sort=sort, limit=1)
        return docs[0] if docs else None

    async def count(self, collection: str, flt: Optional[Filter] = None) -> int:
        return len(await self._select(collection, flt))

    async def insert(self, collection: str, doc: dict[str, Any]) -> dict[str, Any]:
        doc = to_jsonable(doc)
        async with self._lock:
            async with self._session_factory() as session:
                session.add(DocumentModel(
                    collection=collection, id=doc["id"], body=doc, **_indexed_values(doc),
                ))
                await session.commit()
        return doc

    async def _write_matches(
        self, collection: str, flt: Filter, update: Update, first_only: bool
    ) -> list[dict[str, Any]]:
        flt = to_jsonable(flt)
        update = to_jsonable(update)
        written: list[dict[str, Any]] = []
        async with self._lock:
            async with self._session_factory() as session:
                for row in await self._rows(session, collection, flt):
                    if not match_filter(row.body, flt):
                        continue
                    row.body = apply_update(row.body, update)
                    for name, value in _indexed_values(row.body).items():
                        setattr(row, name, value)
                    row.updated_at = datetime.now(timezone.utc)
                    written.append(row.body)
                    if first_only:
                        break
                await session.commit()
        return written

    async def update(self, collection: str, flt: Filter, update: Update) -> Optional[dict[str, Any]]:
        written = await self._write_matches(collection, flt, update, first_only=True)
        return written[0] if written else None

    async def update_many(self, collection: str, flt: Filter, update: Update) -> int:
        return len(await self._write_matches(collection, flt, update, first_only=False))
