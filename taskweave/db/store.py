"""DocumentStore protocol: the only persistence primitives the engine uses."""

from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from taskweave.db.documents import Filter, Sort, Update

WORKFLOWS = "workflows"
WORKFLOW_RUNS = "workflow_runs"
TASKS = "tasks"


@runtime_checkable
class DocumentStore(Protocol):
    """Async document store keyed by ``(collection, id)``.

    Documents are JSON-compatible dicts with an ``id`` key.  ``update`` is an
    atomic find-and-modify: it applies *update* to the first document matching
    *flt* and returns the updated document, or None when nothing matched, which
    makes it usable as a conditional write.
    """

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        ...

    async def find(
        self,
        collection: str,
        flt: Optional[Filter] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> list[dict[str, Any]]:
        ...

    async def find_one(
        self, collection: str, flt: Filter, sort: Optional[Sort] = None
    ) -> Optional[dict[str, Any]]:
        ...

    async def count(self, collection: str, flt: Optional[Filter] = None) -> int:
        ...

    async def insert(self, collection: str, doc: dict[str, Any]) -> dict[str, Any]:
        ...

    async def update(self, collection: str, flt: Filter, update: Update) -> Optional[dict[str, Any]]:
        ...

    async def update_many(self, collection: str, flt: Filter, update: Update) -> int:
        ...
