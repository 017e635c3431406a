"""Document store: filter/update operators on both the in-memory and SQL backends."""

from datetime import datetime, timezone

import pytest

from taskweave.db.database import MEMORY_URL, create_store
from taskweave.db.documents import apply_update, match_filter, sort_documents, to_jsonable
from taskweave.db.memory import InMemoryDocumentStore
from taskweave.db.models import DocumentModel
from taskweave.db.sql import SqlDocumentStore
from taskweave.db.store import TASKS, DocumentStore
from taskweave.types import TaskStatus


@pytest.fixture(params=["memory", "sql"])
async def doc_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryDocumentStore()
        return
    store = await create_store(f"sqlite+aiosqlite:///{tmp_path / 'taskweave-test.db'}")
    yield store
    await store.close()


async def _seed(store):
    for i, status in enumerate(["pending", "waiting", "completed", "failed"]):
        await store.insert(TASKS, {
            "id": f"t{i}",
            "status": status,
            "rank": i,
            "tags": ["even"] if i % 2 == 0 else ["odd"],
            "counters": {"received": 0},
            "join": {"advanced_at": None} if i == 0 else {},
        })


# ── Pure operators ───────────────────────────────────────────────────────────


class TestOperators:

    def test_equality_on_dotted_path(self):
        assert match_filter({"a": {"b": 1}}, {"a.b": 1})
        assert not match_filter({"a": {"b": 1}}, {"a.b": 2})

    def test_none_matches_missing_field(self):
        assert match_filter({"a": {}}, {"a.x": None})
        assert match_filter({"a": {"x": None}}, {"a.x": None})
        assert not match_filter({"a": {"x": 1}}, {"a.x": None})

    def test_scalar_matches_list_member(self):
        assert match_filter({"tags": ["x", "y"]}, {"tags": "y"})

    def test_comparison_operators(self):
        doc = {"n": 5}
        assert match_filter(doc, {"n": {"$gte": 5, "$lte": 5}})
        assert match_filter(doc, {"n": {"$gt": 4, "$lt": 6}})
        assert not match_filter(doc, {"n": {"$lt": 5}})
        assert not match_filter({}, {"n": {"$gt": 0}})

    def test_membership_and_existence(self):
        doc = {"s": "waiting"}
        assert match_filter(doc, {"s": {"$in": ["pending", "waiting"]}})
        assert match_filter(doc, {"s": {"$nin": ["completed"]}})
        assert match_filter(doc, {"s": {"$exists": True}, "x": {"$exists": False}})
        assert match_filter(doc, {"s": {"$ne": "failed"}})

    def test_or(self):
        assert match_filter({"a": 1}, {"$or": [{"a": 2}, {"a": 1}]})
        assert not match_filter({"a": 1}, {"$or": [{"a": 2}, {"b": 1}]})

    def test_update_operators(self):
        doc = {"id": "x", "n": 1, "items": [1], "set": ["a"]}
        out = apply_update(doc, {
            "$set": {"meta.ok": True},
            "$inc": {"n": 2, "fresh": 1},
            "$push": {"items": {"$each": [2, 3]}},
            "$addToSet": {"set": "a"},
        })
        assert out == {"id": "x", "n": 3, "fresh": 1, "items": [1, 2, 3], "set": ["a"], "meta": {"ok": True}}
        assert doc["n"] == 1  # original untouched

    def test_pull_and_unset(self):
        out = apply_update({"ids": ["a", "b", "a"], "x": {"y": 1}}, {"$pull": {"ids": "a"}, "$unset": {"x.y": ""}})
        assert out == {"ids": ["b"], "x": {}}

    def test_to_jsonable_normalizes_enums_and_datetimes(self):
        when = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert to_jsonable({"s": TaskStatus.WAITING, "at": when}) == {
            "s": "waiting", "at": "2026-01-02T03:04:05Z",
        }

    def test_sort_missing_first_and_descending(self):
        docs = [{"id": "a", "k": 2}, {"id": "b"}, {"id": "c", "k": 1}]
        assert [d["id"] for d in sort_documents(docs, [("k", 1)])] == ["b", "c", "a"]
        assert [d["id"] for d in sort_documents(docs, [("k", -1)])] == ["a", "c", "b"]


# ── Store behaviour (both backends) ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_store_satisfies_protocol(doc_store):
    assert isinstance(doc_store, DocumentStore)


@pytest.mark.asyncio
async def test_insert_and_get(doc_store):
    await _seed(doc_store)
    doc = await doc_store.get(TASKS, "t2")
    assert doc["status"] == "completed"
    assert await doc_store.get(TASKS, "nope") is None


@pytest.mark.asyncio
async def test_find_sort_skip_limit(doc_store):
    await _seed(doc_store)
    docs = await doc_store.find(TASKS, {"status": {"$in": ["pending", "waiting", "completed"]}},
                                sort=[("rank", -1)], skip=1, limit=1)
    assert [d["id"] for d in docs] == ["t1"]
    assert await doc_store.count(TASKS, {"tags": "even"}) == 2


@pytest.mark.asyncio
async def test_conditional_update_returns_none_when_filter_misses(doc_store):
    await _seed(doc_store)
    assert await doc_store.update(TASKS, {"id": "t2", "status": "pending"}, {"$set": {"status": "x"}}) is None
    updated = await doc_store.update(TASKS, {"id": "t0", "status": "pending"}, {"$set": {"status": "waiting"}})
    assert updated["status"] == "waiting"
    assert (await doc_store.get(TASKS, "t0"))["status"] == "waiting"


@pytest.mark.asyncio
async def test_claim_style_update_happens_once(doc_store):
    await _seed(doc_store)
    flt = {"id": "t0", "join.advanced_at": None}
    first = await doc_store.update(TASKS, flt, {"$set": {"join.advanced_at": "2026-01-01T00:00:00Z"}})
    second = await doc_store.update(TASKS, flt, {"$set": {"join.advanced_at": "2026-01-02T00:00:00Z"}})
    assert first is not None
    assert second is None


@pytest.mark.asyncio
async def test_inc_reserves_counter_values(doc_store):
    await _seed(doc_store)
    a = await doc_store.update(TASKS, {"id": "t1"}, {"$inc": {"counters.received": 2}})
    b = await doc_store.update(TASKS, {"id": "t1"}, {"$inc": {"counters.received": 3}})
    assert (a["counters"]["received"], b["counters"]["received"]) == (2, 5)


@pytest.mark.asyncio
async def test_push_appends(doc_store):
    await _seed(doc_store)
    await doc_store.update(TASKS, {"id": "t3"}, {"$push": {"log": {"n": 1}}})
    doc = await doc_store.update(TASKS, {"id": "t3"}, {"$push": {"log": {"n": 2}}})
    assert doc["log"] == [{"n": 1}, {"n": 2}]


@pytest.mark.asyncio
async def test_update_many(doc_store):
    await _seed(doc_store)
    count = await doc_store.update_many(
        TASKS, {"status": {"$in": ["pending", "waiting"]}}, {"$set": {"status": "cancelled"}},
    )
    assert count == 2
    assert await doc_store.count(TASKS, {"status": "cancelled"}) == 2


@pytest.mark.asyncio
async def test_returned_documents_are_copies():
    store = InMemoryDocumentStore()
    await store.insert(TASKS, {"id": "a", "nested": {"v": 1}})
    doc = await store.get(TASKS, "a")
    doc["nested"]["v"] = 99
    assert (await store.get(TASKS, "a"))["nested"]["v"] == 1


@pytest.mark.asyncio
async def test_duplicate_insert_rejected():
    store = InMemoryDocumentStore()
    await store.insert(TASKS, {"id": "a"})
    with pytest.raises(ValueError):
        await store.insert(TASKS, {"id": "a"})


@pytest.mark.asyncio
async def test_create_store_selects_backend(tmp_path):
    assert isinstance(await create_store(MEMORY_URL), InMemoryDocumentStore)
    sql = await create_store(f"sqlite+aiosqlite:///{tmp_path / 'select.db'}")
    try:
        assert isinstance(sql, SqlDocumentStore)
    finally:
        await sql.close()


@pytest.mark.asyncio
async def test_run_and_parent_scoped_finds_follow_updates(doc_store):
    await doc_store.insert(TASKS, {"id": "a", "workflow_run_id": "r1", "parent_id": "p1"})
    await doc_store.insert(TASKS, {"id": "b", "workflow_run_id": "r2", "parent_id": "p1"})
    await doc_store.insert(TASKS, {"id": "c", "workflow_run_id": "r1", "parent_id": None})
    by_id = [("id", 1)]

    assert [d["id"] for d in await doc_store.find(TASKS, {"workflow_run_id": "r1"}, sort=by_id)] == ["a", "c"]
    assert [d["id"] for d in await doc_store.find(TASKS, {"parent_id": "p1", "workflow_run_id": "r2"})] == ["b"]
    assert [d["id"] for d in await doc_store.find(TASKS, {"parent_id": None})] == ["c"]
    assert [d["id"] for d in await doc_store.find(TASKS, {"workflow_run_id": {"$in": ["r2"]}})] == ["b"]

    await doc_store.update(TASKS, {"id": "a"}, {"$set": {"workflow_run_id": "r2"}})
    assert [d["id"] for d in await doc_store.find(TASKS, {"workflow_run_id": "r2"}, sort=by_id)] == ["a", "b"]
    assert await doc_store.count(TASKS, {"workflow_run_id": "r1"}) == 1
    assert await doc_store.update(TASKS, {"id": "a", "workflow_run_id": "r1"}, {"$set": {"x": 1}}) is None


@pytest.mark.asyncio
async def test_sql_mirrors_indexed_fields_into_columns(tmp_path):
    store = await create_store(f"sqlite+aiosqlite:///{tmp_path / 'indexed.db'}")
    try:
        await store.insert(TASKS, {"id": "a", "workflow_run_id": "r1", "parent_id": "p1"})
        async with store._session_factory() as session:
            row = await session.get(DocumentModel, (TASKS, "a"))
            assert (row.workflow_run_id, row.parent_id) == ("r1", "p1")

        await store.update(TASKS, {"id": "a"}, {"$set": {"workflow_run_id": "r2", "parent_id": None}})
        async with store._session_factory() as session:
            row = await session.get(DocumentModel, (TASKS, "a"))
            assert (row.workflow_run_id, row.parent_id) == ("r2", None)
    finally:
        await store.close()
