from __future__ import annotations

from unittest import IsolatedAsyncioTestCase, mock

from pymongo import ReturnDocument
from pymongo.errors import AutoReconnect, DuplicateKeyError, OperationFailure, ServerSelectionTimeoutError

from backend.livequiz.db import Collection, InMemoryCollection, next_sequence, with_retry
from backend.livequiz.errors import StorageUnavailable
from backend.livequiz.testing import memory_database


class InMemoryCollectionTests(IsolatedAsyncioTestCase):
    async def test_insert_one_rejects_duplicate_id(self):
        collection = InMemoryCollection()
        await collection.insert_one({"_id": "0:sam", "answer": 1})

        with self.assertRaises(DuplicateKeyError):
            await collection.insert_one({"_id": "0:sam", "answer": 2})

        doc = await collection.find_one({"_id": "0:sam"})
        self.assertEqual(doc["answer"], 1)

    async def test_find_one_and_update_only_matches_query(self):
        collection = InMemoryCollection()
        await collection.insert_one({"_id": "current", "status": "question"})

        updated = await collection.find_one_and_update(
            {"_id": "current", "status": "question"},
            {"$set": {"status": "revealed"}},
            return_document=ReturnDocument.AFTER,
        )
        self.assertEqual(updated["status"], "revealed")

        again = await collection.find_one_and_update(
            {"_id": "current", "status": "question"},
            {"$set": {"status": "revealed"}},
        )
        self.assertIsNone(again)

    async def test_cursor_sorts_and_limits(self):
        collection = InMemoryCollection()
        for seq in (3, 1, 2):
            await collection.insert_one({"_id": seq, "seq": seq})

        docs = await collection.find({"seq": {"$gt": 1}}).sort("seq", 1).limit(1).to_list(length=None)
        self.assertEqual([d["seq"] for d in docs], [2])

    async def test_upsert_keeps_equality_filters_and_rejects_unknown_operators(self):
        collection = InMemoryCollection()

        created = await collection.find_one_and_update(
            {"_id": "pin", "seq": {"$gt": 5}},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        self.assertEqual(created, {"_id": "pin", "seq": 1})

        with self.assertRaises(NotImplementedError):
            await collection.find_one({"seq": {"$in": [1]}})
        with self.assertRaises(NotImplementedError):
            await collection.update_one({"_id": "pin"}, {"$unset": {"seq": ""}})

    async def test_delete_one_reports_count(self):
        collection = InMemoryCollection()
        await collection.insert_one({"_id": "sam"})

        self.assertEqual((await collection.delete_one({"_id": "sam"})).deleted_count, 1)
        self.assertEqual((await collection.delete_one({"_id": "sam"})).deleted_count, 0)

    async def test_next_sequence_increments(self):
        db = memory_database()
        self.assertEqual(await next_sequence(db.counters, "events"), 1)
        self.assertEqual(await next_sequence(db.counters, "events"), 2)
        self.assertEqual(await next_sequence(db.counters, "players"), 1)


class RetryTests(IsolatedAsyncioTestCase):
    async def test_transient_failure_is_retried(self):
        operation = mock.AsyncMock(side_effect=[AutoReconnect("blip"), {"ok": 1}])

        result = await with_retry(operation, retries=2, backoff=0)

        self.assertEqual(result, {"ok": 1})
        self.assertEqual(operation.await_count, 2)

    async def test_exhausted_retries_raise_storage_unavailable(self):
        operation = mock.AsyncMock(side_effect=ServerSelectionTimeoutError("down"))

        with self.assertRaises(StorageUnavailable):
            await with_retry(operation, retries=2, backoff=0)

        self.assertEqual(operation.await_count, 3)

    async def test_non_transient_errors_are_not_retried(self):
        operation = mock.AsyncMock(side_effect=OperationFailure("bad query"))

        with self.assertRaises(OperationFailure):
            await with_retry(operation, retries=5, backoff=0)

        self.assertEqual(operation.await_count, 1)

    async def test_backoff_doubles_between_attempts(self):
        operation = mock.AsyncMock(side_effect=[AutoReconnect("a"), AutoReconnect("b"), "done"])

        with mock.patch("backend.livequiz.db.asyncio.sleep", new=mock.AsyncMock()) as sleep:
            await with_retry(operation, retries=3, backoff=0.1)

        self.assertEqual([c.args[0] for c in sleep.await_args_list], [0.1, 0.2])

    async def test_collection_facade_retries_each_call(self):
        raw = mock.Mock()
        raw.find_one = mock.AsyncMock(side_effect=[AutoReconnect("blip"), {"_id": "pin"}])
        collection = Collection(raw, "meta", retries=1, backoff=0)

        self.assertEqual(await collection.find_one({"_id": "pin"}), {"_id": "pin"})
        self.assertEqual(raw.find_one.await_count, 2)
