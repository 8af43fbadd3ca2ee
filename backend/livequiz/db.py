from __future__ import annotations

import asyncio
import copy
import logging
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from motor.motor_asyncio import AsyncIOMotorClient
from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo import ReturnDocument
from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    DuplicateKeyError,
    NetworkTimeout,
    ServerSelectionTimeoutError,
)
from pymongo.results import DeleteResult, InsertOneResult

from .errors import StorageUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (AutoReconnect, ConnectionFailure, ServerSelectionTimeoutError, NetworkTimeout)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"
    CORS_ORIGIN_REGEX: Optional[str] = None
    MONGO_URL: Optional[str] = None
    MONGO_DB: str = "livequiz"
    STORAGE_TIMEOUT_MS: int = 5000
    STORAGE_RETRIES: int = 3
    STORAGE_RETRY_BACKOFF: float = 0.1
    PIN_TTL_SECONDS: int = 60 * 60
    EVENT_LOG_LIMIT: int = 200
    LOG_LEVEL: str = "INFO"
    MAX_BODY_BYTES: int = 10 * 1024


@lru_cache
def get_settings() -> Settings:
    return Settings()


# Operators understood by the in-memory store; anything else is a programming error.
QUERY_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$gt": lambda actual, bound: actual is not None and actual > bound,
}


def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, expected in query.items():
        actual = doc.get(key)
        if not isinstance(expected, dict):
            if actual != expected:
                return False
            continue
        for op, bound in expected.items():
            if op not in QUERY_OPERATORS:
                raise NotImplementedError(f"query operator {op} is not supported in memory")
            if not QUERY_OPERATORS[op](actual, bound):
                return False
    return True


def _apply_update(doc: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    for op, fields in update.items():
        if op not in ("$set", "$inc"):
            raise NotImplementedError(f"update operator {op} is not supported in memory")
        for key, value in fields.items():
            doc[key] = doc.get(key, 0) + value if op == "$inc" else copy.deepcopy(value)
    return doc


def _upsert_seed(query: Dict[str, Any]) -> Dict[str, Any]:
    # equality filters become fields of the inserted document, as in MongoDB
    return {k: copy.deepcopy(v) for k, v in query.items() if not isinstance(v, dict)}


class InMemoryCursor:
    """Deferred ``find``; supports ``sort``, ``limit`` and ``to_list``."""

    def __init__(self, collection: "InMemoryCollection", query: Dict[str, Any]):
        self._collection = collection
        self._query = query or {}
        self._order: Optional[Tuple[str, int]] = None
        self._limit = 0

    def sort(self, key: str, direction: int):
        self._order = (key, direction)
        return self

    def limit(self, limit: int):
        # MongoDB treats a negative limit as its absolute value
        self._limit = abs(limit)
        return self

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        docs = await self._collection._select(self._query)
        if self._order is not None:
            key, direction = self._order
            docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
        if self._limit:
            docs = docs[: self._limit]
        return docs if length is None else docs[:length]


class InMemoryCollection:
    """Async collection with the subset of the motor API the game uses.

    ``_id`` is unique, so ``insert_one`` doubles as an atomic insert-if-absent
    exactly like it does against MongoDB.
    """

    def __init__(self):
        self._docs: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()

    def _index_of(self, query: Dict[str, Any]) -> Optional[int]:
        for idx, doc in enumerate(self._docs):
            if _matches(doc, query):
                return idx
        return None

    async def _select(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs if _matches(doc, query)]

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            idx = self._index_of(query)
            return None if idx is None else copy.deepcopy(self._docs[idx])

    def find(self, query: Dict[str, Any]) -> InMemoryCursor:
        return InMemoryCursor(self, query)

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False) -> None:
        await self.find_one_and_update(query, update, upsert=upsert)

    async def insert_one(self, document: Dict[str, Any]) -> InsertOneResult:
        doc_id = document.get("_id")
        async with self._lock:
            if doc_id is not None and self._index_of({"_id": doc_id}) is not None:
                raise DuplicateKeyError(f"E11000 duplicate key error _id: {doc_id!r}")
            self._docs.append(copy.deepcopy(document))
        return InsertOneResult(doc_id, True)

    async def delete_one(self, query: Dict[str, Any]) -> DeleteResult:
        async with self._lock:
            idx = self._index_of(query)
            if idx is not None:
                del self._docs[idx]
        return DeleteResult({"n": 0 if idx is None else 1}, True)

    async def delete_many(self, query: Dict[str, Any]) -> DeleteResult:
        async with self._lock:
            kept = [doc for doc in self._docs if not _matches(doc, query)]
            removed = len(self._docs) - len(kept)
            self._docs = kept
        return DeleteResult({"n": removed}, True)

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        *,
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            idx = self._index_of(query)
            if idx is None:
                if not upsert:
                    return None
                before = None
                after = _apply_update(_upsert_seed(query), update)
                self._docs.append(after)
            else:
                before = self._docs[idx]
                after = _apply_update(copy.deepcopy(before), update)
                self._docs[idx] = after
            chosen = after if return_document == ReturnDocument.AFTER else before
            return copy.deepcopy(chosen)


class InMemoryDatabase:
    def __init__(self):
        self.sessions = InMemoryCollection()
        self.players = InMemoryCollection()
        self.answers = InMemoryCollection()
        self.quizzes = InMemoryCollection()
        self.meta = InMemoryCollection()
        self.counters = InMemoryCollection()
        self.session_events = InMemoryCollection()

    async def command(self, name: str) -> Dict[str, Any]:
        return {"ok": 1.0}


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    retries: int,
    backoff: float,
    description: str = "storage call",
) -> T:
    """Run ``operation``, retrying transient backend failures with exponential backoff.

    After ``retries`` extra attempts the failure is raised as ``StorageUnavailable``.
    """

    attempt = 0
    delay = backoff
    while True:
        try:
            return await operation()
        except TRANSIENT_ERRORS as exc:
            if attempt >= retries:
                logger.error("%s failed after %d attempts: %s", description, attempt + 1, exc)
                raise StorageUnavailable() from exc
            attempt += 1
            logger.warning("%s failed (%s), retry %d/%d in %.2fs", description, exc, attempt, retries, delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, 3.0)


class Collection:
    """Retrying facade over a motor or in-memory collection."""

    def __init__(self, raw: Any, name: str, retries: int, backoff: float):
        self._raw = raw
        self.name = name
        self._retries = retries
        self._backoff = backoff

    async def _call(self, op: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await with_retry(
            operation,
            retries=self._retries,
            backoff=self._backoff,
            description=f"{self.name}.{op}",
        )

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self._call("find_one", lambda: self._raw.find_one(query))

    async def find(
        self,
        query: Dict[str, Any],
        *,
        sort: Optional[Tuple[str, int]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        def run():
            cursor = self._raw.find(query)
            if sort is not None:
                cursor = cursor.sort(*sort)
            if limit:
                cursor = cursor.limit(limit)
            return cursor.to_list(length=None)

        return await self._call("find", run)

    async def insert_one(self, document: Dict[str, Any]):
        return await self._call("insert_one", lambda: self._raw.insert_one(document))

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        return await self._call("update_one", lambda: self._raw.update_one(query, update, upsert=upsert))

    async def delete_one(self, query: Dict[str, Any]) -> int:
        result = await self._call("delete_one", lambda: self._raw.delete_one(query))
        return result.deleted_count

    async def delete_many(self, query: Dict[str, Any]) -> int:
        result = await self._call("delete_many", lambda: self._raw.delete_many(query))
        return result.deleted_count

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        *,
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
    ) -> Optional[Dict[str, Any]]:
        return await self._call(
            "find_one_and_update",
            lambda: self._raw.find_one_and_update(
                query, update, upsert=upsert, return_document=return_document
            ),
        )


COLLECTIONS = ("sessions", "players", "answers", "quizzes", "meta", "counters", "session_events")


class Database:
    """The collections the game reads and writes, behind bounded retries."""

    def __init__(self, raw: Any, *, retries: int = 3, backoff: float = 0.1, client: Any = None):
        self._raw = raw
        self._client = client
        self._retries = retries
        self._backoff = backoff
        for name in COLLECTIONS:
            setattr(self, name, Collection(getattr(raw, name), name, retries, backoff))

    async def ping(self) -> bool:
        await with_retry(
            lambda: self._raw.command("ping"),
            retries=self._retries,
            backoff=self._backoff,
            description="ping",
        )
        return True

    def close(self) -> None:
        if self._client is not None:
            self._client.close()


def create_database(settings: Settings) -> Database:
    if not settings.MONGO_URL:
        logger.info("MONGO_URL not set, using in-memory storage")
        return Database(InMemoryDatabase(), retries=settings.STORAGE_RETRIES, backoff=settings.STORAGE_RETRY_BACKOFF)

    timeout = settings.STORAGE_TIMEOUT_MS
    client = AsyncIOMotorClient(
        settings.MONGO_URL,
        serverSelectionTimeoutMS=timeout,
        connectTimeoutMS=timeout,
        socketTimeoutMS=timeout,
    )
    logger.info("Using MongoDB database %r", settings.MONGO_DB)
    return Database(
        client[settings.MONGO_DB],
        retries=settings.STORAGE_RETRIES,
        backoff=settings.STORAGE_RETRY_BACKOFF,
        client=client,
    )


async def next_sequence(counters: Collection, key: str) -> int:
    """Atomically increment and return the named counter."""

    counter_doc = await counters.find_one_and_update(
        {"_id": key},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )

    if not counter_doc:
        # Some Mongo-compatible providers complete the upsert but return
        # ``None`` instead of the updated document.
        counter_doc = await counters.find_one({"_id": key})

    return int((counter_doc or {}).get("seq", 1))
