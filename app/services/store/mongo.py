"""
MongoDB Document Store
DocumentStore implementation over pymongo, with every call routed through
the MongoDB circuit breaker.
"""

from typing import Any, Dict, Iterable, List, Optional

import structlog
from pymongo import ASCENDING, DESCENDING, DeleteOne, MongoClient, ReplaceOne, ReturnDocument, UpdateOne
from pymongo.errors import DuplicateKeyError

from app.services.monitoring.circuit_breakers import CircuitBreakerError, get_mongodb_breaker
from app.services.store.base import (
    DocumentNotFound,
    DocumentStore,
    WhereClause,
    WriteBatch,
    validate_where,
)

logger = structlog.get_logger(__name__)

_MONGO_OPERATORS = {
    "==": "$eq",
    "!=": "$ne",
    "<": "$lt",
    "<=": "$lte",
    ">": "$gt",
    ">=": "$gte",
    "in": "$in",
}


def build_filter(where: Optional[Iterable[WhereClause]]) -> Dict[str, Any]:
    """Translate (field, op, value) clauses into a MongoDB filter document."""
    mongo_filter: Dict[str, Dict[str, Any]] = {}
    for field, op, value in validate_where(where):
        if op == "in":
            value = list(value)
        mongo_filter.setdefault(field, {})[_MONGO_OPERATORS[op]] = value
    return mongo_filter


def _from_mongo(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc = dict(doc)
    doc["id"] = doc.pop("_id")
    return doc


def _to_mongo(data: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(data)
    doc.pop("id", None)
    doc.pop("_id", None)
    return doc


class MongoWriteBatch(WriteBatch):
    """
    Bulk writes grouped per collection.

    Each collection's operations are sent as one ordered bulk_write, in the
    order the collections first appear in the batch. Writes spanning several
    collections are not a single transaction: if an update or increment in
    one collection matches no document, the commit stops with
    DocumentNotFound before later collections are written. The match check
    counts replaced documents too, so it is exact only for collections the
    batch updates without also replacing. Callers queue preconditions first
    and the record that marks completion last.
    """

    def __init__(self, store: "MongoDocumentStore"):
        super().__init__()
        self._store = store

    def commit(self) -> None:
        grouped: Dict[str, List[Any]] = {}
        targeted: Dict[str, List[str]] = {}
        for kind, collection, doc_id, payload in self._operations:
            if kind == "set":
                op = ReplaceOne({"_id": doc_id}, _to_mongo(payload), upsert=True)
            elif kind == "update":
                op = UpdateOne({"_id": doc_id}, {"$set": payload})
            elif kind == "increment":
                op = UpdateOne({"_id": doc_id}, {"$inc": payload})
            else:
                op = DeleteOne({"_id": doc_id})
            grouped.setdefault(collection, []).append(op)
            if kind in ("update", "increment"):
                targeted.setdefault(collection, []).append(doc_id)

        for collection, ops in grouped.items():
            result = self._store._call(self._store._db[collection].bulk_write, ops, ordered=True)
            expected = targeted.get(collection, [])
            if result.matched_count < len(expected):
                self._operations = []
                raise DocumentNotFound(collection, ",".join(sorted(set(expected))))
            logger.debug("mongodb_batch_committed", collection=collection, operations=len(ops))
        self._operations = []


class MongoDocumentStore(DocumentStore):
    """
    Document store backed by MongoDB.

    Usage:
        store = MongoDocumentStore.from_url(settings.mongodb_url, settings.mongodb_database)
        store.increment("dailyUsage", "2026-01-15", {"total_tokens": 1200})
    """

    def __init__(self, database):
        """
        Args:
            database: pymongo Database instance
        """
        self._db = database
        self._breaker = get_mongodb_breaker()

    @classmethod
    def from_url(cls, mongodb_url: str, database_name: str) -> "MongoDocumentStore":
        client = MongoClient(
            mongodb_url,
            tz_aware=True,
            serverSelectionTimeoutMS=10000
        )
        logger.info("mongodb_store_configured", database=database_name)
        return cls(client[database_name])

    def _call(self, func, *args, **kwargs):
        try:
            return self._breaker.call(func, *args, **kwargs)
        except CircuitBreakerError:
            logger.error("mongodb_circuit_open", operation=getattr(func, "__name__", "unknown"))
            raise

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return _from_mongo(self._call(self._db[collection].find_one, {"_id": doc_id}))

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._call(self._db[collection].replace_one, {"_id": doc_id}, _to_mongo(data), upsert=True)

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        result = self._call(self._db[collection].update_one, {"_id": doc_id}, {"$set": fields})
        if result.matched_count == 0:
            raise DocumentNotFound(collection, doc_id)

    def delete(self, collection: str, doc_id: str) -> None:
        self._call(self._db[collection].delete_one, {"_id": doc_id})

    def query(
        self,
        collection: str,
        where: Optional[Iterable[WhereClause]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        def run():
            cursor = self._db[collection].find(build_filter(where))
            if order_by:
                cursor = cursor.sort(order_by, DESCENDING if descending else ASCENDING)
            if limit is not None:
                cursor = cursor.limit(limit)
            return [_from_mongo(doc) for doc in cursor]

        return self._call(run)

    def count(self, collection: str, where: Optional[Iterable[WhereClause]] = None) -> int:
        return self._call(self._db[collection].count_documents, build_filter(where))

    def increment(
        self,
        collection: str,
        doc_id: str,
        deltas: Dict[str, Any],
        defaults: Optional[Dict[str, Any]] = None,
        upsert: bool = True,
    ) -> Optional[Dict[str, Any]]:
        update: Dict[str, Any] = {"$inc": deltas}
        if defaults:
            # $setOnInsert paths must not overlap the $inc paths
            update["$setOnInsert"] = defaults
        doc = self._call(
            self._db[collection].find_one_and_update,
            {"_id": doc_id},
            update,
            upsert=upsert,
            return_document=ReturnDocument.AFTER
        )
        return _from_mongo(doc)

    def increment_if_below(self, collection: str, doc_id: str, field: str, limit: int) -> bool:
        if limit <= 0:
            return False
        try:
            doc = self._call(
                self._db[collection].find_one_and_update,
                {"_id": doc_id, field: {"$lt": limit}},
                {"$inc": {field: 1}},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            # Document exists but the guard failed, so the upsert collided on _id
            return False
        return doc is not None

    def batch(self) -> WriteBatch:
        return MongoWriteBatch(self)
