"""
In-Memory Document Store

Process-local implementation of the DocumentStore contract. Used when
MONGODB_URL is not configured (development) and by the test suite.
A single lock serializes every operation, which gives increments the same
atomicity guarantees as MongoDB's single-document updates.
"""

import copy
import operator
import threading
from typing import Any, Dict, Iterable, List, Optional

import structlog

from app.services.store.base import (
    DocumentNotFound,
    DocumentStore,
    WhereClause,
    WriteBatch,
    validate_where,
)

logger = structlog.get_logger(__name__)

_MISSING = object()

_OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda value, options: value in options,
}


def _get_path(doc: Dict[str, Any], path: str) -> Any:
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


def _matches(doc: Dict[str, Any], clauses: List[WhereClause]) -> bool:
    for field, op, expected in clauses:
        actual = _get_path(doc, field)
        if actual is _MISSING:
            if op == "!=":
                continue
            return False
        try:
            if not _OPERATORS[op](actual, expected):
                return False
        except TypeError:
            return False
    return True


class InMemoryWriteBatch(WriteBatch):

    def __init__(self, store: "InMemoryDocumentStore"):
        super().__init__()
        self._store = store

    def commit(self) -> None:
        """
        Apply every queued operation or none of them.

        Raises:
            DocumentNotFound: If an update or increment targets a missing
                document; nothing from the batch is applied
        """
        with self._store._lock:
            touched = {collection for _, collection, _, _ in self._operations}
            snapshot = {name: copy.deepcopy(self._store._collection(name)) for name in touched}
            try:
                for kind, collection, doc_id, payload in self._operations:
                    if kind == "set":
                        self._store._set(collection, doc_id, payload)
                    elif kind == "update":
                        self._store._update(collection, doc_id, payload)
                    elif kind == "increment":
                        if self._store._increment(collection, doc_id, payload, None, upsert=False) is None:
                            raise DocumentNotFound(collection, doc_id)
                    elif kind == "delete":
                        self._store._collection(collection).pop(doc_id, None)
            except Exception:
                self._store._data.update(snapshot)
                raise
        logger.debug("memory_batch_committed", operations=len(self._operations))
        self._operations = []


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed document store guarded by a re-entrant lock."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(name, {})

    @staticmethod
    def _with_id(doc_id: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        result = copy.deepcopy(doc)
        result["id"] = doc_id
        return result

    def _set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        doc = copy.deepcopy(data)
        doc.pop("id", None)
        self._collection(collection)[doc_id] = doc

    def _update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        doc = self._collection(collection).get(doc_id)
        if doc is None:
            raise DocumentNotFound(collection, doc_id)
        for path, value in fields.items():
            _set_path(doc, path, copy.deepcopy(value))

    def _increment(
        self,
        collection: str,
        doc_id: str,
        deltas: Dict[str, Any],
        defaults: Optional[Dict[str, Any]],
        upsert: bool,
    ) -> Optional[Dict[str, Any]]:
        docs = self._collection(collection)
        doc = docs.get(doc_id)
        if doc is None:
            if not upsert:
                return None
            doc = copy.deepcopy(defaults or {})
            docs[doc_id] = doc
        for path, delta in deltas.items():
            current = _get_path(doc, path)
            _set_path(doc, path, (0 if current is _MISSING else current) + delta)
        return self._with_id(doc_id, doc)

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            return None if doc is None else self._with_id(doc_id, doc)

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._set(collection, doc_id, data)

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        with self._lock:
            self._update(collection, doc_id, fields)

    def delete(self, collection: str, doc_id: str) -> None:
        with self._lock:
            self._collection(collection).pop(doc_id, None)

    def query(
        self,
        collection: str,
        where: Optional[Iterable[WhereClause]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        clauses = validate_where(where)
        with self._lock:
            results = [
                self._with_id(doc_id, doc)
                for doc_id, doc in self._collection(collection).items()
                if _matches(doc, clauses)
            ]
        if order_by:
            # Documents without the ordering field sort last, like MongoDB's descending order
            present = [d for d in results if _get_path(d, order_by) is not _MISSING]
            absent = [d for d in results if _get_path(d, order_by) is _MISSING]
            present.sort(key=lambda d: _get_path(d, order_by), reverse=descending)
            results = present + absent
        if limit is not None:
            results = results[:limit]
        return results

    def count(self, collection: str, where: Optional[Iterable[WhereClause]] = None) -> int:
        clauses = validate_where(where)
        with self._lock:
            return sum(1 for doc in self._collection(collection).values() if _matches(doc, clauses))

    def increment(
        self,
        collection: str,
        doc_id: str,
        deltas: Dict[str, Any],
        defaults: Optional[Dict[str, Any]] = None,
        upsert: bool = True,
    ) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._increment(collection, doc_id, deltas, defaults, upsert)

    def increment_if_below(self, collection: str, doc_id: str, field: str, limit: int) -> bool:
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            current = 0 if doc is None else _get_path(doc, field)
            if current is _MISSING:
                current = 0
            if current >= limit:
                return False
            self._increment(collection, doc_id, {field: 1}, None, upsert=True)
            return True

    def batch(self) -> WriteBatch:
        return InMemoryWriteBatch(self)
