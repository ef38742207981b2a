"""
Document Store Contract

Opaque key-value collection store used by the discovery services.
Documents are plain dicts; the store adds an ``id`` key on reads.
Field names in updates, increments and where-clauses may be dotted paths
into nested documents (``"stats.total_leads_found"``).
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

# (field, op, value) with op in SUPPORTED_OPERATORS
WhereClause = Tuple[str, str, Any]

SUPPORTED_OPERATORS = ("==", "!=", "<", "<=", ">", ">=", "in")


class DocumentNotFound(Exception):
    """Raised when a partial update targets a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document {collection}/{doc_id} not found")


def validate_where(where: Optional[Iterable[WhereClause]]) -> List[WhereClause]:
    """Normalize where-clauses and reject unknown operators."""
    clauses = list(where or [])
    for field, op, _ in clauses:
        if op not in SUPPORTED_OPERATORS:
            raise ValueError(f"Unsupported operator '{op}' for field '{field}'")
    return clauses


class WriteBatch(ABC):
    """
    Grouped writes applied together on commit().

    Usage:
        with store.batch() as batch:
            batch.set("discoveredLeads", lead_id, lead_doc)
            batch.update("discoverySweeps", sweep_id, {"status": "completed"})
    """

    def __init__(self):
        self._operations: List[Tuple[str, str, str, Dict[str, Any]]] = []

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._operations.append(("set", collection, doc_id, data))

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        self._operations.append(("update", collection, doc_id, fields))

    def increment(self, collection: str, doc_id: str, deltas: Dict[str, Any]) -> None:
        self._operations.append(("increment", collection, doc_id, deltas))

    def delete(self, collection: str, doc_id: str) -> None:
        self._operations.append(("delete", collection, doc_id, {}))

    def __len__(self) -> int:
        return len(self._operations)

    @abstractmethod
    def commit(self) -> None:
        """Apply all queued operations."""

    def __enter__(self) -> "WriteBatch":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.commit()


class DocumentStore(ABC):
    """Operations the discovery services need from the persistence layer."""

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return the document or None."""

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Create or replace a document."""

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """
        Merge fields into an existing document.

        Raises:
            DocumentNotFound: If the document does not exist.
        """

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document. Missing documents are ignored."""

    @abstractmethod
    def query(
        self,
        collection: str,
        where: Optional[Iterable[WhereClause]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return documents matching every where-clause."""

    @abstractmethod
    def count(self, collection: str, where: Optional[Iterable[WhereClause]] = None) -> int:
        """Count documents matching every where-clause."""

    @abstractmethod
    def increment(
        self,
        collection: str,
        doc_id: str,
        deltas: Dict[str, Any],
        defaults: Optional[Dict[str, Any]] = None,
        upsert: bool = True,
    ) -> Optional[Dict[str, Any]]:
        """
        Atomically add deltas to numeric fields.

        Args:
            collection: Collection name
            doc_id: Document id
            deltas: Field path -> amount to add (missing fields start at 0)
            defaults: Fields written only when the document is created
            upsert: Create the document if missing; when False a missing
                    document is left alone and None is returned

        Returns:
            The document after the increment, or None if it did not exist
            and upsert was False.
        """

    @abstractmethod
    def increment_if_below(self, collection: str, doc_id: str, field: str, limit: int) -> bool:
        """
        Atomically add 1 to a counter only while it is below limit.

        Returns:
            True if the counter was incremented, False if it was already at
            or above the limit.
        """

    @abstractmethod
    def batch(self) -> WriteBatch:
        """Start a group of writes."""
