"""
Document Store

Persistence contract for discovery data plus its MongoDB and in-memory
implementations. The store is selected the same way the job broker is:
MongoDB when MONGODB_URL is set, in-memory otherwise (testing/development).
"""

from typing import Optional

import structlog

from app.config import settings
from app.services.store.base import DocumentNotFound, DocumentStore, WriteBatch
from app.services.store.memory import InMemoryDocumentStore

logger = structlog.get_logger()

_store: Optional[DocumentStore] = None


def setup_store() -> DocumentStore:
    """
    Initialize the document store.

    Returns:
        MongoDocumentStore when MONGODB_URL is set, InMemoryDocumentStore otherwise
    """
    if settings.mongodb_url:
        from app.services.store.mongo import MongoDocumentStore

        store = MongoDocumentStore.from_url(settings.mongodb_url, settings.mongodb_database)
        logger.info("store_configured", type="MongoDocumentStore")
    else:
        store = InMemoryDocumentStore()
        logger.warning("store_configured", type="InMemoryDocumentStore", mode="development")
    return store


def get_store() -> DocumentStore:
    """Process-wide document store, created on first use."""
    global _store
    if _store is None:
        _store = setup_store()
    return _store


__all__ = [
    "DocumentNotFound",
    "DocumentStore",
    "InMemoryDocumentStore",
    "WriteBatch",
    "get_store",
    "setup_store",
]
