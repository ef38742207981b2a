"""
Tests for write batches on the in-memory and MongoDB document stores.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from app.services.store.base import DocumentNotFound
from app.services.store.mongo import MongoDocumentStore


class TestInMemoryWriteBatch:

    def test_commit_applies_all_operations(self, store):
        store.set("profiles", "acme", {"stats": {"total": 1}})

        with store.batch() as batch:
            batch.set("leads", "l1", {"name": "Bayou Plumbing"})
            batch.update("profiles", "acme", {"stats.last": 1})
            batch.increment("profiles", "acme", {"stats.total": 2})

        assert store.get("leads", "l1")["name"] == "Bayou Plumbing"
        assert store.get("profiles", "acme")["stats"] == {"total": 3, "last": 1}

    def test_missing_update_target_applies_nothing(self, store):
        store.set("profiles", "globex", {"stats": {"total": 1}})

        with pytest.raises(DocumentNotFound):
            with store.batch() as batch:
                batch.set("leads", "l1", {"name": "Bayou Plumbing"})
                batch.increment("profiles", "globex", {"stats.total": 1})
                batch.update("profiles", "acme", {"stats.last": 1})

        assert store.get("leads", "l1") is None
        assert store.get("profiles", "globex")["stats"]["total"] == 1

    def test_missing_increment_target_applies_nothing(self, store):
        with pytest.raises(DocumentNotFound):
            with store.batch() as batch:
                batch.set("leads", "l1", {"name": "Bayou Plumbing"})
                batch.increment("profiles", "acme", {"stats.total": 1})

        assert store.count("leads") == 0
        assert store.get("profiles", "acme") is None

    def test_exception_inside_block_skips_commit(self, store):
        with pytest.raises(RuntimeError):
            with store.batch() as batch:
                batch.set("leads", "l1", {"name": "Bayou Plumbing"})
                raise RuntimeError("abort")

        assert store.get("leads", "l1") is None


class TestMongoWriteBatch:

    @pytest.fixture
    def collections(self):
        return {
            "profiles": MagicMock(name="profiles"),
            "leads": MagicMock(name="leads"),
            "sweeps": MagicMock(name="sweeps"),
        }

    @pytest.fixture
    def mongo_store(self, collections):
        database = MagicMock()
        database.__getitem__.side_effect = collections.__getitem__
        return MongoDocumentStore(database)

    def queue_commit(self, batch):
        batch.update("profiles", "acme", {"stats.last": 2})
        batch.increment("profiles", "acme", {"stats.total": 2})
        batch.set("leads", "l1", {"name": "Bayou Plumbing"})
        batch.set("leads", "l2", {"name": "Gulf Pipe Works"})
        batch.update("sweeps", "s1", {"status": "completed"})

    def test_collections_written_in_queue_order(self, mongo_store, collections):
        order = []
        for name, collection in collections.items():
            collection.bulk_write.side_effect = (
                lambda ops, ordered, name=name: order.append(name) or SimpleNamespace(matched_count=len(ops))
            )

        with mongo_store.batch() as batch:
            self.queue_commit(batch)

        assert order == ["profiles", "leads", "sweeps"]
        assert len(collections["leads"].bulk_write.call_args.args[0]) == 2

    def test_unmatched_update_stops_before_later_collections(self, mongo_store, collections):
        collections["profiles"].bulk_write.return_value = SimpleNamespace(matched_count=0)

        with pytest.raises(DocumentNotFound):
            with mongo_store.batch() as batch:
                self.queue_commit(batch)

        collections["leads"].bulk_write.assert_not_called()
        collections["sweeps"].bulk_write.assert_not_called()
