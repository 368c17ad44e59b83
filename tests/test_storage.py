"""
Tests for storage backends and transaction support
"""

import pytest
import os
import tempfile
from datetime import datetime, timezone

from lending_core.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage
)


test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(":memory:")
    yield backend
    backend.close()


class TestStorageBackends:
    """Behaviour shared by both backends"""

    def test_basic_operations(self, storage):
        storage.save("test_table", "record_1", test_data)
        assert storage.load("test_table", "record_1") == test_data

        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "non_existent")
        assert storage.load("test_table", "non_existent") is None

        storage.save("test_table", "record_2", {"id": "record_2", "name": "Other"})
        assert storage.count("test_table") == 2
        assert len(storage.load_all("test_table")) == 2

        assert storage.delete("test_table", "record_1")
        assert not storage.delete("test_table", "record_1")
        assert storage.count("test_table") == 1

        storage.clear_table("test_table")
        assert storage.count("test_table") == 0

    def test_find(self, storage):
        storage.save("loans", "a", {"id": "a", "client_id": "C1", "status": "ACTIVE"})
        storage.save("loans", "b", {"id": "b", "client_id": "C1", "status": "PAID"})
        storage.save("loans", "c", {"id": "c", "client_id": "C2", "status": "ACTIVE"})

        assert {r["id"] for r in storage.find("loans", {"client_id": "C1"})} == {"a", "b"}
        assert [r["id"] for r in storage.find("loans", {"client_id": "C1", "status": "PAID"})] == ["b"]
        assert storage.find("loans", {"missing_key": "x"}) == []

    def test_loaded_records_are_copies(self, storage):
        storage.save("t", "1", {"id": "1", "items": [1, 2]})
        loaded = storage.load("t", "1")
        loaded["items"].append(3)
        assert storage.load("t", "1")["items"] == [1, 2]

    def test_atomic_commit(self, storage):
        with storage.atomic():
            storage.save("t", "1", {"id": "1"})
            storage.save("t", "2", {"id": "2"})
        assert storage.count("t") == 2
        assert not storage.in_transaction

    def test_atomic_rollback(self, storage):
        storage.save("t", "existing", {"id": "existing", "value": 1})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("t", "new", {"id": "new"})
                storage.save("t", "existing", {"id": "existing", "value": 2})
                storage.delete("t", "existing")
                raise RuntimeError("boom")

        assert storage.load("t", "new") is None
        assert storage.load("t", "existing") == {"id": "existing", "value": 1}
        assert not storage.in_transaction

    def test_nested_atomic_joins_outer(self, storage):
        with pytest.raises(ValueError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("t", "inner", {"id": "inner"})
                raise ValueError("outer fails")

        assert storage.load("t", "inner") is None


class TestSQLiteStorage:

    def test_persistence_across_connections(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "lending.db")

            storage = SQLiteStorage(path)
            storage.save("loans", "L1", {"id": "L1", "amount": "100.00"})
            storage.close()

            reopened = SQLiteStorage(path)
            assert reopened.load("loans", "L1") == {"id": "L1", "amount": "100.00"}
            reopened.close()


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self):
        storage = create_storage("sqlite://")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

    def test_sqlite_file_url(self):
        with tempfile.TemporaryDirectory() as tmp:
            storage = create_storage(f"sqlite:///{tmp}/lending.db")
            assert storage.db_path == f"{tmp}/lending.db"
            storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/lending")


class TestStorageRecord:

    def test_base_dict_and_timestamps(self):
        now = datetime.now(timezone.utc)
        record = StorageRecord(id="r1", created_at=now, updated_at=now)

        data = record.base_dict()
        assert data == {"id": "r1", "created_at": now.isoformat(), "updated_at": now.isoformat()}
        assert StorageRecord.parse_timestamps(data) == {"created_at": now, "updated_at": now}
