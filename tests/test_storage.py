"""
Tests for storage backends and transaction support
"""

import pytest
import threading
from datetime import datetime, timezone

from bank_ledger.errors import ConflictRetryable, DuplicateRecord, InvalidArgument, NotFound
from bank_ledger.storage import InMemoryStorage, SQLiteStorage, create_storage
from bank_ledger.config import LedgerConfig


test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "ledger.db")
    yield backend
    backend.close()


class TestBasicOperations:
    """CRUD behaviour shared by every backend"""

    def test_save_and_load(self, storage):
        storage.save("test_table", "record_1", test_data)
        assert storage.load("test_table", "record_1") == test_data
        assert storage.load("test_table", "missing") is None

    def test_exists_and_delete(self, storage):
        storage.save("test_table", "record_1", test_data)
        assert storage.exists("test_table", "record_1")
        assert storage.delete("test_table", "record_1")
        assert not storage.exists("test_table", "record_1")
        assert not storage.delete("test_table", "record_1")

    def test_load_all_keeps_insertion_order(self, storage):
        for i in range(5):
            storage.insert("test_table", f"r{i}", {"id": f"r{i}", "n": i})
        assert [r["n"] for r in storage.load_all("test_table")] == [0, 1, 2, 3, 4]

    def test_find_and_count_with_filters(self, storage):
        storage.insert("test_table", "a", {"id": "a", "owner": "x"})
        storage.insert("test_table", "b", {"id": "b", "owner": "y"})
        storage.insert("test_table", "c", {"id": "c", "owner": "x"})

        found = storage.find("test_table", {"owner": "x"})
        assert [r["id"] for r in found] == ["a", "c"]
        assert storage.count("test_table") == 3
        assert storage.count("test_table", {"owner": "y"}) == 1
        assert storage.count("test_table", {"owner": "z"}) == 0

    def test_insert_duplicate_rejected(self, storage):
        storage.insert("test_table", "a", {"id": "a"})
        with pytest.raises(DuplicateRecord):
            storage.insert("test_table", "a", {"id": "a"})

    def test_loaded_data_is_a_copy(self, storage):
        storage.save("test_table", "a", {"id": "a", "tags": ["x"]})
        loaded = storage.load("test_table", "a")
        loaded["tags"].append("y")
        assert storage.load("test_table", "a")["tags"] == ["x"]

    def test_clear_table(self, storage):
        storage.insert("test_table", "a", {"id": "a"})
        storage.clear_table("test_table")
        assert storage.count("test_table") == 0

    def test_sequences_are_monotonic_per_name(self, storage):
        assert [storage.next_sequence("ops") for _ in range(3)] == [1, 2, 3]
        assert storage.next_sequence("other") == 1
        assert storage.next_sequence("ops") == 4


class TestVersionedWrites:
    """Optimistic conditional updates"""

    def test_matching_version_bumps(self, storage):
        storage.insert("accounts", "a", {"id": "a", "balance": "1", "version": 0})
        assert storage.save_if_version("accounts", "a", {"id": "a", "balance": "2"}, 0) == 1
        stored = storage.load("accounts", "a")
        assert stored["balance"] == "2"
        assert stored["version"] == 1

    def test_stale_version_conflicts(self, storage):
        storage.insert("accounts", "a", {"id": "a", "version": 0})
        storage.save_if_version("accounts", "a", {"id": "a"}, 0)
        with pytest.raises(ConflictRetryable):
            storage.save_if_version("accounts", "a", {"id": "a"}, 0)

    def test_missing_record_not_found(self, storage):
        with pytest.raises(NotFound):
            storage.save_if_version("accounts", "ghost", {"id": "ghost"}, 0)


class TestTransactions:
    """Atomic units and savepoints"""

    def test_commit_persists(self, storage):
        with storage.atomic():
            assert storage.in_transaction()
            storage.insert("test_table", "a", {"id": "a"})
        assert not storage.in_transaction()
        assert storage.exists("test_table", "a")

    def test_exception_rolls_back_everything(self, storage):
        storage.insert("test_table", "keep", {"id": "keep", "v": 1})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.insert("test_table", "new", {"id": "new"})
                storage.save("test_table", "keep", {"id": "keep", "v": 2})
                storage.delete("test_table", "keep")
                raise RuntimeError("boom")

        assert not storage.exists("test_table", "new")
        assert storage.load("test_table", "keep") == {"id": "keep", "v": 1}

    def test_inner_unit_rolls_back_alone(self, storage):
        with storage.atomic():
            storage.insert("test_table", "outer", {"id": "outer"})
            with pytest.raises(RuntimeError):
                with storage.atomic():
                    storage.insert("test_table", "inner", {"id": "inner"})
                    raise RuntimeError("inner failure")
            assert storage.in_transaction()

        assert storage.exists("test_table", "outer")
        assert not storage.exists("test_table", "inner")

    def test_outer_failure_discards_committed_inner(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.insert("test_table", "inner", {"id": "inner"})
                raise RuntimeError("outer failure")

        assert not storage.exists("test_table", "inner")

    def test_table_created_in_rolled_back_unit_is_usable(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.insert("fresh_table", "a", {"id": "a"})
                raise RuntimeError("boom")

        storage.insert("fresh_table", "b", {"id": "b"})
        assert storage.count("fresh_table") == 1

    def test_transaction_is_owned_by_its_thread(self, storage):
        seen = []

        with storage.atomic():
            thread = threading.Thread(target=lambda: seen.append(storage.in_transaction()))
            thread.start()
            thread.join()

        assert seen == [False]

    def test_other_threads_wait_for_commit(self, storage):
        storage.insert("test_table", "a", {"id": "a", "v": 0})
        observed = []

        def reader():
            observed.append(storage.load("test_table", "a")["v"])

        with storage.atomic():
            storage.save("test_table", "a", {"id": "a", "v": 1})
            thread = threading.Thread(target=reader)
            thread.start()
            thread.join(timeout=0.2)
            storage.save("test_table", "a", {"id": "a", "v": 2})

        thread.join()
        assert observed == [2]


class TestSQLiteSpecifics:

    def test_invalid_table_name_rejected(self):
        storage = SQLiteStorage()
        with pytest.raises(InvalidArgument):
            storage.save("bad; DROP TABLE x", "a", {"id": "a"})

    def test_invalid_filter_field_rejected(self):
        storage = SQLiteStorage()
        with pytest.raises(InvalidArgument):
            storage.find("t", {"a') OR 1=1 --": "x"})

    def test_data_survives_reopen(self, tmp_path):
        path = tmp_path / "persist.db"
        storage = SQLiteStorage(path)
        storage.insert("test_table", "a", {"id": "a", "amount": "1.10"})
        storage.next_sequence("ops")
        storage.close()

        reopened = SQLiteStorage(path)
        assert reopened.load("test_table", "a") == {"id": "a", "amount": "1.10"}
        assert reopened.next_sequence("ops") == 2
        reopened.close()


class TestCreateStorage:

    def test_memory_backend(self):
        assert isinstance(create_storage(LedgerConfig(storage_backend="memory")), InMemoryStorage)

    def test_sqlite_backend(self, tmp_path):
        config = LedgerConfig(storage_backend="sqlite", database_path=str(tmp_path / "x.db"))
        storage = create_storage(config)
        assert isinstance(storage, SQLiteStorage)
        storage.close()

    def test_unknown_backend(self):
        with pytest.raises(InvalidArgument):
            create_storage(LedgerConfig(storage_backend="mongo"))
