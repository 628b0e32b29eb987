"""Tests for promorch.store backends.

Every backend must provide the same versioned read, compare-and-swap,
update and append semantics.
"""

import threading

import pytest

from promorch.errors import ClaimConflictError
from promorch.store import (
    NO_CHANGE,
    FileRecordStore,
    InMemoryRecordStore,
    SqliteRecordStore,
    create_store,
    normalize_path,
)


@pytest.fixture(params=["memory", "file", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryRecordStore()
    elif request.param == "file":
        yield FileRecordStore(tmp_path / "store")
    else:
        store = SqliteRecordStore(tmp_path / "store.db")
        yield store
        store.close()


class TestNormalizePath:

    def test_strips_slashes(self):
        assert normalize_path("/gb//summit/status/") == "gb/summit/status"

    @pytest.mark.parametrize("path", ["", "/", "gb/../status", "./status"])
    def test_rejects(self, path):
        with pytest.raises(ValueError):
            normalize_path(path)


class TestReadWrite:

    def test_missing_document(self, any_store):
        assert any_store.read_record("gb/summit/status") is None
        assert any_store.read_json("gb/summit/status") is None
        assert not any_store.exists("gb/summit/status")

    def test_write_increments_version(self, any_store):
        assert any_store.write_json("doc", {"a": 1}) == 1
        assert any_store.write_json("doc", {"a": 2}) == 2
        record = any_store.read_record("/doc/")
        assert record.doc == {"a": 2}
        assert record.version == 2
        assert record.updated_at.tzinfo is not None

    def test_list_and_delete(self, any_store):
        for path in ("gb/summit/status", "gb/summit/processing/batch_status", "gb/summitx/status", "project_queue"):
            any_store.write_json(path, {})
        assert any_store.list("gb/summit") == ["gb/summit/processing/batch_status", "gb/summit/status"]
        assert len(any_store.list()) == 4
        assert any_store.delete("gb/summit/status") is True
        assert any_store.delete("gb/summit/status") is False
        assert any_store.list("gb/summit") == ["gb/summit/processing/batch_status"]


class TestCompareAndSwap:

    def test_create_only_if_absent(self, any_store):
        assert any_store.compare_and_swap("doc", 0, {"v": 1}) is True
        assert any_store.compare_and_swap("doc", 0, {"v": 2}) is False
        assert any_store.read_json("doc") == {"v": 1}

    def test_stale_version_loses(self, any_store):
        any_store.write_json("doc", {"status": "initiated"})
        version = any_store.read_record("doc").version
        assert any_store.compare_and_swap("doc", version, {"status": "copy_in_progress"}) is True
        assert any_store.compare_and_swap("doc", version, {"status": "copy_in_progress"}) is False
        assert any_store.read_record("doc").version == version + 1


class TestUpdate:

    def test_applies_function(self, any_store):
        any_store.update("counter", lambda n: n + 1, default=0)
        any_store.update("counter", lambda n: n + 1, default=0)
        assert any_store.read_json("counter") == 2

    def test_no_change_skips_write(self, any_store):
        any_store.write_json("doc", {"a": 1})
        assert any_store.update("doc", lambda d: NO_CHANGE) == {"a": 1}
        assert any_store.read_record("doc").version == 1

    def test_gives_up_after_max_attempts(self):
        store = InMemoryRecordStore()
        store.write_json("doc", 0)

        def interfering(n):
            store.write_json("doc", n + 100)
            return n + 1

        with pytest.raises(ClaimConflictError):
            store.update("doc", interfering, max_attempts=3)

    def test_concurrent_updates_are_not_lost(self, tmp_path):
        store = FileRecordStore(tmp_path / "store")

        def bump():
            for _ in range(20):
                store.update("counter", lambda n: n + 1, default=0)

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.read_json("counter") == 80


class TestAppend:

    def test_append_entries(self, any_store):
        assert any_store.append("journal", {"n": 1}) == 1
        assert any_store.append("journal", {"n": 2}, {"n": 3}) == 3
        assert [e["n"] for e in any_store.read_json("journal")] == [1, 2, 3]

    def test_append_nothing(self, any_store):
        assert any_store.append("journal") == 0


class TestInMemoryIsolation:

    def test_returned_documents_are_copies(self):
        store = InMemoryRecordStore()
        store.write_json("doc", {"files": [1]})
        store.read_json("doc")["files"].append(2)
        assert store.read_json("doc") == {"files": [1]}


class TestCreateStore:

    def test_memory(self):
        assert isinstance(create_store("memory"), InMemoryRecordStore)

    def test_file(self, tmp_path):
        assert isinstance(create_store("file", tmp_path), FileRecordStore)

    def test_requires_path(self):
        with pytest.raises(ValueError, match="requires a path"):
            create_store("sqlite")

    def test_unknown_backend(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown store backend"):
            create_store("redis", tmp_path)
