"""Tests for the SQLite index store."""

import sqlite3

import pytest

from identifier.errors import ReadOnlyStoreError, StoreCorruptError, StoreOpenError
from identifier.indexer.models import AIDescriptor, AIPerson
from identifier.indexer.store import (
    DATABASE_FILE,
    DELETE_BATCH_SIZE,
    IndexRecordStore,
    prefix_upper_bound,
)


def scanned_paths(store, prefix=""):
    paths = []
    store.scan(prefix, lambda record: paths.append(record.path) or False)
    return paths


class TestStoreInitialization:
    def test_creates_database_file(self, tmp_path):
        store = IndexRecordStore(tmp_path / "nested" / "db")
        store.initialize()
        assert (tmp_path / "nested" / "db" / DATABASE_FILE).exists()
        store.close()

    def test_context_manager(self, tmp_path, make_record):
        with IndexRecordStore(tmp_path / "db") as store:
            store.put(make_record("a.txt"))
            assert store.count() == 1

    def test_read_only_requires_existing_store(self, tmp_path):
        store = IndexRecordStore(tmp_path / "db", read_only=True)
        with pytest.raises(StoreOpenError):
            store.initialize()
        assert not (tmp_path / "db").exists()


class TestRecordOperations:
    def test_put_and_get(self, store, make_record):
        record = make_record("a/b.txt", size=3, checksum="abc")
        store.put(record)
        assert store.get("a/b.txt") == record

    def test_get_missing(self, store):
        assert store.get("missing.txt") is None

    def test_put_replaces(self, store, make_record):
        store.put(make_record("a.txt", size=1))
        store.put(make_record("a.txt", size=2))
        assert store.get("a.txt").size == 2
        assert store.count() == 1

    def test_undecodable_path(self, store, make_record):
        record = make_record("bad\udcffname.txt")
        store.put(record)
        assert store.get("bad\udcffname.txt") == record
        assert scanned_paths(store) == ["bad\udcffname.txt"]

    def test_scan_in_key_order(self, store, make_record):
        for path in ["b/2", "a/1", "ab/x", "a/3"]:
            store.put(make_record(path))

        assert scanned_paths(store) == ["a/1", "a/3", "ab/x", "b/2"]
        assert scanned_paths(store, "a/") == ["a/1", "a/3"]
        assert scanned_paths(store, "a") == ["a/1", "a/3", "ab/x"]
        assert store.count("a/") == 2

    def test_scan_skips_ai_descriptors(self, store, make_record):
        store.put(make_record("a.txt"))
        store.put_ai("gemini-x", AIDescriptor(folder="a"))
        assert scanned_paths(store) == ["a.txt"]
        assert store.count() == 1


class TestRemoval:
    def test_remove_every_third(self, store, make_record):
        paths = [f"f{i:02d}" for i in range(30)]
        for path in paths:
            store.put(make_record(path))

        position = 0

        def visit(record):
            nonlocal position
            position += 1
            return position % 3 == 0

        removed = store.scan("", visit)

        assert removed == 10
        expected = [path for i, path in enumerate(paths, start=1) if i % 3 != 0]
        assert scanned_paths(store) == expected

    def test_remove_more_than_one_batch(self, store, make_record):
        for i in range(DELETE_BATCH_SIZE * 2 + 50):
            store.put(make_record(f"file{i:04d}"))

        assert store.scan("", lambda record: True) == DELETE_BATCH_SIZE * 2 + 50
        assert store.count() == 0

    def test_failing_visit_removes_nothing(self, store, make_record):
        for path in ["a", "b", "c"]:
            store.put(make_record(path))

        def visit(record):
            if record.path == "b":
                raise RuntimeError("stop")
            return True

        with pytest.raises(RuntimeError):
            store.scan("", visit)
        assert store.count() == 3


class TestReadOnly:
    @pytest.fixture
    def read_only(self, tmp_path, make_record):
        with IndexRecordStore(tmp_path / "db") as writer:
            writer.put(make_record("a.txt"))
        store = IndexRecordStore(tmp_path / "db", read_only=True)
        store.initialize()
        yield store
        store.close()

    def test_reads(self, read_only):
        assert read_only.get("a.txt") is not None
        assert scanned_paths(read_only) == ["a.txt"]

    def test_put_fails(self, read_only, make_record):
        with pytest.raises(ReadOnlyStoreError):
            read_only.put(make_record("b.txt"))

    def test_remove_fails(self, read_only):
        with pytest.raises(ReadOnlyStoreError):
            read_only.scan("", lambda record: True)


class TestCorruptData:
    def insert_raw(self, store, key, value):
        conn = sqlite3.connect(store.db_path)
        conn.execute("INSERT INTO kv (key, value) VALUES (?, ?)", (key, value))
        conn.commit()
        conn.close()

    def test_invalid_json(self, store):
        self.insert_raw(store, b"file:bad", b"{not json")
        with pytest.raises(StoreCorruptError):
            store.get("bad")
        with pytest.raises(StoreCorruptError):
            scanned_paths(store)

    def test_missing_field(self, store):
        self.insert_raw(store, b"file:bad", b'{"size": 1}')
        with pytest.raises(StoreCorruptError):
            store.get("bad")

    def test_not_an_object(self, store):
        self.insert_raw(store, b"ai:m-x:a", b"[1, 2]")
        with pytest.raises(StoreCorruptError):
            store.get_ai("m-x", "a")


class TestAIDescriptors:
    def test_put_and_get(self, store):
        descriptor = AIDescriptor(
            folder="a/b",
            title="Letters",
            tags=["mail"],
            persons=[AIPerson(name="Ada", role="sender")],
        )
        store.put_ai("gemini-x", descriptor)
        assert store.get_ai("gemini-x", "a/b") == descriptor
        assert store.get_ai("openai-y", "a/b") is None

    def test_scan_by_model_and_prefix(self, store):
        store.put_ai("gemini-x", AIDescriptor(folder="a"))
        store.put_ai("gemini-x", AIDescriptor(folder="a/b"))
        store.put_ai("gemini-x", AIDescriptor(folder="c"))
        store.put_ai("openai-y", AIDescriptor(folder="a"))

        keys = []
        store.scan_ai("gemini-x", "a", lambda key, d: keys.append(key) or False)
        assert keys == ["ai:gemini-x:a", "ai:gemini-x:a/b"]

        keys = []
        store.scan_ai(None, "a", lambda key, d: keys.append(key) or False)
        assert keys == ["ai:gemini-x:a", "ai:gemini-x:a/b", "ai:openai-y:a"]


class TestPrefixUpperBound:
    def test_increments_last_byte(self):
        assert prefix_upper_bound(b"file:a") == b"file:b"

    def test_skips_trailing_ff(self):
        assert prefix_upper_bound(b"a\xff\xff") == b"b"

    def test_unbounded(self):
        assert prefix_upper_bound(b"") is None
        assert prefix_upper_bound(b"\xff") is None
