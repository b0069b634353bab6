"""SQLite backed key-value store for index records."""

import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from identifier.errors import (
    ReadOnlyStoreError,
    StoreCorruptError,
    StoreError,
    StoreOpenError,
)
from identifier.indexer.models import AIDescriptor, IndexRecord

logger = logging.getLogger(__name__)

DATABASE_FILE = "identifier.sqlite"
FILE_PREFIX = "file:"
AI_PREFIX = "ai:"
DELETE_BATCH_SIZE = 100
FETCH_SIZE = 500

SCHEMA_SQL = """
-- identifier store: one ordered key-value table
PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS kv (
    key   BLOB PRIMARY KEY,
    value BLOB NOT NULL
);
"""


def encode_key(key: str) -> bytes:
    return key.encode("utf-8", "surrogateescape")


def prefix_upper_bound(prefix: bytes) -> bytes | None:
    """Smallest key greater than every key starting with prefix (None if unbounded)."""
    stripped = prefix.rstrip(b"\xff")
    if not stripped:
        return None
    return stripped[:-1] + bytes([stripped[-1] + 1])


class IndexRecordStore:
    """
    Persistent store for index records and AI descriptors.

    Keys are byte strings compared in byte order, so a prefix scan visits records
    in path order. Every put is its own transaction; deletions queued during a
    scan are committed afterwards in batches.
    """

    def __init__(self, db_dir: Path, read_only: bool = False):
        self.db_dir = Path(db_dir)
        self.db_path = self.db_dir / DATABASE_FILE
        self.read_only = read_only
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

    def __enter__(self) -> "IndexRecordStore":
        self.initialize()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, "conn", None) is None:
            try:
                if self.read_only:
                    if not self.db_path.is_file():
                        raise StoreOpenError(f"no index store at {self.db_path}")
                    conn = sqlite3.connect(
                        self.db_path.as_uri() + "?mode=ro", uri=True, check_same_thread=False
                    )
                else:
                    self.db_dir.mkdir(parents=True, exist_ok=True)
                    conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            except (OSError, sqlite3.Error) as e:
                raise StoreOpenError(f"cannot open index store {self.db_path}: {e}") from e
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.conn

    @contextmanager
    def _read_cursor(self) -> Iterator[sqlite3.Cursor]:
        """Get a cursor for read operations."""
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
        except sqlite3.Error as e:
            raise StoreError(f"read failed: {e}") from e
        finally:
            cursor.close()

    @contextmanager
    def _write_cursor(self) -> Iterator[sqlite3.Cursor]:
        """Get a cursor for write operations with locking."""
        if self.read_only:
            raise ReadOnlyStoreError(f"index store {self.db_path} is opened read-only")
        with self._write_lock:
            conn = self._get_connection()
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def initialize(self) -> None:
        """Open the store, creating the schema unless read-only."""
        if self.read_only:
            with self._read_cursor() as cursor:
                try:
                    cursor.execute("SELECT 1 FROM kv LIMIT 1")
                except sqlite3.Error as e:
                    raise StoreOpenError(f"cannot open index store {self.db_path}: {e}") from e
            return
        try:
            conn = self._get_connection()
            with self._write_lock:
                conn.executescript(SCHEMA_SQL)
        except sqlite3.Error as e:
            raise StoreOpenError(f"cannot initialize index store {self.db_path}: {e}") from e
        logger.debug("index store %s opened", self.db_path)

    def close(self) -> None:
        """Close all database connections."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    # Index records

    def get(self, path: str) -> IndexRecord | None:
        """Get the record stored for a path."""
        key = encode_key(FILE_PREFIX + path)
        with self._read_cursor() as cursor:
            cursor.execute("SELECT value FROM kv WHERE key = ?", (key,))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._load(key, row["value"], IndexRecord.from_dict)

    def put(self, record: IndexRecord) -> None:
        """Insert or replace the record for record.path."""
        self._put(FILE_PREFIX + record.path, record.to_dict())

    def scan(self, prefix: str, visit: Callable[[IndexRecord], bool]) -> int:
        """
        Visit all records whose path starts with prefix, in key order.

        visit returns True to have the record removed. Removals are committed
        after the scan completes; an exception raised by visit aborts the scan
        without removing anything.

        Returns:
            Number of removed records.
        """
        return self._scan(FILE_PREFIX + prefix, IndexRecord.from_dict, lambda key, record: visit(record))

    def count(self, prefix: str = "") -> int:
        """Number of records whose path starts with prefix."""
        sql, params = self._range_query("SELECT COUNT(*) AS n FROM kv", encode_key(FILE_PREFIX + prefix))
        with self._read_cursor() as cursor:
            cursor.execute(sql, params)
            return cursor.fetchone()["n"]

    # AI descriptors

    def put_ai(self, model: str, descriptor: AIDescriptor) -> None:
        self._put(f"{AI_PREFIX}{model}:{descriptor.folder}", descriptor.to_dict())

    def get_ai(self, model: str, folder: str) -> AIDescriptor | None:
        key = encode_key(f"{AI_PREFIX}{model}:{folder}")
        with self._read_cursor() as cursor:
            cursor.execute("SELECT value FROM kv WHERE key = ?", (key,))
            row = cursor.fetchone()
        if row is None:
            return None
        return self._load(key, row["value"], AIDescriptor.from_dict)

    def scan_ai(self, model: str | None, prefix: str, visit: Callable[[str, AIDescriptor], bool]) -> int:
        """Visit the AI descriptors whose folder starts with prefix.

        Without a model the descriptors of all models are visited. visit gets the
        full key ("ai:<model>:<folder>") and the descriptor.
        """
        if model:
            return self._scan(f"{AI_PREFIX}{model}:{prefix}", AIDescriptor.from_dict, visit)
        return self._scan(
            AI_PREFIX,
            AIDescriptor.from_dict,
            lambda key, descriptor: descriptor.folder.startswith(prefix) and visit(key, descriptor),
        )

    # Internals

    def _put(self, key: str, value: dict[str, Any]) -> None:
        data = json.dumps(value, ensure_ascii=False).encode("utf-8", "surrogateescape")
        try:
            with self._write_cursor() as cursor:
                cursor.execute(
                    """INSERT INTO kv (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
                    (encode_key(key), data),
                )
        except sqlite3.Error as e:
            raise StoreError(f"cannot store {key}: {e}") from e

    def _decode(self, key: bytes, value: bytes) -> dict[str, Any]:
        try:
            data = json.loads(value.decode("utf-8", "surrogateescape"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StoreCorruptError(f"cannot decode value of {key!r}: {e}") from e
        if not isinstance(data, dict):
            raise StoreCorruptError(f"cannot decode value of {key!r}: not an object")
        return data

    def _load(self, key: bytes, value: bytes, decode: Callable[[dict[str, Any]], Any]) -> Any:
        data = self._decode(key, value)
        try:
            return decode(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise StoreCorruptError(f"invalid value of {key!r}: {e}") from e

    @staticmethod
    def _range_query(select: str, prefix: bytes) -> tuple[str, list[bytes]]:
        upper = prefix_upper_bound(prefix)
        if upper is None:
            return f"{select} WHERE key >= ?", [prefix]
        return f"{select} WHERE key >= ? AND key < ?", [prefix, upper]

    def _scan(
        self,
        prefix: str,
        decode: Callable[[dict[str, Any]], Any],
        visit: Callable[[str, Any], bool],
    ) -> int:
        sql, params = self._range_query("SELECT key, value FROM kv", encode_key(prefix))
        removals: list[bytes] = []
        with self._read_cursor() as cursor:
            cursor.execute(sql + " ORDER BY key", params)
            while True:
                rows = cursor.fetchmany(FETCH_SIZE)
                if not rows:
                    break
                for row in rows:
                    key = bytes(row["key"])
                    item = self._load(key, row["value"], decode)
                    if visit(key.decode("utf-8", "surrogateescape"), item):
                        removals.append(key)

        if removals:
            self._delete(removals)
        return len(removals)

    def _delete(self, keys: list[bytes]) -> None:
        """Delete keys in batches; all batches are attempted before failing."""
        if self.read_only:
            raise ReadOnlyStoreError(f"cannot remove {len(keys)} records from read-only store")
        failed = 0
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start : start + DELETE_BATCH_SIZE]
            try:
                with self._write_cursor() as cursor:
                    cursor.executemany("DELETE FROM kv WHERE key = ?", [(key,) for key in batch])
            except sqlite3.Error as e:
                failed += 1
                logger.error("cannot remove %d records starting at %r: %s", len(batch), batch[0], e)
        if failed:
            raise StoreError(f"{failed} deletion batches failed")
