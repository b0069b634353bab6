"""Concurrent indexing of the files below a data root."""

import logging
import os
import queue
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from identifier.errors import EngineError, StoreError
from identifier.indexer.duplicates import DuplicateTracker
from identifier.indexer.engine import DEFAULT_ACTIONS, DEFAULT_CHECKSUMS, IdentificationEngine
from identifier.indexer.models import IndexRecord
from identifier.indexer.store import IndexRecordStore

logger = logging.getLogger(__name__)

JOB_QUEUE_SIZE = 100
RESULT_QUEUE_SIZE = 100
DEFAULT_WORKERS = 3

_STOP = None  # queue sentinel


@dataclass
class IndexRunStats:
    """Counters for one indexing run."""

    indexed: int = 0
    cached: int = 0
    failed: int = 0
    duplicates: int = 0

    @property
    def total(self) -> int:
        return self.indexed + self.cached + self.failed


class IndexingWorkerPool:
    """
    Fixed pool of worker threads indexing files from a bounded job queue.

    Each worker either reuses the stored record of a file (same size and
    modification time) or runs the identification engine, marks duplicates by
    primary checksum and commits the record. A single consumer thread drains
    the result queue into the log.
    """

    def __init__(
        self,
        root: Path,
        engine: IdentificationEngine,
        store: IndexRecordStore | None = None,
        actions: Iterable[str] = DEFAULT_ACTIONS,
        checksums: Iterable[str] = DEFAULT_CHECKSUMS,
        workers: int = DEFAULT_WORKERS,
        start_time: int | None = None,
        on_record: Callable[[IndexRecord], None] | None = None,
    ):
        if workers < 1:
            raise ValueError("at least one worker is required")
        self.root = Path(root)
        self.engine = engine
        self.store = store
        self.actions = list(actions)
        self.checksums = list(checksums) or list(DEFAULT_CHECKSUMS)
        self.primary_checksum = self.checksums[0]
        self.workers = workers
        self.start_time = int(time.time()) if start_time is None else start_time
        self.on_record = on_record
        self.tracker = DuplicateTracker()
        self.stats = IndexRunStats()

        self._jobs: queue.Queue[str | None] = queue.Queue(maxsize=JOB_QUEUE_SIZE)
        self._results: queue.Queue[str | None] = queue.Queue(maxsize=RESULT_QUEUE_SIZE)
        self._threads: list[threading.Thread] = []
        self._consumer: threading.Thread | None = None
        self._stats_lock = threading.Lock()

    def __enter__(self) -> "IndexingWorkerPool":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def start(self) -> None:
        """Start the worker threads and the result consumer."""
        self._consumer = threading.Thread(target=self._consume_results, name="index-results", daemon=True)
        self._consumer.start()
        for worker_id in range(1, self.workers + 1):
            thread = threading.Thread(
                target=self._work, args=(worker_id,), name=f"index-worker-{worker_id}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def submit(self, path: str) -> None:
        """Enqueue a relative path; blocks while the job queue is full."""
        self._jobs.put(path)

    def wait(self) -> None:
        """Block until every submitted job has been processed."""
        self._jobs.join()

    def close(self) -> None:
        """Stop the workers and the result consumer."""
        for _ in self._threads:
            self._jobs.put(_STOP)
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        if self._consumer is not None:
            self._results.put(_STOP)
            self._consumer.join()
            self._consumer = None

    def run(self, paths: Iterable[str]) -> IndexRunStats:
        """Index all paths and return the run statistics."""
        self.start()
        try:
            for path in paths:
                self.submit(path)
            self.wait()
        finally:
            self.close()
        logger.info(
            "indexed %d files (%d from cache, %d failed, %d duplicates)",
            self.stats.total,
            self.stats.cached,
            self.stats.failed,
            self.stats.duplicates,
        )
        return self.stats

    def _work(self, worker_id: int) -> None:
        while True:
            path = self._jobs.get()
            try:
                if path is _STOP:
                    return
                self._index(worker_id, path)
            except Exception:
                logger.exception("#%03d: unexpected error indexing %s", worker_id, path)
                self._count(failed=1)
            finally:
                self._jobs.task_done()

    def _index(self, worker_id: int, path: str) -> None:
        full = self.root / path
        try:
            st = os.stat(full)
        except OSError as e:
            logger.error("cannot stat %s: %s", full, e)
            self._count(failed=1)
            return
        if os.path.isdir(full):
            logger.error("cannot index %s: is a directory", full)
            self._count(failed=1)
            return

        lastmod = int(st.st_mtime)
        record = self._cached_record(worker_id, path, st.st_size, lastmod)
        cached = record is not None

        if record is not None:
            record.lastseen = self.start_time
            record.duplicate = self._is_duplicate(record.size, record.checksum(self.primary_checksum))
        else:
            logger.info("#%03d: indexing '%s'", worker_id, path)
            try:
                identification = self.engine.identify(self.root, path, self.actions, self.checksums)
            except EngineError as e:
                logger.error("cannot index %s: %s", full, e)
                self._count(failed=1)
                return
            record = IndexRecord.create(
                path=path,
                size=identification.size,
                lastmod=lastmod,
                identification=identification,
                lastseen=self.start_time,
                duplicate=self._is_duplicate(
                    identification.size, identification.checksum.get(self.primary_checksum, "")
                ),
            )

        if self.store is not None:
            try:
                self.store.put(record)
            except StoreError as e:
                logger.error("cannot store record of %s: %s", path, e)
                self._count(failed=1)
                return

        if self.on_record is not None:
            self.on_record(record)

        self._count(
            indexed=0 if cached else 1,
            cached=1 if cached else 0,
            duplicates=1 if record.duplicate else 0,
        )
        cached_str = " [cached]" if cached else ""
        logger.debug(
            "#%03d:%s %s [%s] - %s",
            worker_id,
            cached_str,
            path,
            record.indexer.mimetype,
            record.checksum(self.primary_checksum),
        )
        self._results.put(f"#{worker_id:03d}: {path} done")

    def _cached_record(self, worker_id: int, path: str, size: int, lastmod: int) -> IndexRecord | None:
        """Return the stored record if it is still valid for the file on disk."""
        if self.store is None:
            return None
        try:
            record = self.store.get(path)
        except StoreError as e:
            logger.error("cannot read cached record of %s: %s", path, e)
            return None
        if record is None:
            return None
        if record.size != size or record.lastmod != lastmod:
            logger.debug("#%03d: cached record of '%s' is stale", worker_id, path)
            return None
        if self.primary_checksum not in record.indexer.checksum:
            logger.debug("#%03d: cached record of '%s' has no %s checksum", worker_id, path, self.primary_checksum)
            return None
        logger.info("#%03d: loading from cache '%s'", worker_id, path)
        return record

    def _is_duplicate(self, size: int, checksum: str) -> bool:
        return size > 0 and bool(checksum) and self.tracker.check_and_mark(checksum)

    def _count(self, indexed: int = 0, cached: int = 0, failed: int = 0, duplicates: int = 0) -> None:
        with self._stats_lock:
            self.stats.indexed += indexed
            self.stats.cached += cached
            self.stats.failed += failed
            self.stats.duplicates += duplicates

    def _consume_results(self) -> None:
        while True:
            message = self._results.get()
            if message is _STOP:
                return
            logger.debug("result: %s", message)
