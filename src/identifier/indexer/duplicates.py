"""Content-hash based duplicate detection for one indexing run."""

import bisect
import threading


class DuplicateTracker:
    """
    Remembers every checksum seen during a run.

    The first caller for a checksum gets False, every later caller True.
    Safe to share between worker threads.
    """

    def __init__(self):
        self._seen: list[str] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def check_and_mark(self, checksum: str) -> bool:
        """Return True if checksum was already seen, otherwise record it."""
        with self._lock:
            pos = bisect.bisect_left(self._seen, checksum)
            if pos < len(self._seen) and self._seen[pos] == checksum:
                return True
            self._seen.insert(pos, checksum)
            return False
