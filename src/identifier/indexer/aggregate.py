"""Folder and format statistics computed from stored index records."""

import logging

from identifier.indexer.models import FolderStats, IndexRecord, ReportQuery
from identifier.indexer.pathtree import PathNode, new_root
from identifier.indexer.store import IndexRecordStore

logger = logging.getLogger(__name__)

FORMAT_KEYS = ("mimetype", "pronom")


def build_folder_tree(store: IndexRecordStore, prefix: str = "") -> PathNode:
    """Rebuild the path tree of all records whose path starts with prefix."""
    tree = new_root()

    def add(record: IndexRecord) -> bool:
        tree.insert(record.path, False, record.size)
        return False

    store.scan(prefix, add)
    return tree


def folder_statistics(tree: PathNode) -> list[FolderStats]:
    """Statistics of every directory in the tree, deepest folders first."""
    stats = []
    for element in tree.elements():
        if not element.is_dir:
            continue
        size, files, folders = element.subtree_stats()
        stats.append(FolderStats(path="/" + element.path, files=files, folders=folders, bytes=size))
    return stats


def format_statistics(
    store: IndexRecordStore, query: ReportQuery, key: str = "mimetype"
) -> list[tuple[str, int, int]]:
    """
    Group the records hit by query by mimetype or PRONOM id.

    Returns:
        (value, count, bytes) tuples sorted by value
    """
    if key not in FORMAT_KEYS:
        raise ValueError(f"cannot group by '{key}', expected one of {', '.join(FORMAT_KEYS)}")

    counts: dict[str, int] = {}
    sizes: dict[str, int] = {}

    def visit(record: IndexRecord) -> bool:
        if query.matches(record):
            value = getattr(record.indexer, key)
            counts[value] = counts.get(value, 0) + 1
            sizes[value] = sizes.get(value, 0) + record.size
        return False

    store.scan(query.prefix, visit)
    logger.debug("%d distinct %s values", len(counts), key)
    return [(value, counts[value], sizes[value]) for value in sorted(counts)]
