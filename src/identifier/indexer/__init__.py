"""
Indexer module for identifier.

Walks a data root, identifies every file and keeps the results in a persistent
key-value store. The path tree models the file name space for sanitizing,
pruning and folder statistics.
"""

from identifier.indexer.aggregate import build_folder_tree, folder_statistics, format_statistics
from identifier.indexer.duplicates import DuplicateTracker
from identifier.indexer.engine import IdentificationEngine
from identifier.indexer.models import (
    AIDescriptor,
    AIPerson,
    FolderStats,
    Identification,
    IndexRecord,
    ReportQuery,
)
from identifier.indexer.pathtree import PathNode, build_path, clean_segment, subtree_stats
from identifier.indexer.store import IndexRecordStore
from identifier.indexer.walker import walk_files, walk_tree
from identifier.indexer.worker import IndexingWorkerPool, IndexRunStats

__all__ = [
    "AIDescriptor",
    "AIPerson",
    "DuplicateTracker",
    "FolderStats",
    "Identification",
    "IdentificationEngine",
    "IndexRecord",
    "IndexRecordStore",
    "IndexRunStats",
    "IndexingWorkerPool",
    "PathNode",
    "ReportQuery",
    "build_folder_tree",
    "build_path",
    "clean_segment",
    "folder_statistics",
    "format_statistics",
    "subtree_stats",
    "walk_files",
    "walk_tree",
]
