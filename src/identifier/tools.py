"""MCP tools for the identifier server.

This module defines the read-only tools exposed over the index store:
- list_files: Index records, optionally filtered
- folder_statistics: File, folder and byte counts per folder
- format_statistics: Counts and sizes per mimetype or PRONOM id
- list_ai_descriptions: AI generated folder metadata
"""

import re
from typing import Any

from fastmcp import FastMCP

from identifier.indexer import IndexRecordStore, ReportQuery
from identifier.indexer.aggregate import build_folder_tree
from identifier.indexer.aggregate import folder_statistics as compute_folder_statistics
from identifier.indexer.aggregate import format_statistics as compute_format_statistics
from identifier.indexer.models import AIDescriptor, IndexRecord
from identifier.output import human_size

DEFAULT_LIMIT = 100


class _LimitReached(Exception):
    pass


def make_query(
    prefix: str = "", empty: bool = False, duplicates: bool = False, regexp: str | None = None
) -> ReportQuery:
    """Build a report query, compiling regexp.

    Raises:
        ValueError: If regexp is not a valid regular expression.
    """
    pattern = None
    if regexp:
        try:
            pattern = re.compile(regexp)
        except re.error as e:
            raise ValueError(f"Invalid regular expression '{regexp}': {e}") from e
    return ReportQuery(empty=empty, duplicates=duplicates, regexp=pattern, prefix=prefix)


def list_files(store: IndexRecordStore, query: ReportQuery, limit: int = DEFAULT_LIMIT) -> list[dict[str, Any]]:
    """Records hit by query, in path order, at most limit of them."""
    results: list[dict[str, Any]] = []

    def visit(record: IndexRecord) -> bool:
        if query.matches(record):
            if len(results) >= limit:
                raise _LimitReached
            results.append(record.to_dict())
        return False

    try:
        store.scan(query.prefix, visit)
    except _LimitReached:
        pass
    return results


def folder_statistics(store: IndexRecordStore, prefix: str = "") -> list[dict[str, Any]]:
    tree = build_folder_tree(store, prefix)
    return [
        {
            "path": stats.path,
            "files": stats.files,
            "folders": stats.folders,
            "bytes": stats.bytes,
            "size": human_size(stats.bytes),
        }
        for stats in compute_folder_statistics(tree)
    ]


def format_statistics(store: IndexRecordStore, query: ReportQuery, key: str = "mimetype") -> list[dict[str, Any]]:
    return [
        {key: value, "count": count, "bytes": size, "size": human_size(size)}
        for value, count, size in compute_format_statistics(store, query, key)
    ]


def list_ai_descriptions(store: IndexRecordStore, model: str | None = None, prefix: str = "") -> list[dict[str, Any]]:
    results: list[dict[str, Any]] = []

    def visit(key: str, descriptor: AIDescriptor) -> bool:
        results.append({"key": key, **descriptor.to_dict()})
        return False

    store.scan_ai(model.lower() if model else None, prefix, visit)
    return results


def register_tools(mcp: FastMCP, store: IndexRecordStore) -> None:
    """Register all read tools with the FastMCP server.

    Args:
        mcp: FastMCP server instance
        store: Index store opened read-only
    """

    @mcp.tool(name="list_files")
    def list_files_tool(
        prefix: str = "",
        empty: bool = False,
        duplicates: bool = False,
        regexp: str | None = None,
        limit: int = DEFAULT_LIMIT,
    ) -> list[dict]:
        """List indexed files with their technical metadata.

        Without filters all files are listed. With filters, a file is listed if
        it matches any of them.

        Args:
            prefix: Only files whose path starts with this prefix
            empty: Include empty files
            duplicates: Include files whose content was already seen
            regexp: Include files whose basename matches this regular expression
            limit: Maximum number of files to return (default: 100)

        Returns:
            List of index records with path, folder, basename, size, lastmod,
            duplicate, lastseen and indexer (mimetype, pronom, type, subtype,
            checksum, width, height, duration)
        """
        return list_files(store, make_query(prefix, empty, duplicates, regexp), limit)

    @mcp.tool(name="folder_statistics")
    def folder_statistics_tool(prefix: str = "") -> list[dict]:
        """Get file count, folder count and total size for every folder.

        Args:
            prefix: Only files whose path starts with this prefix

        Returns:
            List of folders (deepest first) with path, files, folders, bytes and size
        """
        return folder_statistics(store, prefix)

    @mcp.tool(name="format_statistics")
    def format_statistics_tool(
        key: str = "mimetype",
        prefix: str = "",
        empty: bool = False,
        duplicates: bool = False,
        regexp: str | None = None,
    ) -> list[dict]:
        """Get file counts and sizes grouped by mimetype or PRONOM id.

        Args:
            key: "mimetype" or "pronom"
            prefix: Only files whose path starts with this prefix
            empty: Include empty files
            duplicates: Include duplicate files
            regexp: Include files whose basename matches this regular expression

        Returns:
            List of groups with the key value, count, bytes and size
        """
        return format_statistics(store, make_query(prefix, empty, duplicates, regexp), key)

    @mcp.tool(name="list_ai_descriptions")
    def list_ai_descriptions_tool(model: str | None = None, prefix: str = "") -> list[dict]:
        """List AI generated folder descriptions.

        Args:
            model: Only descriptions generated by this model (e.g. "google-gemini-2.0-pro-exp-02-05")
            prefix: Only folders starting with this prefix

        Returns:
            List of descriptions with key, folder, title, description, place,
            date, tags, persons and institutions
        """
        return list_ai_descriptions(store, model, prefix)
