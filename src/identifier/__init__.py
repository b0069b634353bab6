"""
identifier - technical metadata workbench for digital preservation.

Indexes a directory tree (format identification, checksums, media properties),
keeps the results in a persistent store, detects duplicates and reports on
them. Folders can be described by a language model and exported as RO-Crate.

Stack:
- SQLite (ordered key-value index store)
- filetype, siegfried, Pillow, mutagen (identification)
- httpx (AI description services)
- FastMCP (read-only access for AI agents)
"""

__version__ = "0.1.0"
