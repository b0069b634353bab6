"""Report sinks: console, CSV, JSONL and XLSX."""

import csv
import json
import logging
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import IO, Any

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, Side
from rich.console import Console
from rich.filesize import decimal
from rich.table import Table
from rich.text import Text

from identifier.errors import OutputError
from identifier.indexer.models import AIDescriptor, FolderStats, IndexRecord

logger = logging.getLogger(__name__)

PRIMARY_CHECKSUM = "sha512"

INDEX_FIELDS = [
    "path",
    "folder",
    "basename",
    "size",
    "lastmod",
    "duplicate",
    "mimetype",
    "pronom",
    "type",
    "subtype",
    "checksum",
    "width",
    "height",
    "duration",
]
FOLDER_FIELDS = ["Files", "Folders", "Bytes", "Size", "Path"]
AI_FIELDS = ["key", "folder", "title", "description", "place", "date", "tags", "persons", "institutions"]


def format_fields(key: str) -> list[str]:
    return [key, "count", "size (bytes)", "size"]


def human_size(size: int) -> str:
    """Human readable size in SI units (1 kB = 1000 bytes)."""
    return decimal(size)


def index_row(record: IndexRecord) -> list[Any]:
    ident = record.indexer
    return [
        record.path,
        record.folder,
        record.basename,
        record.size,
        datetime.fromtimestamp(record.lastmod),
        "yes" if record.duplicate else "no",
        ident.mimetype,
        ident.pronom,
        ident.type,
        ident.subtype,
        record.checksum(PRIMARY_CHECKSUM),
        ident.width,
        ident.height,
        ident.duration,
    ]


def folder_row(stats: FolderStats) -> list[Any]:
    return [stats.files, stats.folders, stats.bytes, human_size(stats.bytes), stats.path]


def folder_data(stats: FolderStats) -> dict[str, Any]:
    return dict(zip(FOLDER_FIELDS, folder_row(stats)))


def ai_row(key: str, descriptor: AIDescriptor) -> list[Any]:
    return [
        key,
        descriptor.folder,
        descriptor.title,
        descriptor.description,
        descriptor.place,
        descriptor.date,
        "; ".join(descriptor.tags),
        "; ".join(str(p) for p in descriptor.persons),
        "; ".join(descriptor.institutions),
    ]


def _text(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class Output:
    """
    Fan-out writer for report rows.

    Every row is written to each configured sink. Console output is either one
    line per row or, with ``table=True``, a table rendered on close. When
    ``console`` is None the console is used only if no file sink is configured.
    Safe to use from several threads.
    """

    def __init__(
        self,
        fields: list[str],
        console: bool | None = None,
        csv_path: Path | None = None,
        jsonl_path: Path | None = None,
        xlsx_path: Path | None = None,
        sheet: str = "index",
        table: bool = False,
        title: str = "",
        stream: IO[str] | None = None,
    ):
        self.fields = fields
        self.title = title
        self._lock = threading.Lock()
        self._csv_file: IO[str] | None = None
        self._csv_writer = None
        self._jsonl_file: IO[str] | None = None
        self._xlsx_path: Path | None = None
        self._workbook: Workbook | None = None
        self._sheet = None
        self._table: Table | None = None

        if console is None:
            console = csv_path is None and jsonl_path is None and xlsx_path is None
        self._console = Console(file=stream or sys.stdout, highlight=False, emoji=False) if console else None

        try:
            if csv_path is not None:
                self._csv_file = open(csv_path, "w", newline="", encoding="utf-8")
                self._csv_writer = csv.writer(self._csv_file)
                self._csv_writer.writerow(fields)
            if jsonl_path is not None:
                self._jsonl_file = open(jsonl_path, "w", encoding="utf-8")
            if xlsx_path is not None:
                self._open_xlsx(Path(xlsx_path), sheet)
        except OSError as e:
            self.close()
            raise OutputError(f"cannot create output file: {e}") from e

        if self._console is not None and table:
            self._table = Table(title=title or None)
            for name in fields:
                self._table.add_column(name)

    def __enter__(self) -> "Output":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def console(self) -> bool:
        return self._console is not None

    def _open_xlsx(self, path: Path, sheet: str) -> None:
        # fail early if the file cannot be created, the workbook is saved on close
        path.touch()
        path.unlink()
        self._xlsx_path = path
        self._workbook = Workbook()
        self._sheet = self._workbook.active
        self._sheet.title = sheet
        self._sheet.append(self.fields)
        thin = Side(style="thin")
        border = Border(left=thin, right=thin, top=thin, bottom=Side(style="thick"))
        for cell in self._sheet[1]:
            cell.font = Font(bold=True)
            cell.alignment = Alignment(horizontal="center")
            cell.border = border

    def write(self, row: list[Any], data: Any) -> None:
        """Write a flat row (CSV, XLSX, console) and its structured form (JSONL)."""
        if len(row) != len(self.fields):
            raise OutputError(f"fields and row length do not match: {self.fields} != {row}")
        with self._lock:
            try:
                if self._csv_writer is not None:
                    self._csv_writer.writerow([_text(v) for v in row])
                if self._jsonl_file is not None:
                    self._jsonl_file.write(json.dumps(data, ensure_ascii=False, default=str) + "\n")
            except OSError as e:
                raise OutputError(f"cannot write output: {e}") from e
            if self._sheet is not None:
                self._sheet.append([v if isinstance(v, (int, float, datetime)) else str(v) for v in row])
            if self._table is not None:
                self._table.add_row(*(Text(_text(v)) for v in row))
            elif self._console is not None:
                self._console.print(
                    " // ".join(f"{name}: {_text(v)}" for name, v in zip(self.fields, row)),
                    markup=False,
                    soft_wrap=True,
                )

    def comment(self, line: str) -> None:
        """Print an informational line to the console sink."""
        if self._console is not None:
            self._console.print(line, markup=False, soft_wrap=True)

    def close(self) -> None:
        """Flush and close all sinks.

        Raises:
            OutputError: If any sink fails to close; all sinks are attempted.
        """
        errors = []
        with self._lock:
            if self._csv_file is not None:
                try:
                    self._csv_file.close()
                except OSError as e:
                    errors.append(f"cannot close csv file: {e}")
                self._csv_file = None
                self._csv_writer = None
            if self._jsonl_file is not None:
                try:
                    self._jsonl_file.close()
                except OSError as e:
                    errors.append(f"cannot close jsonl file: {e}")
                self._jsonl_file = None
            if self._workbook is not None:
                try:
                    self._workbook.save(self._xlsx_path)
                except OSError as e:
                    errors.append(f"cannot save xlsx file {self._xlsx_path}: {e}")
                self._workbook = None
                self._sheet = None
            if self._table is not None and self._console is not None:
                self._console.print(self._table)
                self._table = None
        if errors:
            raise OutputError("; ".join(errors))
