"""Data models for the indexer."""

import posixpath
import re
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class Identification:
    """Technical metadata returned by the identification engine."""

    mimetype: str = ""
    pronom: str = ""  # PRONOM format registry id, e.g. "fmt/43"
    type: str = ""  # image, audio, video, text, ...
    subtype: str = ""
    size: int = 0
    checksum: dict[str, str] = field(default_factory=dict)  # algorithm -> hex
    width: int = 0
    height: int = 0
    duration: int = 0  # seconds

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Identification":
        return cls(
            mimetype=data.get("mimetype", ""),
            pronom=data.get("pronom", ""),
            type=data.get("type", ""),
            subtype=data.get("subtype", ""),
            size=int(data.get("size", 0)),
            checksum=dict(data.get("checksum") or {}),
            width=int(data.get("width", 0)),
            height=int(data.get("height", 0)),
            duration=int(data.get("duration", 0)),
        )


@dataclass
class IndexRecord:
    """Represents a file in the index, keyed by its path."""

    path: str  # Relative to the indexing root, slash separated
    folder: str = ""
    basename: str = ""
    size: int = 0
    duplicate: bool = False
    lastmod: int = 0  # From filesystem metadata
    indexer: Identification = field(default_factory=Identification)
    lastseen: int = 0  # Start time of the run that last saw the file

    @classmethod
    def create(
        cls,
        path: str,
        size: int,
        lastmod: int,
        identification: Identification,
        lastseen: int,
        duplicate: bool = False,
    ) -> "IndexRecord":
        """Create a record, deriving folder and basename from the path."""
        folder, basename = posixpath.split(path)
        return cls(
            path=path,
            folder=folder or ".",
            basename=basename,
            size=size,
            duplicate=duplicate,
            lastmod=lastmod,
            indexer=identification,
            lastseen=lastseen,
        )

    def checksum(self, algorithm: str) -> str:
        return self.indexer.checksum.get(algorithm, "")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IndexRecord":
        return cls(
            path=data["path"],
            folder=data.get("folder", ""),
            basename=data.get("basename", ""),
            size=int(data.get("size", 0)),
            duplicate=bool(data.get("duplicate", False)),
            lastmod=int(data.get("lastmod", 0)),
            indexer=Identification.from_dict(data.get("indexer") or {}),
            lastseen=int(data.get("lastseen", 0)),
        )


@dataclass
class AIPerson:
    """A person mentioned in an AI folder description."""

    name: str = ""
    role: str = ""

    def __str__(self) -> str:
        if self.role:
            return f"{self.name} [{self.role}]"
        return self.name


@dataclass
class AIDescriptor:
    """Descriptive metadata generated for one folder by a language model."""

    folder: str
    title: str = ""
    description: str = ""
    place: str = ""
    date: str = ""
    tags: list[str] = field(default_factory=list)
    persons: list[AIPerson] = field(default_factory=list)
    institutions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AIDescriptor":
        persons = []
        for person in data.get("persons") or []:
            if isinstance(person, str):
                persons.append(AIPerson(name=person))
            else:
                persons.append(AIPerson(name=person.get("name", ""), role=person.get("role", "")))
        return cls(
            folder=data["folder"],
            title=data.get("title") or "",
            description=data.get("description") or "",
            place=data.get("place") or "",
            date=data.get("date") or "",
            tags=[str(t) for t in data.get("tags") or []],
            persons=persons,
            institutions=[str(i) for i in data.get("institutions") or []],
        )


@dataclass
class FolderStats:
    """Aggregated statistics of one folder subtree."""

    path: str
    files: int
    folders: int
    bytes: int


@dataclass
class ReportQuery:
    """Filter shared by all commands that report on stored records."""

    empty: bool = False
    duplicates: bool = False
    regexp: re.Pattern | None = None
    prefix: str = ""

    @property
    def unfiltered(self) -> bool:
        return not self.empty and not self.duplicates and self.regexp is None

    def matches(self, record: IndexRecord) -> bool:
        """Check whether a record is included by this query."""
        return (
            (self.empty and record.size == 0)
            or (self.duplicates and record.duplicate)
            or (self.regexp is not None and self.regexp.search(record.basename) is not None)
            or self.unfiltered
        )

    def describe(self) -> list[str]:
        """Human readable lines describing the active filters."""
        lines = []
        if self.regexp is not None:
            lines.append(f'#including regexp "{self.regexp.pattern}"')
        if self.empty:
            lines.append("#including empty files")
        if self.duplicates:
            lines.append("#including duplicate files")
        if self.prefix:
            lines.append(f'#including prefix "{self.prefix}"')
        if self.unfiltered:
            lines.append("#including all files")
        return lines
