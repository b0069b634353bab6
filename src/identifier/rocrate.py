"""RO-Crate metadata files enriched with AI folder descriptions."""

import json
import logging
import posixpath
from pathlib import Path
from typing import Any

from identifier.errors import RoCrateError
from identifier.indexer.models import AIDescriptor

logger = logging.getLogger(__name__)

METADATA_FILE = "ro-crate-metadata.json"
ROOT_ID = "./"


def default_crate() -> dict[str, Any]:
    return {
        "@context": "https://w3id.org/ro/crate/1.1/context",
        "@graph": [
            {
                "@type": "CreativeWork",
                "@id": METADATA_FILE,
                "conformsTo": {"@id": "https://w3id.org/ro/crate/1.1"},
                "about": {"@id": ROOT_ID},
            },
            {
                "@id": ROOT_ID,
                "@type": ["Dataset"],
                "hasPart": [],
            },
        ],
    }


def _refs(value: Any) -> list[dict[str, Any]]:
    """Normalize a reference property (single object or list) to a list."""
    if value is None:
        return []
    if isinstance(value, dict):
        return [value]
    return list(value)


class RoCrate:
    """The JSON-LD graph of an ro-crate-metadata.json file.

    Elements are kept as plain dicts, so properties this class does not know
    about survive a load/save cycle.
    """

    def __init__(self, data: dict[str, Any] | None = None):
        self.data = data if data is not None else default_crate()
        graph = self.data.get("@graph", [])
        if isinstance(graph, dict):
            graph = [graph]
        if not isinstance(graph, list) or not all(isinstance(e, dict) and "@id" in e for e in graph):
            raise RoCrateError("@graph must be a list of elements with @id")
        self.data["@graph"] = graph

    @classmethod
    def load(cls, path: Path) -> "RoCrate":
        """Load a crate file; a missing file yields the default crate."""
        path = Path(path)
        if path.is_dir():
            raise RoCrateError(f"'{path}' is a directory")
        if not path.exists():
            logger.info("creating new RO-Crate %s", path)
            return cls()
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RoCrateError(f"cannot read '{path}': {e}") from e
        if not isinstance(data, dict):
            raise RoCrateError(f"'{path}' does not hold a JSON object")
        return cls(data)

    def save(self, path: Path) -> None:
        try:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(self.data, f, indent=2, ensure_ascii=False)
                f.write("\n")
        except OSError as e:
            raise RoCrateError(f"cannot write '{path}': {e}") from e

    @property
    def graph(self) -> list[dict[str, Any]]:
        return self.data["@graph"]

    def get(self, element_id: str) -> dict[str, Any] | None:
        for element in self.graph:
            if element["@id"] == element_id:
                return element
        return None

    def root(self) -> dict[str, Any] | None:
        """The dataset the metadata descriptor is about."""
        descriptor = self.get(METADATA_FILE)
        if descriptor is None:
            return None
        about = _refs(descriptor.get("about"))
        if not about:
            return None
        return self.get(about[0].get("@id", ""))

    def parts(self) -> list[str]:
        root = self.root()
        if root is None:
            return []
        return [ref["@id"] for ref in _refs(root.get("hasPart"))]

    def _put(self, element: dict[str, Any], replace: bool) -> bool:
        """Add element to the graph; returns False if it already existed."""
        for existing in self.graph:
            if existing["@id"] == element["@id"]:
                if replace:
                    existing.update(element)
                return False
        self.graph.append(element)
        return True

    @staticmethod
    def _link(parent: dict[str, Any], element_id: str) -> None:
        parts = _refs(parent.get("hasPart"))
        if not any(ref.get("@id") == element_id for ref in parts):
            parts.append({"@id": element_id})
        parent["hasPart"] = parts

    def add_element(self, element: dict[str, Any], replace: bool = False) -> None:
        """Add a top-level element and link it from the root dataset."""
        if self._put(element, replace):
            root = self.root()
            if root is not None:
                self._link(root, element["@id"])

    def add_child(self, parent: dict[str, Any], element: dict[str, Any], replace: bool = False) -> None:
        """Add an element and link it from parent."""
        self._put(element, replace)
        self._link(parent, element["@id"])


def folder_element(element_id: str, descriptor: AIDescriptor) -> dict[str, Any]:
    element: dict[str, Any] = {"@id": element_id, "@type": ["Dataset"]}
    if descriptor.title:
        element["name"] = descriptor.title
    if descriptor.description:
        element["description"] = descriptor.description
    if descriptor.tags:
        element["keywords"] = ", ".join(descriptor.tags)
    if descriptor.date:
        element["temporalCoverage"] = descriptor.date
    return element


def folder_id(folder: str, base: str = "") -> str | None:
    """Crate id of a folder relative to the crate base folder (None if outside)."""
    folder = folder.strip("/")
    base = base.strip("/")
    if base:
        folder = posixpath.relpath(folder or ".", base)
    if folder.startswith(".."):
        return None
    if folder in ("", "."):
        return ROOT_ID
    return folder + "/"


def merge_descriptors(
    crate: RoCrate, descriptors: list[AIDescriptor], base: str = "", replace: bool = False
) -> int:
    """
    Add one Dataset element per descriptor, shallowest folders first.

    Each element is linked from its parent folder's element when the crate
    has one, otherwise from the root dataset.

    Returns:
        Number of descriptors merged into the crate
    """
    elements = {}
    for descriptor in descriptors:
        element_id = folder_id(descriptor.folder, base)
        if element_id is None:
            logger.warning("folder '%s' is outside of '%s'", descriptor.folder, base)
            continue
        elements[element_id] = folder_element(element_id, descriptor)

    merged = 0
    for element_id in sorted(elements, key=lambda i: (i.count("/"), i)):
        element = elements[element_id]
        logger.info("processing %s", element_id)
        if element_id == ROOT_ID:
            root = crate.root()
            if root is not None:
                for key in ("name", "description", "keywords", "temporalCoverage"):
                    if key in element and (replace or key not in root):
                        root[key] = element[key]
                merged += 1
            continue

        parent_path = posixpath.dirname(element_id.rstrip("/"))
        parent = crate.get(parent_path + "/") if parent_path else None
        if parent is None:
            crate.add_element(element, replace)
        else:
            crate.add_child(parent, element, replace)
        merged += 1
    return merged
