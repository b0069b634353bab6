"""
In-memory model of a file/folder name space.

The tree is built from one full directory walk (or from stored index records)
and supports name sanitization, regex based search and bottom-up aggregation
of sizes and counts. Every node except the synthetic root has a name; the full
path of a node is the "/" joined list of its ancestors' names.
"""

import logging
import re
import weakref
from collections.abc import Iterator
from pathlib import Path

from identifier.indexer.walker import walk_tree

logger = logging.getLogger(__name__)

REPLACEMENT = "_"

# Characters trimmed from both ends of a name (whitespace and Unicode space separators)
TRIM_CHARS = (
    "\t\n\x0b\x0c\r \x85\xa0\u1680"
    + "".join(chr(c) for c in range(0x2000, 0x2010))
    + "\u2028\u2029\u202f\u205f\u3000"
)

_RULE_INVALID = re.compile("[\ud800-\udfff]")  # undecodable bytes (surrogateescape)
_RULE_REPLACE = re.compile("[\x00-\x1f\x7f\n\r\t*:<>|{}]")
_RULE_PRIVATE_USE = re.compile("[\ue000-\uf8ff]")
_RULE_QUOTATION_DOUBLE = re.compile("[“”]")
_RULE_QUOTATION_SINGLE = re.compile("[‘’`]")
_RULE_MULTI_BLANK = re.compile(" +")
_RULE_DASH = re.compile("—")


def clean_segment(name: str) -> str:
    """
    Apply the built-in rename rules to a single path segment.

    Rules, in order:
        1. control characters, \\n \\r \\t and * : < > | { } become "_"
        2. private use area characters (U+E000-U+F8FF) are removed
        3. leading and trailing whitespace is trimmed
        4. curly double quotes become '"'; curly single quotes and backtick become '"' too
        5. runs of blanks collapse to one blank
        6. the em dash becomes "-"
        7. a leading "." becomes "_", otherwise 8. a leading "~" becomes "-"
    """
    name = _RULE_INVALID.sub(REPLACEMENT, name)
    name = _RULE_REPLACE.sub(REPLACEMENT, name)
    name = _RULE_PRIVATE_USE.sub("", name)
    name = name.strip(TRIM_CHARS)
    name = _RULE_QUOTATION_DOUBLE.sub('"', name)
    name = _RULE_QUOTATION_SINGLE.sub('"', name)
    name = _RULE_MULTI_BLANK.sub(" ", name)
    name = _RULE_DASH.sub("-", name)
    if len(name) > 1 and name[0] == ".":
        name = REPLACEMENT + name[1:]
    elif len(name) > 1 and name[0] == "~":
        name = "-" + name[1:]
    if not name:
        name = REPLACEMENT
    return name


def substitute(name: str, regex: re.Pattern, replace: str) -> str:
    """
    Replace regex matches in a name with a literal replacement.

    Without capture groups every match is replaced. With capture groups only the
    spans of non-empty groups are replaced, rightmost first; for overlapping
    (nested) groups the outermost one wins.
    """
    if regex.groups == 0:
        return regex.sub(lambda _match: replace, name)

    spans = []
    for match in regex.finditer(name):
        for group in range(1, regex.groups + 1):
            start, end = match.span(group)
            if start >= 0 and end > start:
                spans.append((start, end))

    selected = []
    last_end = 0
    for start, end in sorted(spans, key=lambda span: (span[0], -span[1])):
        if start >= last_end:
            selected.append((start, end))
            last_end = end

    for start, end in reversed(selected):
        name = name[:start] + replace + name[end:]
    return name


class PathNode:
    """A single file or directory in the path tree."""

    __slots__ = ("name", "is_dir", "size", "children", "_parent", "_clean_name", "__weakref__")

    def __init__(self, name: str, is_dir: bool, size: int = 0, parent: "PathNode | None" = None):
        self.name = name
        self.is_dir = is_dir
        self.size = size
        self.children: dict[str, PathNode] = {}
        self._parent = weakref.ref(parent) if parent is not None else None
        self._clean_name: str | None = None

    def __repr__(self) -> str:
        kind = "dir" if self.is_dir else "file"
        return f"PathNode({self.path!r}, {kind})"

    @property
    def parent(self) -> "PathNode | None":
        if self._parent is None:
            return None
        return self._parent()

    @property
    def path(self) -> str:
        """Full path relative to the root (the root itself is "")."""
        names = []
        node: PathNode | None = self
        while node is not None and node.parent is not None:
            names.append(node.name)
            node = node.parent
        return "/".join(reversed(names))

    def add_child(self, name: str, is_dir: bool, size: int = 0) -> "PathNode":
        """Return the child with this name, creating it if necessary."""
        child = self.children.get(name)
        if child is None:
            child = PathNode(name, is_dir, size, parent=self)
            self.children[name] = child
        return child

    def insert(self, path: str, is_dir: bool, size: int = 0) -> "PathNode":
        """Insert a slash separated path below this node and return its leaf."""
        parts = [part for part in path.split("/") if part not in ("", ".")]
        node = self
        for i, part in enumerate(parts):
            if i == len(parts) - 1:
                node = node.add_child(part, is_dir, size)
            else:
                node = node.add_child(part, True)
        return node

    def clean_name(self) -> str:
        if self._clean_name is None:
            self._clean_name = clean_segment(self.name)
        return self._clean_name

    def elements(self) -> Iterator["PathNode"]:
        """Yield all nodes of the subtree, children before their parent."""
        for child in self.children.values():
            yield from child.elements()
        yield self

    def paths(self) -> Iterator[str]:
        for element in self.elements():
            yield element.path

    def clear_iterator(
        self,
        auto: bool = True,
        regex: re.Pattern | None = None,
        replace: str = "",
    ) -> Iterator[tuple[str, str]]:
        """
        Yield (original path, new path) for every node whose name changes.

        Children are reported before their parent. The new path is built from
        the parent's original path, so renaming in the yielded order is safe.
        """
        for child in self.children.values():
            yield from child.clear_iterator(auto, regex, replace)

        parent = self.parent
        if parent is None:
            return  # synthetic root

        new_name = self.clean_name() if auto else self.name
        if regex is not None:
            new_name = substitute(new_name, regex, replace)
        if new_name == self.name:
            return

        parent_path = parent.path
        new_path = f"{parent_path}/{new_name}" if parent_path else new_name
        yield self.path, new_path

    def find_basename(self, regex: re.Pattern) -> Iterator[str]:
        """Yield paths of all files whose name matches regex."""
        for child in self.children.values():
            yield from child.find_basename(regex)
        if not self.is_dir and regex.search(self.name):
            yield self.path

    def find_dirname(self, regex: re.Pattern) -> Iterator[str]:
        """
        Yield paths of directories whose name matches regex.

        A matching directory covers its subtree: nothing below it is yielded.
        """
        if self.is_dir and self.parent is not None and regex.search(self.name):
            yield self.path
            return
        for child in self.children.values():
            yield from child.find_dirname(regex)

    def subtree_stats(self) -> tuple[int, int, int]:
        """Return (total bytes, file count, folder count) of this subtree."""
        if not self.is_dir:
            return self.size, 1, 0
        size, files, folders = 0, 0, 1
        for child in self.children.values():
            child_size, child_files, child_folders = child.subtree_stats()
            size += child_size
            files += child_files
            folders += child_folders
        return size, files, folders


def subtree_stats(node: PathNode) -> tuple[int, int, int]:
    return node.subtree_stats()


def new_root() -> PathNode:
    return PathNode("", True)


def build_path(root: Path) -> PathNode:
    """
    Build a path tree from a full walk of root.

    Raises:
        WalkError: If the walk fails; no partial tree is returned.
    """
    tree = new_root()
    for entry in walk_tree(root):
        if entry.is_dir:
            logger.debug("dir %s/%s", root, entry.path)
        tree.insert(entry.path, entry.is_dir, entry.size)
    return tree
