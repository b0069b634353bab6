"""Directory walker for discovering files below a data root."""

import os
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from identifier.errors import WalkError


@dataclass
class WalkEntry:
    """A file or directory discovered by the walker."""

    path: str  # Relative to the walk root, "/" separated
    is_dir: bool
    size: int  # 0 for directories


def full_path(path: str | Path) -> Path:
    """Return the absolute, user-expanded form of a path."""
    return Path(path).expanduser().resolve()


def require_directory(path: str | Path) -> Path:
    """Resolve a data path and make sure it is an existing directory."""
    resolved = full_path(path)
    if not resolved.is_dir():
        raise WalkError(f"'{resolved}' is not a directory")
    return resolved


def walk_tree(root: Path) -> Iterator[WalkEntry]:
    """
    Walk the tree below root in lexical order, directories before their contents.

    Symbolic links are reported as files and never followed.

    Raises:
        WalkError: If any directory or entry cannot be read.
    """
    yield from _walk_dir(root, "")


def _walk_dir(directory: Path, prefix: str) -> Iterator[WalkEntry]:
    try:
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as e:
        raise WalkError(f"cannot walk {directory}: {e}") from e

    for entry in entries:
        relative = f"{prefix}{entry.name}"
        try:
            if entry.is_dir(follow_symlinks=False):
                yield WalkEntry(path=relative, is_dir=True, size=0)
                yield from _walk_dir(Path(entry.path), relative + "/")
                continue
            size = entry.stat(follow_symlinks=False).st_size
        except OSError as e:
            raise WalkError(f"cannot stat {entry.path}: {e}") from e
        yield WalkEntry(path=relative, is_dir=False, size=size)


def walk_files(root: Path) -> Iterator[str]:
    """Yield the relative paths of all non-directory entries below root."""
    for entry in walk_tree(root):
        if not entry.is_dir:
            yield entry.path
