"""An in-memory tree describing the files of the root file system."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field


class DirentNotFoundError(LookupError):
    """Raised when a required directory entry is missing."""


@dataclass
class FileInfo:
    """One node of the root file system tree.

    A node is a regular file when from_host or from_literal is set, a symlink
    when symlink_dest is set, and a directory otherwise.
    """

    filename: str = ""
    mode: int = 0
    from_host: str = ""
    from_literal: str = ""
    symlink_dest: str = ""
    dirents: list[FileInfo] = field(default_factory=list)

    def is_file(self) -> bool:
        return bool(self.from_host or self.from_literal)

    def path_list(self) -> list[str]:
        """Relative paths of all regular files below this node."""
        paths: list[str] = []
        for ent in self.dirents:
            if ent.is_file():
                paths.append(ent.filename)
                continue
            paths.extend(posixpath.join(ent.filename, sub) for sub in ent.path_list())
        return paths

    def combine(self, other: FileInfo) -> None:
        """Merge the entries of other into this tree; files may not be overwritten."""
        for ent2 in other.dirents:
            existing = next((ent for ent in self.dirents if ent.filename == ent2.filename), None)
            if existing is None:
                self.dirents.append(ent2)
                continue
            if existing.is_file() or ent2.is_file():
                raise FileExistsError(f"file already exist: {ent2.filename}")
            existing.combine(ent2)

    def must_find_dirent(self, path: str) -> FileInfo:
        """The direct child named path; raises DirentNotFoundError if absent."""
        for ent in self.dirents:
            if ent.filename == path:
                return ent
        raise DirentNotFoundError(f"mustFindDirent({path!r}) did not find directory entry")


def get_duplication(fi_a: FileInfo, fi_b: FileInfo) -> list[str]:
    """File paths that occur more than once across the two trees."""
    seen: set[str] = set()
    duplicates: list[str] = []
    for path in fi_a.path_list() + fi_b.path_list():
        if path in seen:
            duplicates.append(path)
        seen.add(path)
    return duplicates