"""Quick content hashes of source directories."""

from __future__ import annotations

import base64
import os
import stat
from typing import BinaryIO, Callable, Iterable

_FNV128_OFFSET = 0x6C62272E07BB014262B821756295C58D
_FNV128_PRIME = 0x0000000001000000000000000000013B
_MASK128 = (1 << 128) - 1

_VCS_DIRS = {".bzr", ".git", ".hg", ".svn"}


class _Fnv128:
    """FNV-1 128-bit hash."""

    def __init__(self) -> None:
        self._h = _FNV128_OFFSET

    def update(self, data: bytes) -> None:
        h = self._h
        for byte in data:
            h = (h * _FNV128_PRIME) & _MASK128
            h ^= byte
        self._h = h

    def digest(self) -> bytes:
        return self._h.to_bytes(16, "big")


def quick_hash(files: Iterable[str], open_file: Callable[[str], BinaryIO]) -> str:
    """Hash the named files (order-independent) as "qh:" plus base64."""
    summary = _Fnv128()
    for name in sorted(files):
        if "\n" in name:
            raise ValueError("dirhash: filenames with newlines are not supported")
        per_file = _Fnv128()
        with open_file(name) as r:
            while chunk := r.read(1 << 16):
                per_file.update(chunk)
        summary.update(f"{per_file.digest().hex()}  {name}\n".encode("utf-8"))
    return "qh:" + base64.b64encode(summary.digest()).decode("ascii")


def _is_vendored(rel: str) -> bool:
    if rel.startswith("vendor/"):
        rest = rel[len("vendor/"):]
    elif (idx := rel.find("/vendor/")) >= 0:
        rest = rel[idx + len("/vendor/"):]
    else:
        return False
    return "/" in rest


def _module_files(directory: str) -> list[str]:
    """Files that would go into a module zip of directory."""
    if not os.path.isdir(directory):
        return []
    valid: list[str] = []
    folded: dict[str, str] = {}
    for current, dirnames, filenames in os.walk(directory):
        kept = []
        for d in sorted(dirnames):
            sub = os.path.join(current, d)
            if d in _VCS_DIRS or os.path.exists(os.path.join(sub, "go.mod")):
                continue
            kept.append(d)
        dirnames[:] = kept
        for name in sorted(filenames):
            path = os.path.join(current, name)
            rel = os.path.relpath(path, directory).replace(os.sep, "/")
            if _is_vendored(rel):
                continue
            if not stat.S_ISREG(os.lstat(path).st_mode):
                continue
            key = rel.lower()
            if key in folded:
                raise ValueError(
                    f"CheckDir({directory}): case-insensitive file name collision: "
                    f"{folded[key]!r} and {rel!r}"
                )
            folded[key] = rel
            valid.append(path)
    return valid


def hash_dir(dir: str) -> str:
    """Hash the module files below dir, skipping VCS metadata and nested modules."""
    return quick_hash(_module_files(dir), lambda name: open(name, "rb"))