"""Describing the revision this tool was built from."""

from __future__ import annotations

from typing import Mapping, NamedTuple

_COMMIT_PREFIX = "commit "


class BuildParts(NamedTuple):
    revision: str
    modified: bool
    ok: bool


def read_parts(settings: Mapping[str, str] | None, main_version: str) -> BuildParts:
    """Extract the revision from build settings or a pseudo-version.

    settings is None when no build information is available.
    """
    if settings is None:
        return BuildParts("", False, False)
    # Built from a local VCS checkout: the revision is recorded directly.
    if "vcs.revision" in settings:
        return BuildParts(
            settings["vcs.revision"], settings.get("vcs.modified") == "true", True
        )
    # Built as a module: the version looks like v0.0.0-<timestamp>-<revision>.
    idx = main_version.rfind("-")
    if idx > -1:
        return BuildParts(main_version[idx + 1 :], False, True)
    return BuildParts("<BUG>", False, False)


def read(settings: Mapping[str, str] | None, main_version: str) -> str:
    """A long description naming the full revision."""
    revision, modified, ok = read_parts(settings, main_version)
    if not ok:
        return "<not okay>"
    suffix = " (modified)" if modified else ""
    return _COMMIT_PREFIX + revision + suffix


def read_brief(settings: Mapping[str, str] | None, main_version: str) -> str:
    """A short description such as g7a5757 or g7a5757+ when modified."""
    revision, modified, ok = read_parts(settings, main_version)
    if not ok:
        return "<not okay>"
    return "g" + revision[:6] + ("+" if modified else "")