"""Host-side helpers: local time zone, ELF checks, gaf archives and update polling."""

from __future__ import annotations

import base64
import json
import os
import shutil
import subprocess
import urllib.error
import urllib.parse
import urllib.request
import zipfile
from typing import Iterator

HOST_LOCALTIME = "/etc/localtime"

_ELF_MAGIC = b"\x7fELF"


class PollError(RuntimeError):
    """Raised when the device is not (yet) running the expected build."""


def _goroot() -> str:
    goroot = os.environ.get("GOROOT", "")
    if goroot:
        return goroot
    try:
        proc = subprocess.run(
            ["go", "env", "GOROOT"], capture_output=True, text=True, check=True
        )
    except (OSError, subprocess.CalledProcessError):
        return ""
    return proc.stdout.strip()


def host_localtime(tmpdir: str, zoneinfo_zip: str | None = None) -> str:
    """Path of a time zone file to install as /etc/localtime, or "" if none.

    Falls back to the "Factory" zone from the Go zoneinfo.zip, extracted into tmpdir.
    """
    if os.path.exists(HOST_LOCALTIME):
        return HOST_LOCALTIME

    if zoneinfo_zip is None:
        goroot = _goroot()
        if not goroot:
            return ""
        zoneinfo_zip = os.path.join(goroot, "lib", "time", "zoneinfo.zip")
    try:
        archive = zipfile.ZipFile(zoneinfo_zip)
    except FileNotFoundError:
        # Some Go installations lack lib/time/zoneinfo.zip.
        return ""
    with archive:
        try:
            info = archive.getinfo("Factory")
        except KeyError:
            return HOST_LOCALTIME
        dest = os.path.join(tmpdir, "Factory")
        with archive.open(info) as src, open(dest, "wb") as out:
            shutil.copyfileobj(src, out)
        return dest


def file_is_elf(path: str) -> bool:
    """Whether path starts with a valid ELF identification header."""
    try:
        with open(path, "rb") as f:
            ident = f.read(16)
    except OSError:
        return False
    return (
        len(ident) == 16
        and ident[:4] == _ELF_MAGIC
        and ident[4] in (1, 2)  # 32 or 64 bit
        and ident[5] in (1, 2)  # little or big endian
        and ident[6] == 1  # current version
    )


def _walk_files(root: str) -> Iterator[str]:
    with os.scandir(root) as it:
        entries = sorted(it, key=lambda e: e.name)
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            yield from _walk_files(entry.path)
        else:
            yield entry.path


def write_gaf_archive(source_dir: str, target_file: str) -> None:
    """Store every file below source_dir, uncompressed, in a new zip at target_file."""
    with zipfile.ZipFile(target_file, "w", compression=zipfile.ZIP_STORED) as zf:
        for path in _walk_files(source_dir):
            rel = os.path.relpath(path, source_dir).replace(os.sep, "/")
            info = zipfile.ZipInfo.from_file(path, rel)
            # Stored, not deflated, for direct access and cheap extraction.
            info.compress_type = zipfile.ZIP_STORED
            with open(path, "rb") as src, zf.open(info, "w") as dst:
                shutil.copyfileobj(src, dst)


def _request_for(base_url: str) -> urllib.request.Request:
    parts = urllib.parse.urlsplit(base_url)
    headers = {"Content-Type": "application/json"}
    url = base_url
    if parts.username is not None:
        credentials = (
            f"{urllib.parse.unquote(parts.username)}:"
            f"{urllib.parse.unquote(parts.password or '')}"
        )
        headers["Authorization"] = "Basic " + base64.b64encode(
            credentials.encode("utf-8")
        ).decode("ascii")
        netloc = parts.netloc.rpartition("@")[2]
        url = urllib.parse.urlunsplit(parts._replace(netloc=netloc))
    return urllib.request.Request(url, headers=headers, method="GET")


def poll_updated(base_url: str, target_build_timestamp: str, timeout: float = 5.0) -> str:
    """Check the device at base_url runs target_build_timestamp; returns the timestamp."""
    req = _request_for(base_url)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            status = resp.status
            body = resp.read()
    except urllib.error.HTTPError as exc:
        raise PollError(f"unexpected HTTP status code: got {exc.code}, want 200") from exc
    except OSError as exc:
        raise PollError(str(exc)) from exc
    if status != 200:
        raise PollError(f"unexpected HTTP status code: got {status}, want 200")
    try:
        decoded = json.loads(body)
    except ValueError as exc:
        raise PollError(f"decoding status: {exc}") from exc
    if not isinstance(decoded, dict):
        raise PollError("decoding status: not a JSON object")
    got = decoded.get("BuildTimestamp", "")
    if not isinstance(got, str):
        raise PollError("decoding status: BuildTimestamp is not a string")
    if got != target_build_timestamp:
        raise PollError(f"device on old revision ({got}), want {target_build_timestamp}")
    return got