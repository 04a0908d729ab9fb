"""Generating and compiling the init program that supervises all services."""

from __future__ import annotations

import os
import posixpath
import subprocess
import tempfile
import unicodedata
from dataclasses import dataclass, field
from typing import Mapping, Sequence, TypeVar

from gokrpack.filetree import FileInfo
from gokrpack.gotool import GoToolError, build_dir_or_migrate, default_tags, env

V = TypeVar("V")

_GOKRAZY_PKG = "github.com/gokrazy/gokrazy"

_SIMPLE_ESCAPES = {
    "\a": "\\a",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\v": "\\v",
    "\\": "\\\\",
    '"': '\\"',
}


def _go_quote(s: str) -> str:
    """Quote s as a Go interpreted string literal."""
    out = ['"']
    for ch in s:
        if ch in _SIMPLE_ESCAPES:
            out.append(_SIMPLE_ESCAPES[ch])
            continue
        cp = ord(ch)
        if cp < 0x20 or cp == 0x7F:
            out.append(f"\\x{cp:02x}")
        elif ch.isprintable() or (ch == " "):
            out.append(ch)
        elif unicodedata.category(ch) == "Cs" or cp > 0xFFFF:
            out.append(f"\\U{cp:08x}")
        else:
            out.append(f"\\u{cp:04x}")
    out.append('"')
    return "".join(out)


def command_for(flags: Mapping[str, Sequence[str]], path: str) -> str:
    """Arguments to exec.Command for the binary at path."""
    contents = flags.get(posixpath.basename(path)) or []
    if not contents:
        return _go_quote(path)
    quoted = ", ".join(_go_quote(arg) for arg in contents)
    return f"{_go_quote(path)}, []string{{{quoted}}}..."


def env_for(env: Mapping[str, Sequence[str]], path: str) -> list[str]:
    """Environment variables for the binary at path."""
    return list(env.get(posixpath.basename(path)) or [])


def map_key_basename(m: Mapping[str, V] | None) -> dict[str, V]:
    """Re-key m by the last path element of each key."""
    return {posixpath.basename(k): v for k, v in (m or {}).items()}


def flatten_files(prefix: str, root: FileInfo) -> list[str]:
    """Absolute paths of all host-copied files in root."""
    base = posixpath.normpath(posixpath.join(prefix, root.filename))
    result: list[str] = []
    for ent in root.dirents:
        if ent.from_host:
            result.append(posixpath.join(base, ent.filename))
        else:
            result.extend(flatten_files(base, ent))
    return result


_HEADER = """package main

import (
\t"fmt"
\t"log"
\t"os"
\t"os/exec"

\t"github.com/gokrazy/gokrazy"
)

// buildTimestamp can be overridden by specifying e.g.
// -ldflags "-X main.buildTimestamp=foo" when building.
var buildTimestamp = {timestamp}

func main() {{
\tlog.SetFlags(log.LstdFlags | log.Lshortfile)

\tfmt.Printf("gokrazy build timestamp %s\\n", buildTimestamp)
\tif err := gokrazy.Boot(buildTimestamp); err != nil {{
\t\tlog.Fatal(err)
\t}}
\tif host, err := os.Hostname(); err == nil {{
\t\tfmt.Printf("hostname %q\\n", host)
\t}}
\tif model := gokrazy.Model(); model != "" {{
\t\tfmt.Printf("gokrazy device model %s\\n", model)
\t}}

\tvar services []*gokrazy.Service
"""

_FOOTER = """\tif err := gokrazy.SuperviseServices(services); err != nil {
\t\tlog.Fatal(err)
\t}
\tselect {}
}
"""


@dataclass
class GokrazyInit:
    """Inputs for the generated init program."""

    root: FileInfo
    flag_file_contents: Mapping[str, Sequence[str]] | None = None
    env_file_contents: Mapping[str, Sequence[str]] | None = None
    dont_start: Mapping[str, bool] | None = None
    wait_for_clock: Mapping[str, bool] | None = None
    build_timestamp: str = ""
    _unused: dict = field(default_factory=dict, repr=False, compare=False)

    def _service(self, path: str, flags, environ, dont_start, wait_for_clock) -> str:
        lines = [
            "\t{",
            f"\t\tcmd := exec.Command({command_for(flags, path)})",
            "\t\tcmd.Env = append(os.Environ(),",
        ]
        lines.extend(f"\t\t\t{_go_quote(var)}," for var in env_for(environ, path))
        lines.append("\t\t)")
        lines.append("")
        base = posixpath.basename(path)
        if dont_start.get(base):
            lines.append("\t\tsvc := gokrazy.NewStoppedService(cmd)")
        elif wait_for_clock.get(base):
            lines.append("\t\tsvc := gokrazy.NewWaitForClockService(cmd)")
        else:
            lines.append("\t\tsvc := gokrazy.NewService(cmd)")
        lines.append("")
        lines.append("\t\tservices = append(services, svc)")
        lines.append("\t}")
        return "\n".join(lines) + "\n"

    def generate(self) -> bytes:
        """Go source code of the init program."""
        flags = map_key_basename(self.flag_file_contents)
        environ = map_key_basename(self.env_file_contents)
        dont_start = map_key_basename(self.dont_start)
        wait_for_clock = map_key_basename(self.wait_for_clock)
        parts = [_HEADER.format(timestamp=_go_quote(self.build_timestamp))]
        for path in flatten_files("/", self.root):
            if path == "/gokrazy/init":
                continue
            parts.append(self._service(path, flags, environ, dont_start, wait_for_clock))
        parts.append(_FOOTER)
        return "".join(parts).encode("utf-8")

    def dump(self, path: str) -> None:
        """Write the generated source to path."""
        source = self.generate()
        with open(path, "wb") as f:
            f.write(source)

    def build(self) -> str:
        """Compile the init program; returns the directory holding the init binary."""
        try:
            directory = build_dir_or_migrate(_GOKRAZY_PKG)
        except Exception as exc:
            raise GoToolError(f"PackageDirs({_GOKRAZY_PKG}): {exc}") from exc

        tmpdir = tempfile.mkdtemp(prefix="gokr-packer")
        source = self.generate()
        init_go = os.path.join(tmpdir, "init.go")
        with open(init_go, "wb") as f:
            f.write(source)
        try:
            cmd = [
                "go",
                "build",
                "-mod=mod",
                "-o",
                os.path.join(tmpdir, "init"),
                "-tags=" + ",".join(default_tags()),
                init_go,
            ]
            go_env = dict(entry.partition("=")[::2] for entry in env())
            try:
                proc = subprocess.run(cmd, cwd=directory, env=go_env)
            except OSError as exc:
                raise GoToolError(f"{cmd}: {exc}") from exc
            if proc.returncode != 0:
                raise GoToolError(f"{cmd}: exit status {proc.returncode}")
        finally:
            os.remove(init_go)
        return tmpdir