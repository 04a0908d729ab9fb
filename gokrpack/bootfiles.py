"""Contents of the boot file system: kernel command line, config.txt and copied files."""

from __future__ import annotations

import fnmatch
import logging
import os
import posixpath
from typing import Iterable, Sequence

from gokrpack.partition import Pack

log = logging.getLogger(__name__)

FIRMWARE_GLOBS = (
    "*.bin",
    "*.dat",
    "*.elf",
    "*.upd",
    "*.sig",
    "overlays/*.dtbo",
)

KERNEL_GLOBS = (
    "boot.scr",  # u-boot script file
    "vmlinuz",
    "*.dtb",
    "overlays/*.dtbo",
)

# Whitespace appended to the kernel command line so that the update process
# can add flags by overwriting the file in place.
_CMDLINE_PAD = 64


class EEPROMError(ValueError):
    """Raised when an EEPROM package lacks the expected update files."""


def cmdline_contents(pack: Pack, serial_console: str, base: str) -> str:
    """The padded kernel command line built from the kernel's cmdline.txt."""
    cmdline = "console=tty1 "
    if serial_console not in ("disabled", "off"):
        if serial_console == "UART0":
            # The special value UART0 stands for serial0,115200.
            cmdline += "console=serial0,115200 "
        else:
            cmdline += "console=" + serial_console + " "
    cmdline += base

    if pack.modify_cmdline_root():
        root = "root=" + pack.root()
        cmdline = cmdline.replace("root=/dev/mmcblk0p2", root)
        cmdline = cmdline.replace("root=/dev/sda2", root)
    else:
        log.info("(not using PARTUUID= in cmdline.txt yet)")

    return cmdline + " " * _CMDLINE_PAD


def config_contents(base: str, serial_console: str, extra_lines: Sequence[str]) -> str:
    """The bootloader config.txt built from the kernel's config.txt."""
    config = base
    if serial_console != "off":
        config = config.replace("enable_uart=0", "enable_uart=1")
    return config + "\n" + "\n".join(extra_lines)


def shorten_sha256(digest: bytes) -> str:
    """The first 10 hex digits of a digest."""
    return digest.hex()[:10]


def _has_magic(part: str) -> bool:
    return any(ch in part for ch in "*?[")


def _glob(src_dir: str, pattern: str) -> list[str]:
    """Relative slash-separated paths below src_dir matching pattern, sorted.

    Unlike the standard glob module, names starting with a dot match too.
    """
    candidates = [""]
    for part in pattern.split("/"):
        matched: list[str] = []
        for rel in candidates:
            directory = os.path.join(src_dir, *rel.split("/")) if rel else src_dir
            if not _has_magic(part):
                joined = posixpath.join(rel, part) if rel else part
                if os.path.lexists(os.path.join(directory, part)):
                    matched.append(joined)
                continue
            try:
                names = sorted(os.listdir(directory))
            except OSError:
                continue
            matched.extend(
                posixpath.join(rel, name) if rel else name
                for name in names
                if fnmatch.fnmatchcase(name, part)
            )
        candidates = matched
    return sorted(candidates)


def glob_boot_files(src_dir: str, globs: Iterable[str]) -> list[tuple[str, str]]:
    """Pairs of (host path, boot file system path) for files matching globs."""
    result: list[tuple[str, str]] = []
    for pattern in globs:
        for rel in _glob(src_dir, pattern):
            host_path = os.path.join(src_dir, *rel.split("/"))
            result.append((host_path, "/" + rel))
    return result


def select_eeprom_file(pattern: str) -> str:
    """The matching EEPROM file that sorts last, i.e. the most recent one."""
    directory, base = os.path.split(pattern)
    matches = _glob(directory or ".", base)
    if not matches:
        raise EEPROMError(f"invalid -eeprom_package: no files matching {base}")
    return os.path.join(directory, max(matches))