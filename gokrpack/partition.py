"""Partition tables for gokrazy images: hybrid MBR, GPT and MBR-only layouts."""

from __future__ import annotations

import logging
import os
import re
import struct
import sys
import uuid
import zlib
from dataclasses import dataclass, field
from typing import BinaryIO

log = logging.getLogger(__name__)

MB = 1024 * 1024

_ACTIVE = 0x80
_INACTIVE = 0x00
# Invalid CHS values make firmware use the LBA sector values instead.
_INVALID_CHS = b"\xfe\xff\xff"

FAT = 0x0C
LINUX = 0x83
SQUASHFS = LINUX  # SquashFS has no dedicated partition type

_SIGNATURE = 0xAA55
_GPT_PROTECTIVE = 0xEE

_GOKRAZY_GUID_PREFIX = "60c24cc1-f3f9-427a-8199"

_PARTITION_TYPE_EFI_SYSTEM = "C12A7328-F81F-11D2-BA4B-00A0C93EC93B"
_PARTITION_TYPE_LINUX_DATA = "0FC63DAF-8483-4772-8E79-3D69D8477DE4"
_PARTITION_TYPE_ROOT_AMD64 = "4F68BCE3-E8CD-4DB1-96E7-FBCAF984B709"
_PARTITION_TYPE_ROOT_ARM64 = "B921B045-1DF0-41C3-AF44-4C6F280D3FAE"

_GUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

_GPT_HEADER = struct.Struct("<8sIIIIQQQQ16sQIII")
_GPT_ENTRY = struct.Struct("<16s16sQQQ72s")
_GPT_ENTRY_COUNT = 128
_GPT_ENTRY_SIZE = 128

_U32 = 0xFFFFFFFF

_REREAD_UNSUPPORTED = (
    "gokrazy is currently missing code for re-reading partition tables on your "
    "operating system; re-plug the device instead"
)

# _IO(0x12, 95) from linux/fs.h
_BLKRRPART = 0x125F


class DeviceTooSmallError(ValueError):
    """Raised when a device cannot hold a gokrazy installation."""


@dataclass
class ExistingEEPROM:
    """Signatures of the EEPROM images already installed on a device."""

    pieeprom_sha256: str = ""  # pieeprom.sig
    vl805_sha256: str = ""  # vl805.sig


def _fnv1a32(data: bytes) -> int:
    h = 0x811C9DC5
    for byte in data:
        h ^= byte
        h = (h * 0x01000193) & _U32
    return h


def _mbr_entry(status: int, ptype: int, start: int, size: int) -> bytes:
    return (
        bytes([status])
        + _INVALID_CHS
        + bytes([ptype])
        + _INVALID_CHS
        + struct.pack("<II", start & _U32, size & _U32)
    )


def _perm_size(devsize: int) -> int:
    perm_start = (8192 + 1100 * MB // 512) & _U32
    perm_size = (devsize // 512 - 8192 - 1100 * MB // 512) & _U32
    # LBA -33 to LBA -1 need to remain unused for the secondary GPT header.
    last_addressable = (devsize // 512 - 1) & _U32
    last_lba = (last_addressable - 33) & _U32
    end = (perm_start + perm_size) & _U32
    if end >= last_lba:
        perm_size = (perm_size - (end - last_lba)) & _U32
    return perm_size


def perm_size_in_kb(devsize: int) -> int:
    """Size of the /perm partition in KiB for a device of devsize bytes."""
    perm_size_bytes = (_perm_size(devsize) * 512) & _U32
    return perm_size_bytes // 1024


def write_partition_table(w: BinaryIO, devsize: int) -> None:
    """Write a hybrid MBR: the FAT boot partition plus the GPT protective partition."""
    table = b"".join(
        [
            bytes(446),  # boot code
            # Partition 1 must be present for the Raspberry Pi bootloader.
            _mbr_entry(_ACTIVE, FAT, 8192, 100 * MB // 512),
            # Partition 2 makes the Linux kernel recognize the disk as GPT.
            _mbr_entry(_INACTIVE, _GPT_PROTECTIVE, 1, 8191),
            bytes(16),  # partition 3
            bytes(16),  # partition 4
            struct.pack("<H", _SIGNATURE),
        ]
    )
    w.write(table)


def write_mbr_partition_table(w: BinaryIO, devsize: int) -> None:
    """Write an MBR-only table, for devices whose blobs clobber GPT sectors."""
    table = b"".join(
        [
            bytes(446),  # boot code
            _mbr_entry(_ACTIVE, FAT, 8192, 100 * MB // 512),
            # Partitions 2 and 3 are the two squashfs root partitions.
            _mbr_entry(_INACTIVE, LINUX, 8192 + 100 * MB // 512, 500 * MB // 512),
            _mbr_entry(_INACTIVE, LINUX, 8192 + 600 * MB // 512, 500 * MB // 512),
            # Partition 4 is the perm partition.
            _mbr_entry(
                _INACTIVE,
                LINUX,
                8192 + 1100 * MB // 512,
                devsize // 512 - 8192 - 1100 * MB // 512,
            ),
            struct.pack("<H", _SIGNATURE),
        ]
    )
    w.write(table)


def must_parse_guid(guid: str) -> bytes:
    """Encode a textual GUID in its 16-byte mixed-endian on-disk form."""
    if not _GUID_RE.match(guid):
        raise ValueError(f"invalid GUID: {guid!r}")
    return uuid.UUID(guid).bytes_le


def partition_name(name: str) -> bytes:
    """Encode a GPT partition name as 72 bytes of UTF-16LE."""
    if len(name) > 36:
        raise ValueError(
            f"Cannot use {name} as partition name, has {len(name)} Unicode code "
            "units, maximum size is 36"
        )
    encoded = name.encode("utf-16-le")
    if len(encoded) > 72:
        raise ValueError(f"Cannot use {name} as partition name, UTF-16 encoding exceeds 72 bytes")
    return encoded.ljust(72, b"\x00")


@dataclass
class Pack:
    """Partitioning choices for one installation."""

    partuuid: int = 0
    use_partuuid: bool = False
    use_gpt_partuuid: bool = False
    use_gpt: bool = False
    existing_eeprom: ExistingEEPROM = field(default_factory=ExistingEEPROM)

    def modify_cmdline_root(self) -> bool:
        """Whether the kernel command line's root= needs rewriting."""
        return self.use_partuuid or self.use_gpt_partuuid

    def gpt_partuuid(self, partition: int) -> str:
        """GPT partition GUID: a fixed prefix, the hostname hash and the partition number."""
        return f"{_GOKRAZY_GUID_PREFIX}-{self.partuuid:08x}00{partition:02x}"

    def root(self) -> str:
        if self.use_gpt_partuuid:
            return f"PARTUUID={self.gpt_partuuid(1)}/PARTNROFF=1"
        if self.use_partuuid:
            return f"PARTUUID={self.partuuid:08x}-02"
        return ""  # only meaningful if modify_cmdline_root()

    def perm_uuid(self) -> str:
        if self.use_gpt_partuuid:
            return self.gpt_partuuid(4)
        if self.use_partuuid:
            return f"{self.partuuid:08x}-04"
        return ""  # only meaningful if modify_cmdline_root()

    def _partition_entries(self, devsize: int) -> bytes:
        p0_first = 8192
        p0_last = p0_first + 100 * MB // 512 - 1
        p1_first = p0_last + 1
        p1_last = p1_first + 500 * MB // 512 - 1
        p2_first = p1_last + 1
        p2_last = p2_first + 500 * MB // 512 - 1
        p3_first = p2_last + 1
        p3_last = p3_first + _perm_size(devsize) - 1

        root_type = _PARTITION_TYPE_ROOT_ARM64
        if os.environ.get("GOARCH") == "amd64":
            root_type = _PARTITION_TYPE_ROOT_AMD64

        specs = [
            (_PARTITION_TYPE_EFI_SYSTEM, 1, p0_first, p0_last, "Microsoft basic data"),
            (root_type, 2, p1_first, p1_last, "Linux filesystem"),
            (_PARTITION_TYPE_LINUX_DATA, 3, p2_first, p2_last, "Linux filesystem"),
            (_PARTITION_TYPE_LINUX_DATA, 4, p3_first, p3_last, "Linux filesystem"),
        ]
        entries = b"".join(
            _GPT_ENTRY.pack(
                must_parse_guid(type_guid),
                must_parse_guid(self.gpt_partuuid(num)),
                first,
                last,
                0,
                partition_name(name),
            )
            for type_guid, num, first, last, name in specs
        )
        return entries + bytes((_GPT_ENTRY_COUNT - len(specs)) * _GPT_ENTRY_SIZE)

    def write_gpt(self, w: BinaryIO, devsize: int, primary: bool) -> None:
        """Write the primary (header, entries) or backup (entries, header) GPT."""
        entries = self._partition_entries(devsize)
        entries_checksum = zlib.crc32(entries) & _U32

        last_addressable = devsize // 512 - 1  # 0-indexed
        current_lba = 1
        backup_lba = last_addressable
        entries_start = 2
        if not primary:
            current_lba = backup_lba
            entries_start = backup_lba - 32
            backup_lba = 1

        def header(crc: int) -> bytes:
            return _GPT_HEADER.pack(
                b"EFI PART",
                0x00010000,  # revision 1.0
                _GPT_HEADER.size,
                crc,
                0,
                current_lba,
                backup_lba,
                34,
                last_addressable - 32 - 1,
                must_parse_guid(self.gpt_partuuid(0)),
                entries_start,
                _GPT_ENTRY_COUNT,
                _GPT_ENTRY_SIZE,
                entries_checksum,
            )

        unsigned = header(0)
        if len(unsigned) != 92:
            raise AssertionError(f"BUG: header size: got {len(unsigned)}, want 92")
        signed = header(zlib.crc32(unsigned) & _U32)

        if not primary:
            w.write(entries)
        w.write(signed)
        w.write(bytes(420))  # padding to the end of the sector
        if primary:
            w.write(entries)

    def partition(self, o: BinaryIO, devsize: int) -> None:
        """Write the partition tables for a device of devsize bytes to o."""
        minsize = 1100 * MB
        if devsize < minsize:
            raise DeviceTooSmallError(
                f"device is too small (at least {minsize // MB} MB needed, "
                f"{devsize // MB} MB available)"
            )
        if not self.use_gpt:
            write_mbr_partition_table(o, devsize)
            return

        write_partition_table(o, devsize)
        self.write_gpt(o, devsize, primary=True)

        last_addressable = devsize // 512 - 1
        lba_minus_33 = last_addressable - 32
        o.seek(lba_minus_33 * 512, os.SEEK_SET)
        self.write_gpt(o, devsize, primary=False)

    def reread_partitions(self, o: BinaryIO) -> None:
        """Ask the kernel to re-read the partition table, logging on failure."""
        if hasattr(os, "sync"):
            os.sync()
        try:
            _reread_partitions(o)
        except OSError as exc:
            log.warning(
                "Re-reading partition table failed: %s. Remember to unplug and "
                "re-plug the SD card before creating a file system for persistent "
                "data, if desired.",
                exc,
            )
        if hasattr(os, "sync"):
            os.sync()


def _reread_partitions(o: BinaryIO) -> None:
    if not sys.platform.startswith("linux"):
        raise OSError(_REREAD_UNSUPPORTED)
    import fcntl

    fcntl.ioctl(o.fileno(), _BLKRRPART, 0)
    o.flush()
    os.fsync(o.fileno())


def new_pack_for_host(hostname: str) -> Pack:
    """A Pack whose partition UUIDs derive from the FNV-1a hash of hostname."""
    return Pack(
        partuuid=_fnv1a32(hostname.encode("utf-8")),
        use_partuuid=True,
        use_gpt_partuuid=True,
        use_gpt=True,
    )