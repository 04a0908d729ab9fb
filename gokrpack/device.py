"""Partitioning block devices, with a sudo fallback that passes the device back over a socket."""

from __future__ import annotations

import errno
import logging
import os
import socket
import struct
import subprocess
import sys
import threading
from typing import BinaryIO

from gokrpack.partition import Pack

log = logging.getLogger(__name__)

FD_ENV = "GOKR_PACKER_FD"

# _IOR(0x12, 114, size_t) from linux/fs.h; the size field depends on size_t.
_BLKGETSIZE64 = 0x80001272 | (struct.calcsize("P") << 16)

# From the macOS disk ioctl header.
_DKIOCGETBLOCKCOUNT = 0x40086419  # e.g. 31116288
_DKIOCGETBLOCKSIZE = 0x40046418  # e.g. 512

_DEVICE_SIZE_UNSUPPORTED = (
    "gokrazy is currently missing code for getting device sizes on your "
    "operating system"
)


class NotADeviceError(ValueError):
    """Raised when a path does not refer to a block device."""


class SudoPartitionError(RuntimeError):
    """Raised when partitioning through sudo did not yield a device."""


def device_size(fd: int) -> int:
    """Size in bytes of the block device open as fd."""
    if sys.platform.startswith("linux"):
        import fcntl

        buf = bytearray(8)
        fcntl.ioctl(fd, _BLKGETSIZE64, buf, True)
        return struct.unpack("=Q", buf)[0]
    if sys.platform == "darwin":
        import fcntl

        blocksize = bytearray(4)
        fcntl.ioctl(fd, _DKIOCGETBLOCKSIZE, blocksize, True)
        blockcount = bytearray(8)
        fcntl.ioctl(fd, _DKIOCGETBLOCKCOUNT, blockcount, True)
        return struct.unpack("=I", blocksize)[0] * struct.unpack("=Q", blockcount)[0]
    raise OSError(errno.ENOSYS, _DEVICE_SIZE_UNSUPPORTED)


def partition_device(pack: Pack, o: BinaryIO, path: str) -> None:
    """Write the partition tables to the device open as o and have them re-read."""
    devsize = device_size(o.fileno())
    log.info("device holds %d bytes", devsize)
    if devsize == 0:
        raise NotADeviceError(f"path {path} does not seem to be a device")
    pack.partition(o, devsize)
    pack.reread_partitions(o)


def _child_fd() -> int | None:
    try:
        return int(os.environ.get(FD_ENV, ""))
    except ValueError:
        return None


def _reap(proc: subprocess.Popen, cmd: list[str]) -> None:
    rc = proc.wait()
    if rc != 0:
        log.error("%s: exit status %d", cmd, rc)


def sudo_partition(pack: Pack, path: str) -> BinaryIO | None:
    """Partition path as root via sudo and return the opened device.

    When running as the privileged child (FD_ENV is set), partition the
    device, send its file descriptor to the parent and return None.
    """
    fd = _child_fd()
    if fd is not None:
        conn = socket.socket(fileno=fd)
        try:
            with open(path, "w+b") as f:
                partition_device(pack, f, path)
                f.flush()
                socket.send_fds(conn, [b"\0"], [f.fileno()])
        finally:
            conn.detach()
        return None

    parent_sock, child_sock = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
    # Use an absolute interpreter path: $PATH might differ under sudo.
    cmd = ["sudo", "--preserve-env", sys.executable, *sys.orig_argv[1:]]
    # sudo closes all file descriptors but stdin, stdout and stderr, so the
    # socket is handed to the child as its stdout.
    child_env = {FD_ENV: "1", "HOME": os.environ.get("HOME", "")}
    with parent_sock:
        try:
            proc = subprocess.Popen(cmd, env=child_env, stdout=child_sock.fileno())
        finally:
            child_sock.close()
        _msg, fds, _flags, _addr = socket.recv_fds(parent_sock, 1, 2)

    if len(fds) != 1:
        for extra in fds:
            os.close(extra)
        rc = proc.wait() if not fds else None
        detail = f" (exit status {rc})" if rc is not None else ""
        raise SudoPartitionError(
            f"{cmd}: received {len(fds)} file descriptors, want 1{detail}"
        )
    threading.Thread(target=_reap, args=(proc, cmd), daemon=True).start()
    return os.fdopen(fds[0], "r+b")


def partition(pack: Pack, path: str, sudo: str = "auto") -> BinaryIO | None:
    """Open and partition the device at path, escalating through sudo if allowed.

    sudo is "always", "auto" (only on permission errors) or anything else for never.
    """
    if sudo == "always":
        return sudo_partition(pack, path)
    try:
        o = open(path, "w+b")
    except PermissionError as exc:
        if exc.errno == errno.EACCES and sudo == "auto":
            log.info("Using sudo to gain permission to format %s", path)
            log.info("If you prefer, cancel and use: sudo setfacl -m u:${USER}:rw %s", path)
            return sudo_partition(pack, path)
        raise
    except OSError as exc:
        if exc.errno == errno.EROFS:
            log.warning(
                "%s read-only; check if you have a physical write-protect switch "
                "on your SD card?",
                path,
            )
        raise
    try:
        partition_device(pack, o, path)
    except BaseException:
        o.close()
        raise
    return o