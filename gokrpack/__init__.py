"""Build-host helpers for appliance disk images: Go toolchain, partitions, init program and boot files."""

__version__ = "0.1.0"