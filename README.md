# gokrpack

A library of build-host helpers for putting together appliance images that
run a set of Go programs on a small Linux system, such as a Raspberry Pi or
a PC.

## Modules

- **`gokrpack.gotool`** – driving the `go` tool. `build_dir` finds the most
  specific `builddir/` directory holding a `go.mod` for an import path;
  `build_dir_or_migrate` creates it and bootstraps its `go.mod`/`go.sum`
  from the working directory, rewriting relative `replace` paths to
  absolute ones. `env`, `go_env`, `target_arch` (default `arm64`, or
  `GOARCH`) and `default_tags` describe the cross-compilation environment.
  `BuildEnv.build` fetches missing packages with `go get` and compiles all
  main packages into a directory; `BuildEnv.main_packages` lists main
  packages as `Pkg` objects sorted by binary name. `package_dir` and
  `package_dirs` resolve package source directories. `init_deps` names the
  packages the init process needs.
- **`gokrpack.partition`** – `new_pack_for_host` derives a `Pack` from the
  FNV-1a hash of a hostname. A `Pack` gives GPT partition GUIDs
  (`gpt_partuuid`), the `root=` value (`root`), the `/perm` partition id
  (`perm_uuid`), writes GPT headers (`write_gpt`) and the complete set of
  tables for a device (`partition`), and asks Linux to re-read them
  (`reread_partitions`). `write_partition_table` writes a hybrid MBR,
  `write_mbr_partition_table` an MBR-only table; `perm_size_in_kb`,
  `must_parse_guid` and `partition_name` are the building blocks.
- **`gokrpack.device`** – `device_size` (Linux and macOS), `partition_device`
  and `partition`, which opens a block device and partitions it, falling
  back to re-running the program under `sudo` (`sudo_partition`) on
  permission errors; the privileged child hands the open device back over
  a socket.
- **`gokrpack.filetree`** – the `FileInfo` tree describing the root file
  system: `path_list`, `combine` (merging trees, refusing to overwrite
  files), `must_find_dirent`, and `get_duplication` to find paths present
  in two trees.
- **`gokrpack.initgen`** – `GokrazyInit` generates the Go source of the
  init program that starts every binary as a supervised service, with
  per-binary flags, environment, "don't start" and "wait for clock"
  settings; `dump` writes it to a file and `build` compiles it with `go build`.
- **`gokrpack.bootfiles`** – contents of boot files: `cmdline_contents`
  (kernel command line with console and `root=` handling, padded with 64
  spaces), `config_contents` (`config.txt`), `glob_boot_files` with
  `KERNEL_GLOBS` and `FIRMWARE_GLOBS`, `select_eeprom_file` and
  `shorten_sha256`.
- **`gokrpack.certs`** – self-signed certificates for the web interface:
  `generate_and_sign_cert`, `generate_and_store_self_signed_certificate`,
  `validate_certificate`, `certificate_from_string` and
  `certificate_fingerprint_sha1`.
- **`gokrpack.cacerts`** – `system_certs_pem` picks the CA bundle to place
  in the image: a system bundle, then `~/.config/gokrazy/cacert.pem`, then
  Python's default trust store; `homedir` finds the home directory.
- **`gokrpack.hostfiles`** – `host_localtime` (host `/etc/localtime` or the
  `Factory` zone from Go's `zoneinfo.zip`), `file_is_elf`,
  `write_gaf_archive` (an uncompressed zip of a directory) and
  `poll_updated`, which checks that a device reports the expected build
  timestamp.
- **`gokrpack.dirhash`** – `quick_hash` and `hash_dir`, an FNV-128 based
  hash of a module directory, printed as `qh:` plus base64.
- **`gokrpack.pwgen`** – `random_password` makes random alphanumeric passwords.
- **`gokrpack.version`** – `read_parts`, `read` and `read_brief` format a
  build revision from build settings or a pseudo-version.

## Installation

```
pip install .
```

Building packages and the init program needs a Go toolchain on `PATH`.

## Example

```python
from gokrpack.partition import new_pack_for_host

pack = new_pack_for_host("appliance")
print(pack.root())       # PARTUUID=60c24cc1-f3f9-427a-8199-<hash>0001/PARTNROFF=1
print(pack.perm_uuid())

with open("disk.img", "w+b") as img:
    size = 2 * 1024 * 1024 * 1024
    img.truncate(size)
    pack.partition(img, size)
```

## What it does not do

This is a library only; it has no command-line program. It does not write
FAT boot or SquashFS root file system images, does not write the boot
loader code into the MBR, and does not upload images to a running device:
`bootfiles` only computes file contents and selects files, and `hostfiles`
only polls a device's reported build timestamp.

## Tests

```
pip install .[test]
pytest
```