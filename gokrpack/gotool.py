"""Driving the go tool: build directories, environment, package listing and builds."""

from __future__ import annotations

import functools
import json
import logging
import os
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Sequence

log = logging.getLogger(__name__)

_DEFAULT_INIT_DEP = "github.com/gokrazy/gokrazy"


class GoToolError(RuntimeError):
    """Raised when an invocation of the go tool fails."""


class GoModError(ValueError):
    """Raised when a go.mod file cannot be understood."""


def default_tags() -> list[str]:
    """Build tags every gokrazy binary is compiled with."""
    return ["gokrazy", "netgo", "osusergo"]


def target_arch() -> str:
    """The GOARCH to build for; defaults to arm64 (Raspberry Pi 3, 4, Zero 2 W)."""
    return os.environ.get("GOARCH") or "arm64"


def go_env() -> list[str]:
    """Compute the environment (as KEY=VALUE entries) for go tool invocations."""
    goarch = target_arch()
    goos = os.environ.get("GOOS") or "linux"

    cgo_enabled_found = False
    result = []
    for key, value in os.environ.items():
        entry = f"{key}={value}"
        if key == "CGO_ENABLED":
            cgo_enabled_found = True
        if key == "GOBIN":
            entry = "GOBIN="
        result.append(entry)
    if not cgo_enabled_found:
        result.append("CGO_ENABLED=0")
    result.extend([f"GOARCH={goarch}", f"GOOS={goos}", "GOBIN="])
    return result


@functools.lru_cache(maxsize=None)
def _cached_env() -> tuple[str, ...]:
    return tuple(go_env())


def env() -> list[str]:
    """The go tool environment, computed once per process."""
    return list(_cached_env())


def _env_mapping() -> dict[str, str]:
    mapping: dict[str, str] = {}
    for entry in env():
        key, _, value = entry.partition("=")
        mapping[key] = value
    return mapping


def init_deps(init_pkg: str) -> list[str]:
    """Packages the init process depends on."""
    if init_pkg:
        return [init_pkg]
    # The default init template requires the gokrazy package.
    return [_DEFAULT_INIT_DEP]


def build_dir(import_path: str) -> str:
    """Find the most specific builddir/ directory holding a go.mod for import_path.

    Searching goes from the most specific directory up to builddir/ itself, so
    users can choose per-package, per-module, per-org or a single builddir.
    Without any go.mod the per-package directory is returned.
    """
    if import_path.endswith("/..."):
        import_path = import_path[: -len("/...")]
    directory = os.path.normpath(os.path.join("builddir", import_path))
    parts = directory.split(os.sep)
    for idx in range(len(parts), 0, -1):
        candidate = os.sep.join(parts[:idx])
        if os.path.exists(os.path.join(candidate, "go.mod")):
            return candidate
    return directory


def _strip_comment(line: str) -> str:
    idx = line.find("//")
    if idx >= 0:
        line = line[:idx]
    return line.strip()


def _unquote(token: str) -> str:
    if len(token) >= 2 and token[0] == token[-1] and token[0] in "\"`":
        return token[1:-1]
    return token


def _quote(path: str) -> str:
    if any(ch.isspace() for ch in path) or '"' in path:
        return json.dumps(path)
    return path


def _fix_replace(spec: str, wd: str) -> str:
    old, sep, new = spec.partition("=>")
    if not sep:
        raise GoModError(f"go.mod: invalid replace directive: {spec!r}")
    old_tokens = old.split()
    new_tokens = new.split()
    if not old_tokens or not new_tokens or len(old_tokens) > 2 or len(new_tokens) > 2:
        raise GoModError(f"go.mod: invalid replace directive: {spec!r}")
    new_path = _unquote(new_tokens[0])
    if len(new_tokens) == 1 and not os.path.isabs(new_path):
        # Relative replace paths must stay valid from within builddir/.
        new_path = os.path.normpath(os.path.join(wd, new_path))
    rewritten = [_quote(new_path)] + new_tokens[1:]
    return " ".join(old_tokens) + " => " + " ".join(rewritten)


def _rewrite_go_mod(content: str, module_path: str, wd: str) -> str:
    out: list[str] = []
    have_module = False
    in_replace_block = False
    for line in content.splitlines():
        code = _strip_comment(line)
        if in_replace_block:
            if code == ")":
                in_replace_block = False
                out.append(")")
            elif code:
                out.append("\t" + _fix_replace(code, wd))
            else:
                out.append(line)
            continue
        keyword = code.split("(", 1)[0].split(None, 1)[0] if code else ""
        if keyword == "module":
            out.append(f"module {module_path}")
            have_module = True
        elif keyword == "replace":
            rest = code[len("replace"):].strip()
            if rest == "(":
                in_replace_block = True
                out.append("replace (")
            else:
                out.append("replace " + _fix_replace(rest, wd))
        else:
            out.append(line)
    if in_replace_block:
        raise GoModError("go.mod: unterminated replace block")
    if not have_module:
        out.insert(0, f"module {module_path}")
    while out and not out[-1].strip():
        out.pop()
    return "\n".join(out) + "\n"


def build_dir_or_migrate(import_path: str) -> str:
    """Return the build directory for import_path, bootstrapping its go.mod if needed."""
    directory = build_dir(import_path)
    os.makedirs(directory, mode=0o755, exist_ok=True)
    go_mod = os.path.join(directory, "go.mod")
    go_sum = os.path.join(directory, "go.sum")
    if os.path.exists(go_mod):
        return directory

    wd = os.getcwd()
    # A synthetic module path keeps "go get" working when building from
    # within a working copy of one of the modules being built.
    module_path = "gokrazy/build/" + os.path.basename(wd)
    try:
        with open("go.mod", encoding="utf-8") as f:
            root_go_mod = f.read()
        migrating = True
    except FileNotFoundError:
        root_go_mod = f"module {module_path}\n"
        migrating = False

    rewritten = _rewrite_go_mod(root_go_mod, module_path, wd)
    with open(go_mod, "w", encoding="utf-8") as f:
        f.write(rewritten)
    if migrating:
        log.info("Migrated go.mod to %s", go_mod)

    try:
        with open("go.sum", "rb") as f:
            root_go_sum = f.read()
    except FileNotFoundError:
        root_go_sum = b""
    with open(go_sum, "wb") as f:
        f.write(root_go_sum)
    return directory


def _run_go(args: Sequence[str], cwd: str | None, capture: bool = False) -> str:
    cmd = ["go", *args]
    try:
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            env=_env_mapping(),
            stdout=subprocess.PIPE if capture else None,
            text=True,
        )
    except OSError as exc:
        raise GoToolError(f"{cmd}: {exc}") from exc
    if proc.returncode != 0:
        raise GoToolError(f"{cmd}: exit status {proc.returncode}")
    return proc.stdout or ""


def _warn_without_proxy() -> None:
    try:
        out = _run_go(["env", "GOPROXY"], cwd=None, capture=True)
    except GoToolError as exc:
        log.warning("%s", exc)
        return
    if out.strip() != "direct":
        return
    print()
    log.warning(
        "WARNING: you're using GOPROXY=direct, which means the go tool needs "
        "to work with Git repositories, which is inefficient and slow. "
        "Consider enabling a Go module proxy: go env -w GOPROXY=<proxy>,direct"
    )


def _get_incomplete(directory: str, incomplete: list[str]) -> None:
    _warn_without_proxy()
    log.info("getting incomplete packages %s", incomplete)
    _run_go(["get", *incomplete], cwd=directory)


def _get_pkg(directory: str, pkg: str) -> None:
    try:
        output = _run_go(
            [
                "list",
                "-mod=mod",
                "-e",
                "-f",
                "{{ .ImportPath }} {{ if .Incomplete }}error{{ else }}ok{{ end }}",
                pkg,
            ],
            cwd=directory,
            capture=True,
        )
    except GoToolError:
        # Treat any failure as an incomplete package.
        _get_incomplete(directory, [pkg])
        return
    if not output.strip():
        # The pattern matched no packages: try getting the package/module.
        _get_incomplete(directory, [pkg])
        return
    suffix = " error"
    incomplete = [line[: -len(suffix)] for line in output.split("\n") if line.endswith(suffix)]
    if incomplete:
        _get_incomplete(directory, incomplete)


def _wait_all(futures) -> list:
    """Wait for every future; raise the first error after all have finished."""
    results = []
    first_error: BaseException | None = None
    for fut in futures:
        try:
            results.append(fut.result())
        except BaseException as exc:  # noqa: BLE001 - re-raised below
            if first_error is None:
                first_error = exc
    if first_error is not None:
        raise first_error
    return results


@dataclass(frozen=True)
class Pkg:
    """A Go package as reported by go list."""

    name: str
    import_path: str
    target: str

    def basename(self) -> str:
        return os.path.basename(self.target)


def _decode_json_stream(text: str) -> Iterable[dict]:
    decoder = json.JSONDecoder()
    idx = 0
    while True:
        while idx < len(text) and text[idx].isspace():
            idx += 1
        if idx >= len(text):
            return
        obj, idx = decoder.raw_decode(text, idx)
        yield obj


@dataclass
class BuildEnv:
    """Builds Go packages, using build_dir to pick each package's directory."""

    build_dir: Callable[[str], str]

    def _resolve_dir(self, pkg: str, label: str) -> str:
        try:
            return self.build_dir(pkg)
        except Exception as exc:
            raise GoToolError(f"{label}({pkg}): {exc}") from exc

    def build(
        self,
        bindir: str,
        packages: Sequence[str],
        package_build_flags: Mapping[str, Sequence[str]] | None,
        package_build_tags: Mapping[str, Sequence[str]] | None,
        no_build_packages: Sequence[str],
    ) -> None:
        """Fetch missing packages and compile all main packages into bindir."""
        build_flags = package_build_flags or {}
        build_tags = package_build_tags or {}

        for pkg in no_build_packages:
            directory = self._resolve_dir(pkg, "buildDir")
            _get_pkg(directory, pkg)

        with ThreadPoolExecutor() as pool:
            futures = []
            for incomplete in packages:
                directory = self._resolve_dir(incomplete, "buildDir")
                _get_pkg(directory, incomplete)
                for pkg in self.main_packages([incomplete]):
                    args = [
                        "build",
                        "-mod=mod",
                        "-o",
                        os.path.join(bindir, pkg.basename()),
                    ]
                    tags = default_tags() + list(build_tags.get(pkg.import_path, []))
                    args.append("-tags=" + ",".join(tags))
                    args.extend(build_flags.get(pkg.import_path, []))
                    args.append(pkg.import_path)
                    futures.append(pool.submit(_run_go, args, directory))
            _wait_all(futures)

    def _main_package(self, pkg: str) -> list[Pkg]:
        directory = self._resolve_dir(pkg, "BuildDir")
        output = _run_go(["list", "-tags", "gokrazy", "-json", pkg], cwd=directory, capture=True)
        result = []
        for obj in _decode_json_stream(output):
            if obj.get("Name") != "main":
                continue
            result.append(
                Pkg(
                    name=obj.get("Name", ""),
                    import_path=obj.get("ImportPath", ""),
                    target=obj.get("Target", ""),
                )
            )
        return result

    def main_packages(self, pkgs: Sequence[str]) -> list[Pkg]:
        """List the main packages matching pkgs, sorted by binary name."""
        with ThreadPoolExecutor() as pool:
            lists = _wait_all([pool.submit(self._main_package, pkg) for pkg in pkgs])
        result = [p for found in lists for p in found]
        result.sort(key=Pkg.basename)
        return result


def package_dir(pkg: str) -> str:
    """The source directory of pkg, as resolved in its build directory."""
    try:
        directory = build_dir_or_migrate(pkg)
    except Exception as exc:
        raise GoToolError(f"PackageDirs({pkg}): {exc}") from exc
    output = _run_go(
        ["list", "-mod=mod", "-tags", "gokrazy", "-f", "{{ .Dir }}", pkg],
        cwd=directory,
        capture=True,
    )
    return output.strip()


def package_dirs(pkgs: Sequence[str]) -> list[str]:
    """Package directories, in the same order as pkgs."""
    with ThreadPoolExecutor() as pool:
        return _wait_all([pool.submit(package_dir, pkg) for pkg in pkgs])