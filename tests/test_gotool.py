import json
import os
import subprocess
from unittest.mock import patch

import pytest

from gokrpack import gotool
from gokrpack.gotool import BuildEnv, GoToolError, Pkg


def _completed(args, stdout="", returncode=0):
    return subprocess.CompletedProcess(args, returncode, stdout=stdout)


def test_default_tags():
    assert gotool.default_tags() == ["gokrazy", "netgo", "osusergo"]


def test_target_arch_default(monkeypatch):
    monkeypatch.delenv("GOARCH", raising=False)
    assert gotool.target_arch() == "arm64"


def test_target_arch_from_env(monkeypatch):
    monkeypatch.setenv("GOARCH", "amd64")
    assert gotool.target_arch() == "amd64"


def test_go_env_adds_cgo_and_clears_gobin(monkeypatch):
    monkeypatch.delenv("CGO_ENABLED", raising=False)
    monkeypatch.delenv("GOARCH", raising=False)
    monkeypatch.delenv("GOOS", raising=False)
    monkeypatch.setenv("GOBIN", "/somewhere/bin")
    result = gotool.go_env()
    assert "CGO_ENABLED=0" in result
    assert "GOBIN=/somewhere/bin" not in result
    assert result[-3:] == ["GOARCH=arm64", "GOOS=linux", "GOBIN="]


def test_go_env_keeps_cgo_setting(monkeypatch):
    monkeypatch.setenv("CGO_ENABLED", "1")
    result = gotool.go_env()
    assert "CGO_ENABLED=1" in result
    assert "CGO_ENABLED=0" not in result


def test_env_is_stable():
    result = gotool.env()
    assert result[-1] == "GOBIN="
    assert any(entry.startswith("GOARCH=") for entry in result)
    assert any(entry.startswith("GOOS=") for entry in result)
    assert gotool.env() == result


def test_init_deps():
    assert gotool.init_deps("") == ["github.com/gokrazy/gokrazy"]
    assert gotool.init_deps("example.com/myinit") == ["example.com/myinit"]


def test_build_dir_without_go_mod(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert gotool.build_dir("github.com/foo/bar/...") == os.path.join(
        "builddir", "github.com", "foo", "bar"
    )


def test_build_dir_finds_least_specific_go_mod(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    org = tmp_path / "builddir" / "github.com" / "foo"
    org.mkdir(parents=True)
    (org / "go.mod").write_text("module x\n")
    assert gotool.build_dir("github.com/foo/bar/cmd/baz") == os.path.join(
        "builddir", "github.com", "foo"
    )


def test_build_dir_single_builddir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "builddir").mkdir()
    (tmp_path / "builddir" / "go.mod").write_text("module x\n")
    assert gotool.build_dir("github.com/foo/bar") == "builddir"


def test_build_dir_or_migrate_without_root_go_mod(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    directory = gotool.build_dir_or_migrate("example.com/pkg")
    base = os.path.basename(os.getcwd())
    content = (tmp_path / directory / "go.mod").read_text()
    assert content == f"module gokrazy/build/{base}\n"
    assert (tmp_path / directory / "go.sum").read_bytes() == b""


def test_build_dir_or_migrate_rewrites_replaces(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "go.mod").write_text(
        "module example.com/router\n\n"
        "go 1.21\n\n"
        "replace example.com/lib => ../lib\n"
        "replace (\n"
        "\texample.com/other v1.0.0 => example.com/fork v1.2.0\n"
        ")\n"
    )
    (tmp_path / "go.sum").write_text("sumline\n")
    wd = os.getcwd()
    directory = gotool.build_dir_or_migrate("example.com/pkg")
    content = (tmp_path / directory / "go.mod").read_text()
    base = os.path.basename(wd)
    assert content.startswith(f"module gokrazy/build/{base}\n")
    expected_lib = os.path.normpath(os.path.join(wd, "../lib"))
    assert f"replace example.com/lib => {expected_lib}" in content
    assert "example.com/other v1.0.0 => example.com/fork v1.2.0" in content
    assert (tmp_path / directory / "go.sum").read_text() == "sumline\n"


def test_build_dir_or_migrate_keeps_existing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    existing = tmp_path / "builddir" / "example.com" / "pkg"
    existing.mkdir(parents=True)
    (existing / "go.mod").write_text("module keep\n")
    directory = gotool.build_dir_or_migrate("example.com/pkg")
    assert (tmp_path / directory / "go.mod").read_text() == "module keep\n"


def test_build_dir_or_migrate_invalid_replace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "go.mod").write_text("module m\nreplace broken\n")
    with pytest.raises(ValueError):
        gotool.build_dir_or_migrate("example.com/pkg")


def test_pkg_basename():
    pkg = Pkg(name="main", import_path="example.com/cmd/hello", target="/go/bin/hello")
    assert pkg.basename() == "hello"


def _list_json(*objs):
    return "\n".join(json.dumps(o, indent=1) for o in objs) + "\n"


def test_main_packages_filters_and_sorts():
    stream = _list_json(
        {"Name": "main", "ImportPath": "example.com/cmd/zeta", "Target": "/bin/zeta"},
        {"Name": "lib", "ImportPath": "example.com/lib", "Target": ""},
        {"Name": "main", "ImportPath": "example.com/cmd/alpha", "Target": "/bin/alpha"},
    )
    env_ = BuildEnv(build_dir=lambda pkg: ".")
    with patch("subprocess.run", return_value=_completed([], stdout=stream)):
        result = env_.main_packages(["example.com/..."])
    assert [p.basename() for p in result] == ["alpha", "zeta"]
    assert all(p.name == "main" for p in result)


def test_main_packages_command_failure():
    env_ = BuildEnv(build_dir=lambda pkg: ".")
    with patch("subprocess.run", return_value=_completed([], returncode=1)):
        with pytest.raises(GoToolError):
            env_.main_packages(["example.com/x"])


def test_build_reports_build_dir_failure():
    def failing(pkg):
        raise OSError("boom")

    env_ = BuildEnv(build_dir=failing)
    with pytest.raises(GoToolError, match=r"buildDir\(example.com/kernel\)"):
        env_.build("/bin", [], None, None, ["example.com/kernel"])


def test_build_invokes_go_build(tmp_path):
    calls = []
    stream = _list_json(
        {"Name": "main", "ImportPath": "example.com/cmd/hello", "Target": "/x/hello"}
    )

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        if cmd[1] == "list" and "-json" in cmd:
            return _completed(cmd, stdout=stream)
        if cmd[1] == "list":
            return _completed(cmd, stdout="example.com/cmd/hello ok\n")
        return _completed(cmd)

    env_ = BuildEnv(build_dir=lambda pkg: str(tmp_path))
    with patch("subprocess.run", side_effect=fake_run):
        result = env_.build(
            "/out",
            ["example.com/cmd/hello"],
            {"example.com/cmd/hello": ["-ldflags=-s"]},
            {"example.com/cmd/hello": ["extra"]},
            [],
        )
    assert result is None
    builds = [c for c in calls if c[1] == "build"]
    assert len(builds) == 1
    build = builds[0]
    assert build[build.index("-o") + 1] == os.path.join("/out", "hello")
    assert "-tags=gokrazy,netgo,osusergo,extra" in build
    assert "-ldflags=-s" in build
    assert build[-1] == "example.com/cmd/hello"
    assert not any(c[1] == "get" for c in calls)


def test_build_gets_incomplete_packages(tmp_path):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        if cmd[1] == "list":
            return _completed(cmd, stdout="example.com/kernel error\n")
        if cmd[1] == "env":
            return _completed(cmd, stdout="https://proxy.example.com\n")
        return _completed(cmd)

    env_ = BuildEnv(build_dir=lambda pkg: str(tmp_path))
    with patch("subprocess.run", side_effect=fake_run):
        result = env_.build("/out", [], None, None, ["example.com/kernel"])
    assert result is None
    gets = [c for c in calls if c[1] == "get"]
    assert gets == [["go", "get", "example.com/kernel"]]


def test_package_dirs_keeps_order(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    def fake_run(cmd, **kwargs):
        return _completed(cmd, stdout=f"/src/{cmd[-1]}\n")

    pkgs = ["example.com/b", "example.com/a", "example.com/c"]
    with patch("subprocess.run", side_effect=fake_run):
        dirs = gotool.package_dirs(pkgs)
    assert dirs == [f"/src/{p}" for p in pkgs]


def test_package_dir_failure(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with patch("subprocess.run", return_value=_completed([], returncode=2)):
        with pytest.raises(GoToolError):
            gotool.package_dir("example.com/a")