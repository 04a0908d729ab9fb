import os
import pwd

import pytest

from gokrpack.cacerts import HomeDirError, homedir, system_certs_pem

PEM_A = "-----BEGIN CERTIFICATE-----\nAAAA\n-----END CERTIFICATE-----\n"
PEM_B = "-----BEGIN CERTIFICATE-----\nBBBB\n-----END CERTIFICATE-----\n"


def test_first_readable_cert_file_wins(tmp_path, capsys):
    a = tmp_path / "a.pem"
    b = tmp_path / "b.pem"
    a.write_text(PEM_A)
    b.write_text(PEM_B)
    got = system_certs_pem([str(tmp_path / "missing.pem"), str(a), str(b)], str(tmp_path))
    assert got == PEM_A
    assert f"from {a}" in capsys.readouterr().out


def test_fallback_in_home(tmp_path, capsys):
    fallback = tmp_path / ".config" / "gokrazy" / "cacert.pem"
    fallback.parent.mkdir(parents=True)
    fallback.write_text(PEM_B)
    got = system_certs_pem([str(tmp_path / "missing.pem")], str(tmp_path))
    assert got == PEM_B
    assert os.path.join(".config", "gokrazy", "cacert.pem") in capsys.readouterr().out


def test_homedir_falls_back_to_home_env(monkeypatch, tmp_path):
    def fail(uid):
        raise KeyError(uid)

    monkeypatch.setattr(pwd, "getpwuid", fail)
    monkeypatch.setenv("HOME", str(tmp_path))
    assert homedir() == str(tmp_path)


def test_homedir_unset_raises(monkeypatch):
    def fail(uid):
        raise KeyError(uid)

    monkeypatch.setattr(pwd, "getpwuid", fail)
    monkeypatch.delenv("HOME", raising=False)
    with pytest.raises(HomeDirError):
        homedir()


def test_homedir_uses_user_database():
    assert homedir() == pwd.getpwuid(os.getuid()).pw_dir