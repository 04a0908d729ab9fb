"""Locating the CA certificates to install into the root file system."""

from __future__ import annotations

import os
import ssl
import sys
from typing import Sequence

try:
    import pwd
except ImportError:  # not available on every platform
    pwd = None  # type: ignore[assignment]

if sys.platform.startswith("linux"):
    CERT_FILES: tuple[str, ...] = (
        "/etc/ssl/certs/ca-certificates.crt",  # Debian/Ubuntu/Gentoo etc.
        "/etc/pki/ca-trust/extracted/pem/tls-ca-bundle.pem",  # CentOS/RHEL 7
        "/etc/pki/tls/certs/ca-bundle.crt",  # Fedora/RHEL 6
        "/etc/ssl/ca-bundle.pem",  # OpenSUSE
        "/etc/pki/tls/cacert.pem",  # OpenELEC
    )
else:
    CERT_FILES = ()


class HomeDirError(LookupError):
    """Raised when the home directory cannot be determined."""


def homedir() -> str:
    """The current user's home directory."""
    if pwd is not None:
        try:
            return pwd.getpwuid(os.getuid()).pw_dir
        except (KeyError, OSError):
            pass
    home = os.environ.get("HOME", "")
    if home:
        return home
    raise HomeDirError("$HOME is unset and user.Current failed")


def _read_text(path: str) -> str | None:
    try:
        with open(path, encoding="utf-8") as f:
            return f.read()
    except (OSError, UnicodeDecodeError):
        return None


def _default_trust_store() -> str:
    paths = ssl.get_default_verify_paths()
    for candidate in (paths.cafile, paths.openssl_cafile):
        if candidate:
            content = _read_text(candidate)
            if content:
                return content
    context = ssl.create_default_context()
    ders = context.get_ca_certs(binary_form=True)
    return "".join(ssl.DER_cert_to_PEM_cert(der) for der in ders)


def system_certs_pem(cert_files: Sequence[str] | None = None, home: str | None = None) -> str:
    """PEM-encoded CA certificates from the host.

    The first readable file of cert_files wins, then the fallback
    ~/.config/gokrazy/cacert.pem, then the default trust store.
    """
    if cert_files is None:
        cert_files = CERT_FILES
    for fn in cert_files:
        content = _read_text(fn)
        if content is None:
            continue
        print(f"Loading system CA certificates from {fn}")
        return content

    # Perhaps the user arranged for a fallback certificate store.
    if home is None:
        home = homedir()
    fallback = os.path.join(home, ".config", "gokrazy", "cacert.pem")
    content = _read_text(fallback)
    if content is not None:
        print(f"Loading system CA certificates from {fallback}")
        return content

    content = _default_trust_store()
    if not content:
        raise FileNotFoundError("no CA certificates found on this host")
    print("Loading system CA certificates from default trust store")
    return content