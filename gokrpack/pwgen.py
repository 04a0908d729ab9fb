"""Random password generation."""

import secrets
import string

_CHARSET = string.ascii_lowercase + string.ascii_uppercase + string.digits


def random_password(n: int) -> str:
    """Return a cryptographically random alphanumeric password of length n."""
    if n < 0:
        raise ValueError("password length must not be negative")
    return "".join(secrets.choice(_CHARSET) for _ in range(n))