import string

import pytest

from gokrpack.pwgen import random_password

ALPHANUMERIC = set(string.ascii_letters + string.digits)


@pytest.mark.parametrize("n", [0, 1, 20, 64])
def test_length(n):
    assert len(random_password(n)) == n


def test_charset():
    pw = random_password(200)
    assert set(pw) <= ALPHANUMERIC


def test_passwords_differ():
    assert len({random_password(20) for _ in range(10)}) == 10


def test_negative_length():
    with pytest.raises(ValueError):
        random_password(-1)