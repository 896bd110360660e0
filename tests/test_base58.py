import os

import pytest

from govverifier.base58 import b58decode, b58encode

ACCOUNTS = [
    "AECaNinQ6ptWzZcD9WYFimvZuf37kuviUuNGGA4hgWDz",
    "Mvrzoe3cvKFyY8WqVa7Y4ZGnH3KTdEAcez7esRYY67r",
    "Fu12SHuZyaQ4B1or3hFRmx5gqLuGhxTWUjdH98oYRK2N",
    "DkSTcvau7xpiZBHHtUSg52utSqEH2qa2NRfBEAAz5fya",
    "ZVvsLpYErGY7dVZ9h5Wpugr5p5EJG31Jkv8NVo3ueYY",
    "xSdU8zuoLHykjN9r1wT5kygjamnWDQhiu4Nqj7feGM6",
]


def test_empty():
    assert b58encode(b"") == ""
    assert b58decode("") == b""


def test_known_value():
    assert b58encode(b"hello world") == "StV1DL6CwTryKyV"
    assert b58decode("StV1DL6CwTryKyV") == b"hello world"


def test_leading_zero_bytes_become_ones():
    assert b58encode(bytes(32)) == "1" * 32
    assert b58decode("1" * 32) == bytes(32)
    assert b58encode(b"\0\0\x01").startswith("11")


@pytest.mark.parametrize("account", ACCOUNTS)
def test_account_strings_are_32_bytes_and_round_trip(account):
    raw = b58decode(account)
    assert len(raw) == 32
    assert b58encode(raw) == account


@pytest.mark.parametrize("size", [1, 7, 32, 64, 100])
def test_random_round_trip(size):
    data = os.urandom(size)
    assert b58decode(b58encode(data)) == data
    assert b58decode(b58encode(b"\0" + data)) == b"\0" + data


@pytest.mark.parametrize("bad", ["0", "O", "I", "l", "abc+", "ab c"])
def test_invalid_characters(bad):
    with pytest.raises(ValueError):
        b58decode(bad)