"""Base58 encoding with the Bitcoin alphabet."""

from __future__ import annotations

ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_INDEX = {ch: i for i, ch in enumerate(ALPHABET)}


def b58encode(data: bytes) -> str:
    """Encode bytes as a base58 string; each leading zero byte becomes '1'."""
    raw = bytes(data)
    stripped = raw.lstrip(b"\0")
    zeros = len(raw) - len(stripped)
    number = int.from_bytes(stripped, "big")
    digits = []
    while number:
        number, rem = divmod(number, 58)
        digits.append(ALPHABET[rem])
    return "1" * zeros + "".join(reversed(digits))


def b58decode(text: str) -> bytes:
    """Decode a base58 string; raise ValueError on characters outside the alphabet."""
    stripped = text.lstrip("1")
    zeros = len(text) - len(stripped)
    number = 0
    for ch in stripped:
        try:
            number = number * 58 + _INDEX[ch]
        except KeyError:
            raise ValueError(f"invalid base58 character: {ch!r}") from None
    body = number.to_bytes((number.bit_length() + 7) // 8, "big") if number else b""
    return b"\0" * zeros + body