"""Upload request parsing and operator signature verification."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Any, Iterable

from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from .base58 import b58decode

_U64_RE = re.compile(r"\+?[0-9]+")
_U64_MAX = 2**64 - 1
_FIELD_NAMES = ("slot", "network", "merkle_root", "signature")


class SignatureError(Exception):
    """The upload signature could not be verified."""


@dataclass(frozen=True)
class UploadMetadata:
    """The text fields that precede the snapshot file in an upload."""

    slot: int
    network: str
    merkle_root: str
    signature: str


def signing_message(slot: int, merkle_root: str) -> bytes:
    """The signed message: little-endian u64 slot followed by the root's text bytes."""
    return slot.to_bytes(8, "little") + merkle_root.encode()


def verify_signature(
    slot: int, merkle_root: str, signature: str, operator_pubkey: str | None = None
) -> None:
    """Check an Ed25519 signature over ``signing_message(slot, merkle_root)``.

    ``operator_pubkey`` defaults to the OPERATOR_PUBKEY environment variable.
    Raises SignatureError on any failure.
    """
    if operator_pubkey is None:
        operator_pubkey = os.environ.get("OPERATOR_PUBKEY")
    if operator_pubkey is None:
        raise SignatureError("OPERATOR_PUBKEY env not set")

    try:
        key_bytes = b58decode(operator_pubkey)
    except ValueError as exc:
        raise SignatureError(f"invalid operator pubkey: {exc}") from exc
    if len(key_bytes) != 32:
        raise SignatureError("invalid operator pubkey length")

    try:
        sig_bytes = b58decode(signature)
    except ValueError as exc:
        raise SignatureError(f"invalid signature: {exc}") from exc
    if len(sig_bytes) != 64:
        raise SignatureError("invalid signature length")

    try:
        VerifyKey(key_bytes).verify(signing_message(slot, merkle_root), sig_bytes)
    except (BadSignatureError, ValueError) as exc:
        raise SignatureError("Verification failed") from exc


def _parse_slot(text: str) -> int:
    if not _U64_RE.fullmatch(text):
        raise ValueError(f"invalid slot: {text!r}")
    value = int(text)
    if value > _U64_MAX:
        raise ValueError(f"slot out of range: {text!r}")
    return value


def parse_metadata(fields: Iterable[str]) -> UploadMetadata:
    """Build metadata from field texts given in order: slot, network, merkle_root, signature."""
    values = iter(fields)
    texts = []
    for name in _FIELD_NAMES:
        try:
            texts.append(next(values))
        except StopIteration:
            raise ValueError(f"Next field is missing {name}") from None
    slot_text, network, merkle_root, signature = texts
    return UploadMetadata(_parse_slot(slot_text), network, merkle_root, signature)


async def read_metadata(reader: Any) -> UploadMetadata:
    """Read the four metadata fields, in order, from a multipart reader."""
    texts = []
    for name in _FIELD_NAMES:
        part = await reader.next()
        if part is None:
            raise ValueError(f"Next field is missing {name}")
        texts.append(await part.text())
    return parse_metadata(texts)


async def read_file(reader: Any) -> bytes:
    """Read the next multipart field, the snapshot file, as raw bytes."""
    part = await reader.next()
    if part is None:
        raise ValueError("Missing file")
    return bytes(await part.read(decode=False))