import pytest
from nacl.signing import SigningKey

from govverifier.base58 import b58encode
from govverifier.upload import (
    SignatureError,
    UploadMetadata,
    parse_metadata,
    read_file,
    read_metadata,
    signing_message,
    verify_signature,
)

SLOT1 = 12345
ROOT1 = "test_merkle_root_hash"
ROOT2 = "different_merkle_root_hash"


def _signed(slot, merkle_root):
    key = SigningKey.generate()
    signature = key.sign(signing_message(slot, merkle_root)).signature
    return b58encode(bytes(key.verify_key)), b58encode(signature)


def test_signing_message_layout():
    assert signing_message(SLOT1, ROOT1) == (
        b"\x39\x30\x00\x00\x00\x00\x00\x00" + b"test_merkle_root_hash"
    )


def test_verify_signature_success(monkeypatch):
    pubkey, signature = _signed(SLOT1, ROOT1)
    monkeypatch.setenv("OPERATOR_PUBKEY", pubkey)
    assert verify_signature(SLOT1, ROOT1, signature) is None


def test_verify_signature_explicit_key():
    pubkey, signature = _signed(SLOT1, ROOT1)
    assert verify_signature(SLOT1, ROOT1, signature, pubkey) is None


def test_verify_signature_invalid_signature(monkeypatch):
    pubkey, _ = _signed(SLOT1, ROOT1)
    _, wrong_signature = _signed(SLOT1, ROOT1)
    monkeypatch.setenv("OPERATOR_PUBKEY", pubkey)
    with pytest.raises(SignatureError):
        verify_signature(SLOT1, ROOT1, wrong_signature)


def test_verify_signature_missing_env_var(monkeypatch):
    monkeypatch.delenv("OPERATOR_PUBKEY", raising=False)
    with pytest.raises(SignatureError, match="OPERATOR_PUBKEY env not set"):
        verify_signature(SLOT1, ROOT1, "dummy")


def test_verify_signature_different_message(monkeypatch):
    pubkey, signature = _signed(SLOT1, ROOT1)
    monkeypatch.setenv("OPERATOR_PUBKEY", pubkey)
    with pytest.raises(SignatureError):
        verify_signature(SLOT1, ROOT2, signature)


def test_verify_signature_different_slot():
    pubkey, signature = _signed(SLOT1, ROOT1)
    with pytest.raises(SignatureError):
        verify_signature(SLOT1 + 1, ROOT1, signature, pubkey)


@pytest.mark.parametrize("pubkey", ["0OIl", "abc"])
def test_verify_signature_malformed_pubkey(pubkey):
    _, signature = _signed(SLOT1, ROOT1)
    with pytest.raises(SignatureError):
        verify_signature(SLOT1, ROOT1, signature, pubkey)


def test_verify_signature_malformed_signature():
    pubkey, _ = _signed(SLOT1, ROOT1)
    with pytest.raises(SignatureError):
        verify_signature(SLOT1, ROOT1, "dummy", pubkey)


def test_parse_metadata():
    meta = parse_metadata(["12345", "testnet", ROOT1, "sig"])
    assert meta == UploadMetadata(SLOT1, "testnet", ROOT1, "sig")


@pytest.mark.parametrize(
    "fields,missing",
    [([], "slot"), (["1"], "network"), (["1", "testnet", "r"], "signature")],
)
def test_parse_metadata_missing_field(fields, missing):
    with pytest.raises(ValueError, match=f"missing {missing}"):
        parse_metadata(fields)


@pytest.mark.parametrize("slot", ["abc", "-1", "", "1.5", str(2**64)])
def test_parse_metadata_bad_slot(slot):
    with pytest.raises(ValueError):
        parse_metadata([slot, "testnet", ROOT1, "sig"])


class _Part:
    def __init__(self, payload):
        self.payload = payload

    async def text(self):
        return self.payload.decode()

    async def read(self, *, decode=False):
        return bytearray(self.payload)


class _Reader:
    def __init__(self, *payloads):
        self._parts = [_Part(p) for p in payloads]

    async def next(self):
        return self._parts.pop(0) if self._parts else None


@pytest.mark.asyncio
async def test_read_metadata_then_file():
    reader = _Reader(b"340850340", b"testnet", b"root", b"sig", b"\x00\x01binary")
    meta = await read_metadata(reader)
    assert meta == UploadMetadata(340850340, "testnet", "root", "sig")
    assert await read_file(reader) == b"\x00\x01binary"


@pytest.mark.asyncio
async def test_read_metadata_missing_field():
    with pytest.raises(ValueError, match="missing merkle_root"):
        await read_metadata(_Reader(b"1", b"testnet"))


@pytest.mark.asyncio
async def test_read_file_missing():
    with pytest.raises(ValueError, match="Missing file"):
        await read_file(_Reader())