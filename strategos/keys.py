from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

from Cryptodome.PublicKey import ECC
from Cryptodome.Signature import eddsa

from .errors import InvalidEncoding, InvalidKeyLength

logger = logging.getLogger(__name__)

PRIVATE_KEY_SIZE = 32
PUBLIC_KEY_SIZE = 32


def _decode_hex(blob: bytes, what: str) -> bytes:
    # UnicodeDecodeError is a ValueError
    try:
        return bytes.fromhex(blob.decode("utf-8").strip())
    except ValueError as exc:
        raise InvalidEncoding(f"{what} is not valid hex: {exc}") from exc


def _read_key_file(path: Union[str, Path], size: int, what: str) -> bytes:
    raw = _decode_hex(Path(path).read_bytes(), f"{what} in {path}")
    if len(raw) != size:
        raise InvalidKeyLength(f"{what} in {path} is {len(raw)} bytes, expected {size}")
    return raw


def load_public_key(path: Union[str, Path]) -> bytes:
    """Raw 32-byte Ed25519 public key from a hex key file."""
    return _read_key_file(path, PUBLIC_KEY_SIZE, "public key")


def verify_signature(public_key: bytes, message: bytes, signature: bytes) -> bool:
    if len(public_key) != PUBLIC_KEY_SIZE:
        raise InvalidKeyLength(f"public key is {len(public_key)} bytes, expected {PUBLIC_KEY_SIZE}")
    try:
        verifier = eddsa.new(eddsa.import_public_key(public_key), "rfc8032")
        verifier.verify(message, signature)
    except ValueError:
        return False
    return True


class KeyPair:
    """Ed25519 signing key; the private half is kept as its 32-byte seed."""

    def __init__(self, key: ECC.EccKey):
        self._key = key

    @classmethod
    def generate(cls) -> "KeyPair":
        return cls(ECC.generate(curve="ed25519"))

    @classmethod
    def from_bytes(cls, seed: bytes) -> "KeyPair":
        if len(seed) != PRIVATE_KEY_SIZE:
            raise InvalidKeyLength(f"private key is {len(seed)} bytes, expected {PRIVATE_KEY_SIZE}")
        return cls(eddsa.import_private_key(seed))

    @classmethod
    def load_private(cls, path: Union[str, Path]) -> "KeyPair":
        return cls.from_bytes(_read_key_file(path, PRIVATE_KEY_SIZE, "private key"))

    def private_key_bytes(self) -> bytes:
        return bytes(self._key.seed)

    def public_key_bytes(self) -> bytes:
        return self._key.public_key().export_key(format="raw")

    def public_key_hex(self) -> str:
        return self.public_key_bytes().hex()

    def sign(self, message: bytes) -> bytes:
        return eddsa.new(self._key, "rfc8032").sign(message)

    def save(self, private_path: Union[str, Path], public_path: Union[str, Path]):
        # Two separate writes; a crash in between leaves only the private key.
        Path(private_path).write_text(self.private_key_bytes().hex() + "\n", encoding="utf-8")
        Path(public_path).write_text(self.public_key_hex() + "\n", encoding="utf-8")
        logger.debug("saved keypair to %s / %s", private_path, public_path)
