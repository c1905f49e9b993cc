from __future__ import annotations

import hashlib
import hmac
import os
from dataclasses import dataclass

from argon2.low_level import Type as ArgonType, hash_secret_raw
from Cryptodome.Cipher import ChaCha20_Poly1305

from .constants import (
    ARGON_MAX_MEMORY_COST_KIB,
    ARGON_MAX_TIME_COST,
    ARGON_MEMORY_COST_KIB,
    ARGON_PARALLELISM,
    ARGON_TIME_COST,
)
from .errors import StrategosError


NONCE_SIZE = 24  # XChaCha20-Poly1305
TAG_SIZE = 16
KEY_SIZE = 32
SALT_SIZE = 16


@dataclass
class EncryptionParams:
    salt: bytes
    time_cost: int
    memory_cost_kib: int
    parallelism: int


def _derive_key(password: str, params: EncryptionParams) -> bytes:
    return hash_secret_raw(
        password.encode("utf-8"),
        params.salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost_kib,
        parallelism=params.parallelism,
        hash_len=KEY_SIZE,
        type=ArgonType.ID,
    )


class EncryptionContext:
    """Per-member AEAD sealing keyed by an Argon2id-derived password key."""

    def __init__(self, key: bytes, params: EncryptionParams):
        self.key = key
        self.params = params

    @classmethod
    def create(
        cls,
        password: str,
        *,
        time_cost: int = ARGON_TIME_COST,
        memory_cost_kib: int = ARGON_MEMORY_COST_KIB,
        parallelism: int = ARGON_PARALLELISM,
    ) -> "EncryptionContext":
        params = EncryptionParams(
            salt=os.urandom(SALT_SIZE),
            time_cost=time_cost,
            memory_cost_kib=memory_cost_kib,
            parallelism=parallelism,
        )
        return cls(_derive_key(password, params), params)

    @classmethod
    def from_params(cls, password: str, params: EncryptionParams) -> "EncryptionContext":
        if not (1 <= params.time_cost <= ARGON_MAX_TIME_COST):
            raise ValueError("Unsupported Argon2 time cost in archive")
        if not (8 * params.parallelism <= params.memory_cost_kib <= ARGON_MAX_MEMORY_COST_KIB):
            raise ValueError("Unsupported Argon2 memory cost in archive")
        return cls(_derive_key(password, params), params)

    def _derive_nonce(self, nonce_material: bytes) -> bytes:
        return hmac.new(self.key, b"STRATEGOS_NONCE" + nonce_material, hashlib.sha512).digest()[:NONCE_SIZE]

    def encrypt(self, aad: bytes, plaintext: bytes, *, nonce_material: bytes) -> bytes:
        nonce = self._derive_nonce(nonce_material)
        cipher = ChaCha20_Poly1305.new(key=self.key, nonce=nonce)
        cipher.update(aad)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)
        return nonce + ciphertext + tag

    def decrypt(self, aad: bytes, payload: bytes) -> bytes:
        if len(payload) < NONCE_SIZE + TAG_SIZE:
            raise StrategosError("Encrypted payload too short")
        nonce = payload[:NONCE_SIZE]
        tag = payload[-TAG_SIZE:]
        ciphertext = payload[NONCE_SIZE:-TAG_SIZE]
        cipher = ChaCha20_Poly1305.new(key=self.key, nonce=nonce)
        cipher.update(aad)
        try:
            return cipher.decrypt_and_verify(ciphertext, tag)
        except ValueError as exc:
            raise StrategosError("Decryption failed: wrong password or corrupted data") from exc

    def overhead(self) -> int:
        return NONCE_SIZE + TAG_SIZE
