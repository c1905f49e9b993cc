from __future__ import annotations

import zlib
from typing import Optional

import zstandard

from .constants import CODEC_DEFLATE, CODEC_NAMES, CODEC_NONE, CODEC_ZSTD


def codec_id_from_name(name: str) -> int:
    for codec_id, codec_name in CODEC_NAMES.items():
        if codec_name == name.lower():
            return codec_id
    raise ValueError(f"Unknown compression method: {name} (expected none, deflate, or zstd)")


def codec_name(codec_id: int) -> str:
    return CODEC_NAMES.get(codec_id, f"unknown({codec_id})")


class Codec:
    def __init__(self, codec_id: int, level: Optional[int] = None):
        if codec_id not in CODEC_NAMES:
            raise ValueError(f"unsupported codec id: {codec_id}")
        self.codec_id = codec_id
        self.level = level

    @classmethod
    def from_name(cls, name: str, level: Optional[int] = None) -> "Codec":
        return cls(codec_id_from_name(name), level)

    @property
    def name(self) -> str:
        return codec_name(self.codec_id)

    def compress(self, data: bytes) -> bytes:
        if self.codec_id == CODEC_NONE:
            return data
        if self.codec_id == CODEC_DEFLATE:
            return zlib.compress(data, self.level if self.level is not None else 6)
        try:
            c = zstandard.ZstdCompressor(level=self.level if self.level is not None else 3)
            return c.compress(data)
        except zstandard.ZstdError as e:
            raise RuntimeError(f"zstd compression failed: {e}") from e

    def decompress(self, data: bytes) -> bytes:
        if self.codec_id == CODEC_NONE:
            return data
        if self.codec_id == CODEC_DEFLATE:
            try:
                return zlib.decompress(data)
            except zlib.error as e:
                raise RuntimeError(f"deflate decompression failed: {e}") from e
        if self.codec_id == CODEC_ZSTD:
            try:
                return zstandard.ZstdDecompressor().decompress(data)
            except zstandard.ZstdError as e:
                raise RuntimeError(f"zstd decompression failed: {e}") from e
        raise RuntimeError(f"unsupported codec id: {self.codec_id}")
