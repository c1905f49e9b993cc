from __future__ import annotations

import json
import struct
import time
import zlib
from dataclasses import asdict, dataclass
from typing import Optional, Union

from ..codec import Codec
from ..constants import CARD_FLAG_CHECKSUM, DATACARD_MAGIC, DATACARD_VERSION
from ..errors import OpenError


_HEADER_STRUCT = struct.Struct("<4sBBHI")
# magic[4], major u8, minor u8, flags u16, metadata_len u32
_FOOTER_STRUCT = struct.Struct("<I")


@dataclass
class CardHeader:
    major: int
    minor: int
    flags: int

    def has_checksum(self) -> bool:
        return bool(self.flags & CARD_FLAG_CHECKSUM)


@dataclass
class CardMetadata:
    id: str
    codec: str = "deflate"
    compressed_size: int = 0
    original_size: Optional[int] = None
    created: Optional[int] = None
    profile: Optional[str] = None
    dict_version: Optional[str] = None


class Card:
    """A single compressed document with JSON metadata."""

    def __init__(self, header: CardHeader, metadata: CardMetadata, payload: bytes, stored_checksum: Optional[int] = None):
        self.header = header
        self.metadata = metadata
        self.payload = payload
        self.stored_checksum = stored_checksum

    @classmethod
    def from_document(
        cls,
        document: Union[str, bytes],
        card_id: str,
        *,
        codec: str = "deflate",
        with_checksum: bool = False,
        profile: Optional[str] = None,
    ) -> "Card":
        raw = document.encode("utf-8") if isinstance(document, str) else document
        payload = Codec.from_name(codec).compress(raw)
        metadata = CardMetadata(
            id=card_id,
            codec=codec.lower(),
            compressed_size=len(payload),
            original_size=len(raw),
            created=int(time.time()),
            profile=profile,
        )
        header = CardHeader(DATACARD_VERSION[0], DATACARD_VERSION[1], CARD_FLAG_CHECKSUM if with_checksum else 0)
        card = cls(header, metadata, payload)
        if with_checksum:
            card.stored_checksum = card.calculate_checksum()
        return card

    @classmethod
    def load(cls, path: str) -> "Card":
        with open(path, "rb") as rf:
            raw = rf.read()
        return cls.from_bytes(raw)

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Card":
        if len(raw) < _HEADER_STRUCT.size:
            raise OpenError("DataCard header too short")
        magic, major, minor, flags, meta_len = _HEADER_STRUCT.unpack_from(raw, 0)
        if magic != DATACARD_MAGIC:
            raise OpenError("Bad DataCard magic")
        pos = _HEADER_STRUCT.size
        try:
            meta_doc = json.loads(raw[pos:pos + meta_len].decode("utf-8"))
            metadata = CardMetadata(**meta_doc)
        except (UnicodeDecodeError, json.JSONDecodeError, TypeError) as exc:
            raise OpenError(f"DataCard metadata is not valid: {exc}") from exc
        pos += meta_len
        header = CardHeader(major, minor, flags)
        footer = _FOOTER_STRUCT.size if header.has_checksum() else 0
        payload = raw[pos:len(raw) - footer]
        stored = None
        if footer:
            if len(raw) - pos < footer:
                raise OpenError("DataCard checksum footer missing")
            (stored,) = _FOOTER_STRUCT.unpack_from(raw, len(raw) - footer)
        return cls(header, metadata, payload, stored)

    def to_bytes(self) -> bytes:
        meta = json.dumps(asdict(self.metadata), sort_keys=True).encode("utf-8")
        out = _HEADER_STRUCT.pack(DATACARD_MAGIC, self.header.major, self.header.minor, self.header.flags, len(meta))
        out += meta + self.payload
        if self.header.has_checksum():
            out += _FOOTER_STRUCT.pack(self.calculate_checksum())
        return out

    def save(self, path: str):
        with open(path, "wb") as wf:
            wf.write(self.to_bytes())

    def calculate_checksum(self) -> int:
        return zlib.crc32(self.payload)

    def document(self) -> bytes:
        return Codec.from_name(self.metadata.codec).decompress(self.payload)
