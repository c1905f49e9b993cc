from __future__ import annotations

import logging
import os
import struct
from dataclasses import dataclass
from typing import BinaryIO, List, Optional

from ..constants import DATASPOOL_MAGIC, DATASPOOL_VERSION
from ..errors import NotFoundError, OpenError

logger = logging.getLogger(__name__)


_HEADER_STRUCT = struct.Struct("<4sHHIQ")
# magic[4], version u16, flags u16, card_count u32, index_offset u64
_INDEX_ENTRY = struct.Struct("<QI")
# offset u64, length u32


@dataclass
class SpoolEntry:
    offset: int
    length: int


class SpoolBuilder:
    """Writes a spool: header, card bytes in insertion order, then the index."""

    def __init__(self, path: str):
        self.path = path
        self.entries: List[SpoolEntry] = []
        self.f: Optional[BinaryIO] = open(path, "wb")
        self.f.write(b"\x00" * _HEADER_STRUCT.size)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.f is not None:
            self.f.close()
            self.f = None

    def add_card(self, data: bytes) -> SpoolEntry:
        if self.f is None:
            raise RuntimeError("Spool builder is closed")
        if len(data) > 0xFFFFFFFF:
            raise ValueError("Card exceeds 4 GiB")
        entry = SpoolEntry(offset=self.f.tell(), length=len(data))
        self.f.write(data)
        self.entries.append(entry)
        return entry

    def finalize(self):
        if self.f is None:
            raise RuntimeError("Spool builder is closed")
        index_offset = self.f.tell()
        for e in self.entries:
            self.f.write(_INDEX_ENTRY.pack(e.offset, e.length))
        self.f.seek(0)
        self.f.write(_HEADER_STRUCT.pack(DATASPOOL_MAGIC, DATASPOOL_VERSION, 0, len(self.entries), index_offset))
        self.f.flush()
        os.fsync(self.f.fileno())
        self.f.close()
        self.f = None
        logger.debug("finalized spool %s (%d cards)", self.path, len(self.entries))


class SpoolReader:
    def __init__(self, path: str):
        self.path = path
        self.f: Optional[BinaryIO] = None
        self.version = 0
        self.index_offset = 0
        self._entries: List[SpoolEntry] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @classmethod
    def open(cls, path: str) -> "SpoolReader":
        reader = cls(path)
        reader.f = open(path, "rb")
        try:
            reader._load()
        except (OpenError, struct.error) as exc:
            reader.close()
            if isinstance(exc, OpenError):
                raise
            raise OpenError(f"Malformed DataSpool index: {exc}") from exc
        return reader

    def close(self):
        if self.f is not None:
            self.f.close()
            self.f = None

    def _load(self):
        raw = self.f.read(_HEADER_STRUCT.size)
        if len(raw) != _HEADER_STRUCT.size:
            raise OpenError("DataSpool header too short")
        magic, version, _flags, count, index_offset = _HEADER_STRUCT.unpack(raw)
        if magic != DATASPOOL_MAGIC:
            raise OpenError("Bad DataSpool magic")
        file_size = os.fstat(self.f.fileno()).st_size
        if index_offset < _HEADER_STRUCT.size or index_offset + count * _INDEX_ENTRY.size > file_size:
            raise OpenError("DataSpool index lies outside the file")
        self.f.seek(index_offset)
        index = self.f.read(count * _INDEX_ENTRY.size)
        self.version = version
        self.index_offset = index_offset
        self._entries = [SpoolEntry(*_INDEX_ENTRY.unpack_from(index, i * _INDEX_ENTRY.size)) for i in range(count)]

    def card_count(self) -> int:
        return len(self._entries)

    def entries(self) -> List[SpoolEntry]:
        return list(self._entries)

    def entry_in_bounds(self, entry: SpoolEntry) -> bool:
        return _HEADER_STRUCT.size <= entry.offset and entry.offset + entry.length <= self.index_offset

    def read_card(self, index: int) -> bytes:
        if not (0 <= index < len(self._entries)):
            raise NotFoundError(f"Card {index} not found in DataSpool {self.path} ({len(self._entries)} cards)")
        entry = self._entries[index]
        if not self.entry_in_bounds(entry):
            raise OpenError(f"Card {index} lies outside the data region of {self.path}")
        self.f.seek(entry.offset)
        data = self.f.read(entry.length)
        if len(data) != entry.length:
            raise OpenError(f"Card {index} is truncated in {self.path}")
        return data
