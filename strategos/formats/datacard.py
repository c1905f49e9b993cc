from __future__ import annotations

import logging
from dataclasses import asdict
from typing import List, Optional

from ..constants import CARD_DOCUMENT_MEMBER, CARD_PAYLOAD_MEMBER
from ..engines.datacard import Card
from ..errors import NotFoundError, OpenError
from .base import ArchiveInfo, FileEntry, Archive, compression_ratio
from .detection import ArchiveFormat

logger = logging.getLogger(__name__)


class DataCardArchive(Archive):
    """A single compressed document, exposed as one member."""

    format = ArchiveFormat.DATACARD

    def __init__(self, path: str, card: Card):
        super().__init__(path)
        self.card = card

    @classmethod
    def open(cls, path: str, *, password: Optional[str] = None) -> "DataCardArchive":
        try:
            card = Card.load(path)
        except OSError as exc:
            raise OpenError(f"Failed to open DataCard {path}: {exc}") from exc
        return cls(path, card)

    def _document_size(self) -> int:
        meta = self.card.metadata
        if meta.original_size is not None:
            return meta.original_size
        return len(self.card.document())

    def info(self) -> ArchiveInfo:
        hdr = self.card.header
        size = self._document_size()
        stored = len(self.card.payload)
        metadata = asdict(self.card.metadata)
        metadata["checksum"] = hdr.has_checksum()
        return ArchiveInfo(
            format=self.format_name,
            version=f"{hdr.major}.{hdr.minor}",
            entry_count=1,
            total_size=size,
            compressed_size=stored,
            compression_ratio=compression_ratio(size, stored),
            metadata=metadata,
        )

    def list_files(self) -> List[FileEntry]:
        meta = self.card.metadata
        return [
            FileEntry(
                path=CARD_DOCUMENT_MEMBER,
                size=self._document_size(),
                compressed_size=len(self.card.payload),
                compression_method=meta.codec,
                modified=meta.created,
                crc32=self.card.stored_checksum,
            )
        ]

    def read_file(self, path: str) -> bytes:
        if path == CARD_DOCUMENT_MEMBER:
            return self.card.document()
        if path == CARD_PAYLOAD_MEMBER:
            return self.card.payload
        raise NotFoundError(f"'{path}' not found in DataCard {self.path} (members: {CARD_DOCUMENT_MEMBER}, {CARD_PAYLOAD_MEMBER})")

    def verify(self) -> bool:
        card = self.card
        if card.header.has_checksum() and card.stored_checksum != card.calculate_checksum():
            logger.debug("checksum mismatch in %s", self.path)
            return False
        if card.metadata.compressed_size != len(card.payload):
            return False
        try:
            document = card.document()
        except (RuntimeError, ValueError) as exc:
            logger.debug("payload of %s does not decompress: %s", self.path, exc)
            return False
        if card.metadata.original_size is not None and len(document) != card.metadata.original_size:
            return False
        return True
