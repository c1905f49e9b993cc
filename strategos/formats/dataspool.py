from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from ..constants import SPOOL_CARD_PREFIX, spool_card_name
from ..engines.dataspool import SpoolBuilder, SpoolReader
from ..errors import NotFoundError, OpenError, UnsupportedOperation
from ..pathutil import atomic_replace
from .base import ArchiveInfo, FileEntry, MutableArchive
from .detection import ArchiveFormat

logger = logging.getLogger(__name__)


def parse_card_name(name: str) -> Optional[int]:
    """Ordinal addressed by ``card_NNNNN`` or a bare decimal index."""
    digits = name[len(SPOOL_CARD_PREFIX):] if name.startswith(SPOOL_CARD_PREFIX) else name
    if not digits.isdigit():
        return None
    return int(digits)


def build_spool(path: str, cards: Iterable[bytes]) -> int:
    """Write a new spool holding ``cards`` in order; returns the card count."""
    with atomic_replace(path) as tmp:
        with SpoolBuilder(str(tmp)) as builder:
            for data in cards:
                builder.add_card(data)
            count = len(builder.entries)
            builder.finalize()
    logger.debug("built spool %s (%d cards)", path, count)
    return count


def append_cards(path: str, cards: Iterable[bytes]) -> int:
    """Rebuild ``path`` with ``cards`` appended; returns the new card count."""
    with SpoolReader.open(path) as reader:
        existing = [reader.read_card(i) for i in range(reader.card_count())]
    return build_spool(path, existing + list(cards))


class DataSpoolArchive(MutableArchive):
    """Append-only sequence of opaque cards addressed by ordinal."""

    format = ArchiveFormat.DATASPOOL

    def __init__(self, path: str, reader: SpoolReader):
        super().__init__(path)
        self.reader = reader

    @classmethod
    def open(cls, path: str, *, password: Optional[str] = None, writable: bool = False) -> "DataSpoolArchive":
        # writes rebuild the file and rename it into place, so the handle stays read-only
        try:
            reader = SpoolReader.open(path)
        except OSError as exc:
            raise OpenError(f"Failed to open DataSpool {path}: {exc}") from exc
        return cls(path, reader)

    def close(self):
        self.reader.close()

    def info(self) -> ArchiveInfo:
        total = sum(e.length for e in self.reader.entries())
        return ArchiveInfo(
            format=self.format_name,
            version=str(self.reader.version),
            entry_count=self.reader.card_count(),
            total_size=total,
            compressed_size=total,
            compression_ratio=1.0,
            metadata={"index_offset": self.reader.index_offset},
        )

    def list_files(self) -> List[FileEntry]:
        return [
            FileEntry(
                path=spool_card_name(i),
                size=e.length,
                compressed_size=e.length,
                compression_method="stored",
            )
            for i, e in enumerate(self.reader.entries())
        ]

    def _index(self, path: str) -> int:
        index = parse_card_name(path)
        if index is None or index >= self.reader.card_count():
            raise NotFoundError(f"'{path}' not found in DataSpool {self.path} ({self.reader.card_count()} cards)")
        return index

    def read_file(self, path: str) -> bytes:
        return self.reader.read_card(self._index(path))

    def verify(self) -> bool:
        for i, entry in enumerate(self.reader.entries()):
            if not self.reader.entry_in_bounds(entry):
                logger.debug("card %d lies outside the data region", i)
                return False
            try:
                self.reader.read_card(i)
            except OpenError:
                return False
        return True

    def _rebuild(self, cards: List[bytes]):
        build_spool(self.path, cards)
        self.reader.close()
        self.reader = SpoolReader.open(self.path)

    def write_file(self, path: str, data: bytes):
        """Replace card ``path``, or append it when it names the next ordinal.

        Any other name is rejected so a written card always reads back
        under the name it was written with.
        """
        cards = [self.reader.read_card(i) for i in range(self.reader.card_count())]
        index = parse_card_name(path)
        if index is None or index > len(cards):
            raise ValueError(
                f"DataSpool {self.path} cannot store '{path}'; "
                f"write an existing card or {spool_card_name(len(cards))}"
            )
        if index < len(cards):
            cards[index] = data
        else:
            cards.append(data)
        self._rebuild(cards)

    def delete_file(self, path: str):
        raise UnsupportedOperation(f"DataSpool {self.path} is append-only; cannot delete '{path}'")

    def flush(self):
        pass
