from __future__ import annotations

import logging
import zlib
from typing import List, Optional

from ..constants import PAGE_SIZE
from ..engines.cartridge import Cartridge
from ..errors import OpenError
from .base import ArchiveInfo, FileEntry, MutableArchive, QueryableArchive, compression_ratio
from .detection import ArchiveFormat

logger = logging.getLogger(__name__)


class CartridgeArchive(MutableArchive, QueryableArchive):
    """Mutable page-based archive; members are stored uncompressed."""

    format = ArchiveFormat.CARTRIDGE

    def __init__(self, path: str, cart: Cartridge):
        super().__init__(path)
        self.cart = cart

    @classmethod
    def open(cls, path: str, *, password: Optional[str] = None, writable: bool = False) -> "CartridgeArchive":
        try:
            cart = Cartridge.open(path, writable=writable)
        except OSError as exc:
            raise OpenError(f"Failed to open Cartridge {path}: {exc}") from exc
        return cls(path, cart)

    def close(self):
        self.cart.close()

    def info(self) -> ArchiveInfo:
        hdr = self.cart.header()
        manifest = self.cart.read_manifest()
        paths = self.cart.list()
        total = sum(self.cart.metadata(p).size for p in paths)
        stored = sum(len(self.cart.metadata(p).blocks) for p in paths) * PAGE_SIZE
        return ArchiveInfo(
            format=self.format_name,
            version=f"{hdr.version_major}.{hdr.version_minor}",
            entry_count=len(paths),
            total_size=total,
            compressed_size=stored,
            compression_ratio=compression_ratio(total, stored),
            metadata={
                "slug": manifest.slug,
                "title": manifest.title,
                "description": manifest.description,
                "created": manifest.created,
                "revision": manifest.version,
                "total_blocks": hdr.total_blocks,
                "free_blocks": hdr.free_blocks,
            },
        )

    def list_files(self) -> List[FileEntry]:
        entries = []
        for path in self.cart.list():
            meta = self.cart.metadata(path)
            entries.append(
                FileEntry(
                    path=path,
                    size=meta.size,
                    compressed_size=len(meta.blocks) * PAGE_SIZE,
                    compression_method="none",
                    modified=meta.modified_at,
                    crc32=meta.crc32,
                )
            )
        return entries

    def read_file(self, path: str) -> bytes:
        return self.cart.read(path)

    def verify(self) -> bool:
        hdr = self.cart.header()
        if hdr.version_major == 0 or hdr.total_blocks == 0 or hdr.block_size != PAGE_SIZE:
            return False
        for path in self.cart.list():
            meta = self.cart.metadata(path)
            if meta.crc32 is None:
                continue
            try:
                data = self.cart.read(path)
            except OpenError:
                return False
            if zlib.crc32(data) != meta.crc32:
                logger.debug("crc mismatch for %s", path)
                return False
        return True

    def write_file(self, path: str, data: bytes):
        self.cart.write(path, data)

    def delete_file(self, path: str):
        self.cart.delete(path)

    def flush(self):
        self.cart.flush()
