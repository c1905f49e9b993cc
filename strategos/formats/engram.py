from __future__ import annotations

import logging
import zlib
from typing import Dict, List, Optional

from ..codec import codec_name
from ..constants import ARGON_MEMORY_COST_KIB, MANIFEST_MEMBER
from ..engines.engram import EngramReader, EngramWriter
from ..errors import EncryptedArchiveRequiresPassword, NotFoundError, OpenError, StrategosError
from ..manifest import Manifest
from ..pathutil import atomic_replace
from .base import ArchiveInfo, FileEntry, QueryableArchive, compression_ratio
from .detection import ArchiveFormat

logger = logging.getLogger(__name__)


class EngramArchive(QueryableArchive):
    """Immutable, optionally signed and encrypted archive."""

    format = ArchiveFormat.ENGRAM

    def __init__(self, path: str, reader: EngramReader):
        super().__init__(path)
        self.reader = reader

    @classmethod
    def open(cls, path: str, *, password: Optional[str] = None) -> "EngramArchive":
        reader = EngramReader(path, password=password)
        try:
            reader.open()
        except OSError as exc:
            raise OpenError(f"Failed to open Engram archive {path}: {exc}") from exc
        return cls(path, reader)

    def close(self):
        self.reader.close()

    @property
    def encrypted(self) -> bool:
        return self.reader.header.encrypted

    def _readable(self) -> bool:
        return not self.encrypted or self.reader.decryptor is not None

    def manifest(self) -> Optional[Manifest]:
        doc = self.reader.read_manifest()
        return Manifest.from_dict(doc) if doc is not None else None

    def info(self) -> ArchiveInfo:
        hdr = self.reader.header
        total = sum(e.uncompressed_size for e in self.reader.entries)
        stored = sum(e.compressed_size for e in self.reader.entries)
        metadata = {
            "content_version": hdr.content_version,
            "created": hdr.created,
            "encrypted": hdr.encrypted,
        }
        # the manifest of an encrypted archive stays sealed without a password
        if self._readable():
            manifest = self.manifest()
            if manifest is not None:
                metadata["manifest"] = {
                    "id": manifest.id,
                    "name": manifest.name,
                    "version": manifest.version,
                    "author": manifest.author.name,
                    "signatures": len(manifest.signatures),
                }
        return ArchiveInfo(
            format=self.format_name,
            version=f"{hdr.version_major}.{hdr.version_minor}",
            entry_count=len(self.reader.entries),
            total_size=total,
            compressed_size=stored,
            compression_ratio=compression_ratio(total, stored),
            metadata=metadata,
        )

    def list_files(self) -> List[FileEntry]:
        return [
            FileEntry(
                path=e.path,
                size=e.uncompressed_size,
                compressed_size=e.compressed_size,
                compression_method=codec_name(e.compression),
                modified=e.modified_time,
                crc32=e.crc32,
            )
            for e in self.reader.entries
        ]

    def read_file(self, path: str) -> bytes:
        return self.reader.read_file(path)

    def verify(self) -> bool:
        for entry in self.reader.entries:
            try:
                data = self.reader.read_file(entry.path)
            except EncryptedArchiveRequiresPassword:
                raise
            except (RuntimeError, ValueError, StrategosError) as exc:
                logger.debug("member %s failed to decode: %s", entry.path, exc)
                return False
            if zlib.crc32(data) != entry.crc32:
                logger.debug("crc mismatch for %s", entry.path)
                return False
        manifest = self.manifest()
        if manifest is None:
            return True
        return all(manifest.verify_signatures())


def rebuild_engram(
    path: str,
    replacements: Dict[str, bytes],
    *,
    password: Optional[str] = None,
    compression: str = "zstd",
):
    """Rewrite ``path`` with ``replacements`` swapped in (or added), then rename over it.

    Members keep their order, codec and modification time. Encrypted archives
    are re-sealed under a fresh salt with the same password.
    """
    with EngramReader(path, password=password) as reader:
        hdr = reader.header
        kdf_memory = hdr.argon_memory_cost if hdr.encrypted else ARGON_MEMORY_COST_KIB
        with atomic_replace(path) as tmp:
            with EngramWriter(
                str(tmp),
                compression=compression,
                password=password if hdr.encrypted else None,
                content_version=hdr.content_version,
                kdf_memory_kib=kdf_memory,
            ) as writer:
                pending = dict(replacements)
                for entry in reader.entries:
                    data = pending.pop(entry.path, None)
                    if data is None:
                        data = reader.read_file(entry.path)
                    writer.add_file(
                        entry.path,
                        data,
                        compression=codec_name(entry.compression),
                        modified=entry.modified_time,
                    )
                for member, data in pending.items():
                    writer.add_file(member, data)
                writer.finalize()
    logger.debug("rebuilt engram %s (%d replaced)", path, len(replacements))


def write_manifest(path: str, manifest: Manifest, *, password: Optional[str] = None):
    """Persist an updated manifest into an existing Engram archive."""
    with EngramReader(path, password=password) as reader:
        if reader.get_entry(MANIFEST_MEMBER) is None:
            raise NotFoundError(f"Engram archive {path} has no {MANIFEST_MEMBER}")
    rebuild_engram(path, {MANIFEST_MEMBER: manifest.to_json()}, password=password)
