from __future__ import annotations

import enum
import logging
import os
from typing import Optional

from ..constants import (
    CARTRIDGE_MAGIC,
    DATACARD_MAGIC,
    DATASPOOL_MAGIC,
    DETECT_PREFIX_LEN,
    ENGRAM_MAGIC,
)
from ..errors import OpenError

logger = logging.getLogger(__name__)


class ArchiveFormat(enum.Enum):
    """Closed set of container formats, each with its extension and display name."""

    ENGRAM = (".eng", "Engram")
    CARTRIDGE = (".cart", "Cartridge")
    DATASPOOL = (".spool", "DataSpool")
    DATACARD = (".card", "DataCard")
    UNKNOWN = ("", "Unknown")

    @property
    def extension(self) -> str:
        return self.value[0]

    @property
    def display_name(self) -> str:
        return self.value[1]

    def __str__(self) -> str:
        return self.display_name


_EXTENSIONS = {fmt.extension: fmt for fmt in ArchiveFormat if fmt is not ArchiveFormat.UNKNOWN}


def format_from_extension(extension: Optional[str]) -> ArchiveFormat:
    if not extension:
        return ArchiveFormat.UNKNOWN
    ext = extension.lower()
    if not ext.startswith("."):
        ext = "." + ext
    return _EXTENSIONS.get(ext, ArchiveFormat.UNKNOWN)


def detect_format_from_bytes(prefix: bytes, extension: Optional[str] = None) -> ArchiveFormat:
    """Classify a byte prefix, longest signatures first.

    Falls back to ``extension`` when no signature matches (including when
    fewer than four bytes are available). Never raises for unknown content.
    """
    if len(prefix) >= 8 and prefix[:8] == ENGRAM_MAGIC:
        return ArchiveFormat.ENGRAM
    if len(prefix) >= 8 and prefix[:8] == CARTRIDGE_MAGIC:
        return ArchiveFormat.CARTRIDGE
    if len(prefix) >= 4 and prefix[:4] == DATASPOOL_MAGIC:
        return ArchiveFormat.DATASPOOL
    if len(prefix) >= 4 and prefix[:4] == DATACARD_MAGIC:
        return ArchiveFormat.DATACARD
    return format_from_extension(extension)


def detect_format(path: str) -> ArchiveFormat:
    try:
        with open(path, "rb") as f:
            prefix = f.read(DETECT_PREFIX_LEN)
    except OSError as exc:
        raise OpenError(f"Failed to open file: {path}") from exc
    fmt = detect_format_from_bytes(prefix, os.path.splitext(str(path))[1])
    logger.debug("detected %s for %s", fmt.display_name, path)
    return fmt
