"""Format detection, capability interfaces and one driver per container format."""

from typing import Dict, Type

from .base import (
    Archive,
    ArchiveInfo,
    FileEntry,
    MutableArchive,
    OutputFormat,
    QueryableArchive,
    SearchResult,
)
from .cartridge import CartridgeArchive
from .datacard import DataCardArchive
from .dataspool import DataSpoolArchive
from .detection import ArchiveFormat, detect_format, detect_format_from_bytes, format_from_extension
from .engram import EngramArchive

DRIVERS: Dict[ArchiveFormat, Type[Archive]] = {
    ArchiveFormat.ENGRAM: EngramArchive,
    ArchiveFormat.CARTRIDGE: CartridgeArchive,
    ArchiveFormat.DATASPOOL: DataSpoolArchive,
    ArchiveFormat.DATACARD: DataCardArchive,
}

__all__ = [
    "Archive",
    "ArchiveFormat",
    "ArchiveInfo",
    "CartridgeArchive",
    "DRIVERS",
    "DataCardArchive",
    "DataSpoolArchive",
    "EngramArchive",
    "FileEntry",
    "MutableArchive",
    "OutputFormat",
    "QueryableArchive",
    "SearchResult",
    "detect_format",
    "detect_format_from_bytes",
    "format_from_extension",
]
