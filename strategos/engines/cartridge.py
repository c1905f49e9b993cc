from __future__ import annotations

import json
import logging
import os
import shutil
import struct
import time
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional

from ..constants import CARTRIDGE_MAGIC, CARTRIDGE_VERSION, PAGE_SIZE
from ..errors import NotFoundError, OpenError, UnsupportedOperation
from ..pathutil import atomic_replace, norm_path

logger = logging.getLogger(__name__)


_HEADER_STRUCT = struct.Struct("<8sHHIQQQQQQI")
# magic[8], ver_major u16, ver_minor u16, block_size u32,
# total_blocks u64, free_blocks u64, catalog_page u64, catalog_len u64,
# created u64, modified u64, header_crc32 u32. Padded to one page.


@dataclass
class CartridgeHeader:
    version_major: int
    version_minor: int
    block_size: int
    total_blocks: int
    free_blocks: int
    catalog_page: int
    catalog_len: int
    created: int
    modified: int

    def pack(self) -> bytes:
        pre = _HEADER_STRUCT.pack(
            CARTRIDGE_MAGIC,
            self.version_major,
            self.version_minor,
            self.block_size,
            self.total_blocks,
            self.free_blocks,
            self.catalog_page,
            self.catalog_len,
            self.created,
            self.modified,
            0,
        )
        crc = zlib.crc32(pre[:-4])
        raw = pre[:-4] + struct.pack("<I", crc)
        return raw + b"\x00" * (PAGE_SIZE - len(raw))

    @classmethod
    def unpack(cls, page: bytes) -> "CartridgeHeader":
        if len(page) < _HEADER_STRUCT.size:
            raise OpenError("Cartridge header too short")
        raw = page[:_HEADER_STRUCT.size]
        (magic, vmaj, vmin, bsize, total, free, cpage, clen, created, modified, crc) = _HEADER_STRUCT.unpack(raw)
        if magic != CARTRIDGE_MAGIC:
            raise OpenError("Bad Cartridge magic")
        if zlib.crc32(raw[:-4]) != crc:
            raise OpenError("Cartridge header CRC mismatch")
        return cls(vmaj, vmin, bsize, total, free, cpage, clen, created, modified)


@dataclass
class CartridgeManifest:
    slug: str
    title: str
    description: Optional[str] = None
    created: int = 0
    version: int = 0


@dataclass
class FileMetadata:
    size: int
    blocks: List[int] = field(default_factory=list)
    modified_at: int = 0
    crc32: Optional[int] = None


def _pages_for(length: int) -> int:
    return max(1, -(-length // PAGE_SIZE))


class Cartridge:
    """Mutable page-based archive.

    Page 0 holds the header; every other page is either member data, part
    of the catalog run, or free. Pages released by ``write``/``delete`` are
    parked until the next ``flush`` so the previous catalog stays valid on
    disk until the header points at its replacement.
    """

    def __init__(self, path: str, writable: bool = False):
        self.path = path
        self.writable = writable
        self.f: Optional[BinaryIO] = None
        self._header: Optional[CartridgeHeader] = None
        self.manifest: Optional[CartridgeManifest] = None
        self.files: Dict[str, FileMetadata] = {}
        self.free: List[int] = []
        self._pending_free: List[int] = []
        self._dirty = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # lifecycle
    @classmethod
    def create(cls, path: str, slug: str, title: str, description: Optional[str] = None) -> "Cartridge":
        now = int(time.time())
        cart = cls(path, writable=True)
        cart._header = CartridgeHeader(
            version_major=CARTRIDGE_VERSION[0],
            version_minor=CARTRIDGE_VERSION[1],
            block_size=PAGE_SIZE,
            total_blocks=1,
            free_blocks=0,
            catalog_page=0,
            catalog_len=0,
            created=now,
            modified=now,
        )
        cart.manifest = CartridgeManifest(slug=slug, title=title, description=description, created=now)
        with open(path, "wb") as wf:
            wf.write(cart._header.pack())
        cart.f = open(path, "r+b")
        cart._dirty = True
        cart.flush()
        logger.debug("created cartridge %s", path)
        return cart

    @classmethod
    def open(cls, path: str, writable: bool = False) -> "Cartridge":
        """Open an existing cartridge; only a ``writable`` handle accepts writes."""
        cart = cls(path, writable=writable)
        cart.f = open(path, cart._mode())
        try:
            cart._load()
        except (OpenError, ValueError, KeyError, TypeError, UnicodeDecodeError) as exc:
            cart.close()
            if isinstance(exc, OpenError):
                raise
            raise OpenError(f"Malformed Cartridge catalog: {exc}") from exc
        return cart

    def close(self):
        if self.f is not None:
            self.f.close()
            self.f = None

    def _mode(self) -> str:
        return "r+b" if self.writable else "rb"

    def _require_writable(self):
        if not self.writable:
            raise UnsupportedOperation(f"Cartridge {self.path} was opened read-only")

    def _load(self):
        self.f.seek(0)
        self._header = CartridgeHeader.unpack(self.f.read(PAGE_SIZE))
        hdr = self._header
        if hdr.block_size != PAGE_SIZE:
            raise OpenError(f"Unsupported block size {hdr.block_size}")
        file_pages = os.fstat(self.f.fileno()).st_size // PAGE_SIZE
        if hdr.catalog_page == 0 or hdr.catalog_page + _pages_for(hdr.catalog_len) > file_pages:
            raise OpenError("Catalog lies outside the cartridge")
        self.f.seek(hdr.catalog_page * PAGE_SIZE)
        catalog = json.loads(self.f.read(hdr.catalog_len).decode("utf-8"))
        self.manifest = CartridgeManifest(**catalog["manifest"])
        self.files = {p: FileMetadata(**m) for p, m in catalog["files"].items()}
        self.free = list(catalog.get("free", []))
        self._pending_free = []
        self._dirty = False

    def header(self) -> CartridgeHeader:
        return self._header

    def read_manifest(self) -> CartridgeManifest:
        return self.manifest

    # page allocation
    def _allocate(self, count: int) -> List[int]:
        pages: List[int] = []
        while self.free and len(pages) < count:
            pages.append(self.free.pop(0))
        while len(pages) < count:
            pages.append(self._header.total_blocks)
            self._header.total_blocks += 1
        return pages

    def _allocate_run(self, count: int) -> int:
        """Contiguous run of pages (used for the catalog), taken from the tail."""
        start = self._header.total_blocks
        self._header.total_blocks += count
        return start

    def _write_pages(self, pages: List[int], data: bytes):
        for i, page in enumerate(pages):
            chunk = data[i * PAGE_SIZE:(i + 1) * PAGE_SIZE]
            self.f.seek(page * PAGE_SIZE)
            self.f.write(chunk + b"\x00" * (PAGE_SIZE - len(chunk)))

    # member access
    def list(self, prefix: str = "") -> List[str]:
        return sorted(p for p in self.files if p.startswith(prefix))

    def _lookup_key(self, path: str) -> Optional[str]:
        try:
            return norm_path(path)
        except ValueError:
            return None

    def exists(self, path: str) -> bool:
        return self._lookup_key(path) in self.files

    def metadata(self, path: str) -> FileMetadata:
        meta = self.files.get(self._lookup_key(path))
        if meta is None:
            raise NotFoundError(f"'{path}' not found in Cartridge {self.path}")
        return meta

    def read(self, path: str) -> bytes:
        meta = self.metadata(path)
        out = bytearray()
        for page in meta.blocks:
            self.f.seek(page * PAGE_SIZE)
            out += self.f.read(PAGE_SIZE)
        if len(out) < meta.size:
            raise OpenError(f"Cartridge {self.path} is truncated in '{path}'")
        return bytes(out[:meta.size])

    def write(self, path: str, data: bytes):
        self._require_writable()
        arc_path = norm_path(path)
        pages = self._allocate(_pages_for(len(data)))
        self._write_pages(pages, data)
        old = self.files.get(arc_path)
        if old is not None:
            self._pending_free.extend(old.blocks)
        self.files[arc_path] = FileMetadata(
            size=len(data),
            blocks=pages,
            modified_at=int(time.time()),
            crc32=zlib.crc32(data),
        )
        self._dirty = True

    def delete(self, path: str):
        self._require_writable()
        meta = self.metadata(path)
        self._pending_free.extend(meta.blocks)
        del self.files[norm_path(path)]
        self._dirty = True

    def flush(self):
        if not self._dirty:
            return
        hdr = self._header
        old_catalog = []
        if hdr.catalog_page:
            old_catalog = list(range(hdr.catalog_page, hdr.catalog_page + _pages_for(hdr.catalog_len)))
        free_after = sorted(set(self.free) | set(self._pending_free) | set(old_catalog))
        self.manifest.version += 1
        catalog = {
            "manifest": vars(self.manifest),
            "files": {p: vars(m) for p, m in self.files.items()},
            "free": free_after,
        }
        raw = json.dumps(catalog, sort_keys=True).encode("utf-8")
        start = self._allocate_run(_pages_for(len(raw)))
        self._write_pages(list(range(start, start + _pages_for(len(raw)))), raw)
        self.f.flush()
        os.fsync(self.f.fileno())
        # the header write is the commit point
        hdr.catalog_page = start
        hdr.catalog_len = len(raw)
        hdr.free_blocks = len(free_after)
        hdr.modified = int(time.time())
        self.f.seek(0)
        self.f.write(hdr.pack())
        self.f.flush()
        os.fsync(self.f.fileno())
        self.free = free_after
        self._pending_free = []
        self._dirty = False
        logger.debug("flushed cartridge %s (%d files, %d free pages)", self.path, len(self.files), len(self.free))

    # snapshots
    def create_snapshot(self, name: str, description: str, snapshot_dir: str) -> int:
        self.flush()
        snapshot_id = int(time.time() * 1000)
        target = Path(snapshot_dir)
        target.mkdir(parents=True, exist_ok=True)
        while (target / f"{snapshot_id}.cart").exists():
            snapshot_id += 1
        shutil.copyfile(self.path, target / f"{snapshot_id}.cart")
        meta = {
            "id": snapshot_id,
            "name": name,
            "description": description,
            "timestamp": int(time.time()),
            "source": os.path.abspath(self.path),
        }
        (target / f"{snapshot_id}.json").write_text(json.dumps(meta, indent=2), encoding="utf-8")
        return snapshot_id

    @staticmethod
    def list_snapshots(snapshot_dir: str) -> List[dict]:
        root = Path(snapshot_dir)
        if not root.is_dir():
            return []
        snaps = []
        for meta_path in sorted(root.glob("*.json")):
            snaps.append(json.loads(meta_path.read_text(encoding="utf-8")))
        snaps.sort(key=lambda m: m.get("id", 0))
        return snaps

    def restore_snapshot(self, snapshot_id: int, snapshot_dir: str):
        src = Path(snapshot_dir) / f"{snapshot_id}.cart"
        if not src.is_file():
            raise NotFoundError(f"Snapshot {snapshot_id} not found in {snapshot_dir}")
        # validate before replacing anything
        Cartridge.open(str(src)).close()
        self.close()
        with atomic_replace(self.path) as tmp:
            shutil.copyfile(src, tmp)
        self.f = open(self.path, self._mode())
        self._load()
