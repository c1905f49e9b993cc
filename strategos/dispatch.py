"""Command dispatch: detect the format, pick its driver, run one operation.

Every public function here opens at most one archive, performs a single
logical operation and closes the handle before returning. Capability checks
(mutation, querying) happen before the driver touches the archive.
"""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Type

from .constants import ARGON_MEMORY_COST_KIB, MANIFEST_MEMBER
from .engines.cartridge import Cartridge
from .engines.datacard import Card
from .engines.dataspool import SpoolEntry, SpoolReader
from .engines.engram import EngramWriter
from .errors import NotFoundError, UnknownFormatError, UnsupportedOperation
from .formats import (
    DRIVERS,
    Archive,
    ArchiveFormat,
    ArchiveInfo,
    FileEntry,
    MutableArchive,
    OutputFormat,
    QueryableArchive,
    SearchResult,
    detect_format,
)
from .formats.base import is_database
from .formats.dataspool import append_cards, build_spool
from .formats.engram import EngramArchive, write_manifest
from .keys import KeyPair, verify_signature
from .manifest import Manifest, Signature
from .pathutil import atomic_replace

logger = logging.getLogger(__name__)

_CAPABILITY_NAMES = {
    MutableArchive: "modification",
    QueryableArchive: "database queries",
}


def resolve_driver(path: str, require: Optional[Type[Archive]] = None) -> Type[Archive]:
    fmt = detect_format(path)
    if fmt is ArchiveFormat.UNKNOWN:
        raise UnknownFormatError(f"Unknown archive format: {path}")
    driver = DRIVERS[fmt]
    if require is not None and not issubclass(driver, require):
        what = _CAPABILITY_NAMES.get(require, require.__name__)
        raise UnsupportedOperation(f"{fmt.display_name} archives do not support {what} ({path})")
    logger.debug("dispatching %s to %s", path, driver.__name__)
    return driver


def open_archive(
    path: str,
    *,
    password: Optional[str] = None,
    require: Optional[Type[Archive]] = None,
    writable: bool = False,
) -> Archive:
    driver = resolve_driver(path, require)
    if writable:
        return driver.open(path, password=password, writable=True)
    return driver.open(path, password=password)


def _require_format(path: str, fmt: ArchiveFormat, operation: str):
    found = detect_format(path)
    if found is not fmt:
        raise UnsupportedOperation(f"{operation} requires a {fmt.display_name} archive; {path} is {found.display_name}")


# read-only operations

def info(path: str, *, password: Optional[str] = None) -> ArchiveInfo:
    with open_archive(path, password=password) as archive:
        return archive.info()


def inspect(
    path: str,
    *,
    password: Optional[str] = None,
    entries: bool = False,
    signatures: bool = False,
) -> Tuple[ArchiveInfo, Optional[List[FileEntry]], Optional[List[bool]]]:
    """Summary plus, on request, the listing and signature results from one handle."""
    with open_archive(path, password=password) as archive:
        summary = archive.info()
        listing = archive.list_files() if entries else None
        results = None
        if signatures:
            manifest = archive.manifest() if isinstance(archive, EngramArchive) else None
            results = manifest.verify_signatures() if manifest is not None else []
    return summary, listing, results


def list_files(path: str, *, password: Optional[str] = None, databases_only: bool = False) -> List[FileEntry]:
    with open_archive(path, password=password) as archive:
        entries = archive.list_files()
    if databases_only:
        entries = [e for e in entries if is_database(e.path)]
    return entries


def extract(path: str, output_dir: str, *, files: Optional[Sequence[str]] = None, password: Optional[str] = None) -> List[str]:
    with open_archive(path, password=password) as archive:
        return archive.extract(output_dir, files)


def search(path: str, pattern: str, *, case_insensitive: bool = False, password: Optional[str] = None) -> List[SearchResult]:
    with open_archive(path, password=password) as archive:
        return archive.search(pattern, case_insensitive)


def read_manifest(path: str, *, password: Optional[str] = None) -> Optional[Manifest]:
    """Manifest of an Engram archive; other formats carry none."""
    with open_archive(path, password=password) as archive:
        if isinstance(archive, EngramArchive):
            return archive.manifest()
    return None


def verify(
    path: str,
    *,
    password: Optional[str] = None,
    public_key: Optional[bytes] = None,
    check_hashes: bool = False,
) -> bool:
    """Format integrity check, optionally pinned to a signer and manifest hashes.

    ``public_key`` and ``check_hashes`` only apply to Engram archives.
    """
    with open_archive(path, password=password) as archive:
        if (public_key is not None or check_hashes) and not isinstance(archive, EngramArchive):
            raise UnsupportedOperation(f"{archive.format_name} archives carry no signed manifest ({path})")
        if not archive.verify():
            return False
        if not isinstance(archive, EngramArchive):
            return True
        manifest = archive.manifest()
        if public_key is not None:
            if manifest is None:
                logger.debug("no manifest to check against the given key")
                return False
            message = manifest.canonical_bytes()
            pinned = [
                s for s in manifest.signatures
                if s.public_key.lower() == public_key.hex()
            ]
            if not any(verify_signature(public_key, message, bytes.fromhex(s.signature)) for s in pinned):
                return False
        if check_hashes and manifest is not None:
            for fh in manifest.files:
                try:
                    data = archive.read_file(fh.path)
                except NotFoundError:
                    logger.debug("manifest lists missing member %s", fh.path)
                    return False
                if len(data) != fh.size or hashlib.sha256(data).hexdigest() != fh.sha256:
                    logger.debug("hash mismatch for %s", fh.path)
                    return False
    return True


def signature_results(path: str, *, password: Optional[str] = None) -> List[bool]:
    manifest = read_manifest(path, password=password)
    return manifest.verify_signatures() if manifest is not None else []


# database operations

def list_databases(path: str, *, password: Optional[str] = None) -> List[str]:
    with open_archive(path, password=password, require=QueryableArchive) as archive:
        return archive.list_databases()


def query(
    path: str,
    database: str,
    sql: str,
    *,
    output_format: OutputFormat = OutputFormat.TABLE,
    password: Optional[str] = None,
) -> str:
    with open_archive(path, password=password, require=QueryableArchive) as archive:
        return archive.query(database, sql, output_format)


# mutation

def write_file(path: str, member: str, data: bytes):
    with open_archive(path, require=MutableArchive, writable=True) as archive:
        archive.write_file(member, data)
        archive.flush()


def delete_file(path: str, member: str):
    with open_archive(path, require=MutableArchive, writable=True) as archive:
        archive.delete_file(member)
        archive.flush()


# Engram authoring

def _walk(source: Path) -> List[tuple]:
    if source.is_file():
        return [(source.name, source)]
    found = []
    for root, dirs, files in os.walk(source):
        dirs.sort()
        for name in sorted(files):
            fs_path = Path(root) / name
            found.append((fs_path.relative_to(source).as_posix(), fs_path))
    return found


def pack(
    source: str,
    output: str,
    *,
    compression: str = "zstd",
    manifest: Optional[Manifest] = None,
    keypair: Optional[KeyPair] = None,
    signer: Optional[str] = None,
    password: Optional[str] = None,
    kdf_memory_kib: int = ARGON_MEMORY_COST_KIB,
) -> int:
    """Build an Engram archive from a file or directory; returns the member count."""
    src = Path(source)
    if not src.exists():
        raise FileNotFoundError(f"Source not found: {source}")
    members = _walk(src)
    if keypair is not None and manifest is None:
        raise ValueError("Signing requires a manifest")
    with atomic_replace(output) as tmp:
        with EngramWriter(str(tmp), compression=compression, password=password, kdf_memory_kib=kdf_memory_kib) as writer:
            for arc_path, fs_path in members:
                if arc_path == MANIFEST_MEMBER and manifest is not None:
                    raise ValueError(f"{MANIFEST_MEMBER} in the source would shadow the archive manifest")
                data = fs_path.read_bytes()
                entry = writer.add_file(arc_path, data, modified=int(fs_path.stat().st_mtime))
                if manifest is not None:
                    manifest.add_file(entry.path, data)
            if manifest is not None:
                if keypair is not None:
                    manifest.sign(keypair, signer)
                writer.add_file(MANIFEST_MEMBER, manifest.to_json())
            writer.finalize()
    logger.debug("packed %d members into %s", len(members), output)
    return len(members)


def sign(path: str, keypair: KeyPair, *, signer: Optional[str] = None, password: Optional[str] = None) -> Signature:
    """Append a signature to the archive manifest and persist it in place."""
    _require_format(path, ArchiveFormat.ENGRAM, "Signing")
    manifest = read_manifest(path, password=password)
    if manifest is None:
        raise NotFoundError(f"Engram archive {path} has no manifest to sign")
    signature = manifest.sign(keypair, signer)
    write_manifest(path, manifest, password=password)
    return signature


def keygen(private_path: str, public_path: str) -> KeyPair:
    keypair = KeyPair.generate()
    keypair.save(private_path, public_path)
    return keypair


# Cartridge maintenance

def create_cartridge(path: str, slug: str, title: str, description: Optional[str] = None):
    with Cartridge.create(path, slug, title, description) as cart:
        return cart.read_manifest()


def create_snapshot(path: str, name: str, description: str, snapshot_dir: str) -> int:
    _require_format(path, ArchiveFormat.CARTRIDGE, "Snapshots")
    with Cartridge.open(path) as cart:
        return cart.create_snapshot(name, description, snapshot_dir)


def list_snapshots(snapshot_dir: str) -> List[dict]:
    return Cartridge.list_snapshots(snapshot_dir)


def restore_snapshot(path: str, snapshot_id: int, snapshot_dir: str):
    _require_format(path, ArchiveFormat.CARTRIDGE, "Snapshots")
    with Cartridge.open(path, writable=True) as cart:
        cart.restore_snapshot(snapshot_id, snapshot_dir)


def freeze(path: str, output: str, *, compression: str = "zstd") -> int:
    """Copy every Cartridge member into a new immutable Engram archive."""
    _require_format(path, ArchiveFormat.CARTRIDGE, "Freeze")
    with open_archive(path) as archive, atomic_replace(output) as tmp:
        entries = archive.list_files()
        with EngramWriter(str(tmp), compression=compression) as writer:
            for e in entries:
                writer.add_file(e.path, archive.read_file(e.path), modified=e.modified)
            writer.finalize()
    return len(entries)


# DataSpool maintenance

def _read_inputs(paths: Iterable[str]) -> List[bytes]:
    out = []
    for p in paths:
        with open(p, "rb") as rf:
            out.append(rf.read())
    return out


def spool_build(output: str, card_files: Sequence[str]) -> int:
    return build_spool(output, _read_inputs(card_files))


def spool_append(path: str, card_files: Sequence[str]) -> int:
    _require_format(path, ArchiveFormat.DATASPOOL, "Appending cards")
    return append_cards(path, _read_inputs(card_files))


def spool_index(path: str) -> List[SpoolEntry]:
    _require_format(path, ArchiveFormat.DATASPOOL, "Index listing")
    with SpoolReader.open(path) as reader:
        return reader.entries()


def spool_extract_card(path: str, index: int, output: str) -> int:
    _require_format(path, ArchiveFormat.DATASPOOL, "Card extraction")
    with SpoolReader.open(path) as reader:
        data = reader.read_card(index)
    Path(output).write_bytes(data)
    return len(data)


# DataCard maintenance

def card_compress(
    source: str,
    output: str,
    *,
    card_id: Optional[str] = None,
    codec: str = "deflate",
    with_checksum: bool = False,
    profile: Optional[str] = None,
) -> Card:
    document = Path(source).read_bytes()
    card = Card.from_document(
        document,
        card_id or Path(source).stem,
        codec=codec,
        with_checksum=with_checksum,
        profile=profile,
    )
    with atomic_replace(output) as tmp:
        card.save(str(tmp))
    return card


def card_decompress(path: str, output: str) -> Card:
    _require_format(path, ArchiveFormat.DATACARD, "Decompression")
    card = Card.load(path)
    Path(output).write_bytes(card.document())
    return card


def card_load(path: str) -> Card:
    _require_format(path, ArchiveFormat.DATACARD, "Card inspection")
    return Card.load(path)
