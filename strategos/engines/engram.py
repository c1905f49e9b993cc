from __future__ import annotations

import json
import logging
import os
import struct
import time
import zlib
from dataclasses import dataclass
from typing import BinaryIO, Dict, List, Optional

from ..codec import Codec, codec_id_from_name
from ..constants import (
    ARGON_MEMORY_COST_KIB,
    ENGRAM_MAGIC,
    ENGRAM_VERSION,
    FLAG_ENCRYPTED,
    MANIFEST_MEMBER,
)
from ..encryption import EncryptionContext, EncryptionParams
from ..errors import EncryptedArchiveRequiresPassword, NotFoundError, OpenError
from ..pathutil import norm_path

logger = logging.getLogger(__name__)


_HEADER_STRUCT = struct.Struct("<8sHHIIIQQQ16sIII8sI")
# Fields (little endian):
# magic[8], ver_major u16, ver_minor u16, flags u32,
# entry_count u32, content_version u32,
# central_directory_offset u64, central_directory_size u64, created u64,
# kdf_salt[16], argon_mem u32, argon_time u32, argon_lanes u32,
# reserved[8], header_crc32 u32

_CD_PATH_LEN = struct.Struct("<H")
_CD_ENTRY = struct.Struct("<BQQIQQ")
# codec u8, uncompressed_size u64, compressed_size u64, crc32 u32,
# data_offset u64, modified u64


@dataclass
class EngramHeader:
    version_major: int
    version_minor: int
    flags: int
    entry_count: int
    content_version: int
    central_directory_offset: int
    central_directory_size: int
    created: int
    kdf_salt: bytes
    argon_memory_cost: int
    argon_time_cost: int
    argon_parallelism: int
    header_crc: int

    @property
    def encrypted(self) -> bool:
        return bool(self.flags & FLAG_ENCRYPTED)


@dataclass
class EngramEntry:
    path: str
    compression: int
    uncompressed_size: int
    compressed_size: int
    crc32: int
    data_offset: int
    modified_time: int


def _pack_header(header: EngramHeader) -> bytes:
    pre = _HEADER_STRUCT.pack(
        ENGRAM_MAGIC,
        header.version_major,
        header.version_minor,
        header.flags,
        header.entry_count,
        header.content_version,
        header.central_directory_offset,
        header.central_directory_size,
        header.created,
        header.kdf_salt,
        header.argon_memory_cost,
        header.argon_time_cost,
        header.argon_parallelism,
        b"\x00" * 8,
        0,  # crc placeholder
    )
    crc = zlib.crc32(pre[:-4])
    return pre[:-4] + struct.pack("<I", crc)


def _unpack_header(raw: bytes) -> EngramHeader:
    if len(raw) != _HEADER_STRUCT.size:
        raise OpenError("Engram header too short")
    (magic, vmaj, vmin, flags, count, cver, cd_off, cd_size, created, salt, amem, atime, alanes, _res, crc) = _HEADER_STRUCT.unpack(raw)
    if magic != ENGRAM_MAGIC:
        raise OpenError("Bad Engram magic")
    if zlib.crc32(raw[:-4]) != crc:
        raise OpenError("Engram header CRC mismatch")
    return EngramHeader(
        version_major=vmaj,
        version_minor=vmin,
        flags=flags,
        entry_count=count,
        content_version=cver,
        central_directory_offset=cd_off,
        central_directory_size=cd_size,
        created=created,
        kdf_salt=salt,
        argon_memory_cost=amem,
        argon_time_cost=atime,
        argon_parallelism=alanes,
        header_crc=crc,
    )


def _nonce_material(entry_index: int, path: str) -> bytes:
    return struct.pack("<Q", entry_index) + path.encode("utf-8")


class EngramWriter:
    """Writes an immutable Engram archive in one pass.

    Members are written as they are added; the central directory and the
    final header are written by ``finalize``.
    """

    def __init__(
        self,
        path: str,
        *,
        compression: str = "zstd",
        password: Optional[str] = None,
        content_version: int = 1,
        kdf_memory_kib: int = ARGON_MEMORY_COST_KIB,
    ):
        self.path = path
        self.default_codec = codec_id_from_name(compression)
        self.content_version = content_version
        self.encryptor: Optional[EncryptionContext] = None
        if password:
            self.encryptor = EncryptionContext.create(password, memory_cost_kib=kdf_memory_kib)
        self.entries: List[EngramEntry] = []
        self._paths: set = set()
        self.f: Optional[BinaryIO] = open(path, "wb")
        self.f.write(b"\x00" * _HEADER_STRUCT.size)
        self._finalized = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        if self.f is not None:
            self.f.close()
            self.f = None

    def add_file(self, path: str, data: bytes, *, compression: Optional[str] = None, modified: Optional[int] = None) -> EngramEntry:
        if self.f is None or self._finalized:
            raise RuntimeError("Writer is closed")
        arc_path = norm_path(path)
        if arc_path in self._paths:
            raise ValueError(f"Duplicate member path: {arc_path}")
        codec_id = codec_id_from_name(compression) if compression else self.default_codec
        stored = Codec(codec_id).compress(data)
        if self.encryptor is not None:
            stored = self.encryptor.encrypt(
                arc_path.encode("utf-8"),
                stored,
                nonce_material=_nonce_material(len(self.entries), arc_path),
            )
        offset = self.f.tell()
        self.f.write(stored)
        entry = EngramEntry(
            path=arc_path,
            compression=codec_id,
            uncompressed_size=len(data),
            compressed_size=len(stored),
            crc32=zlib.crc32(data),
            data_offset=offset,
            modified_time=int(modified if modified is not None else time.time()),
        )
        self.entries.append(entry)
        self._paths.add(arc_path)
        return entry

    def add_file_from_disk(self, path: str, fs_path: str, *, compression: Optional[str] = None) -> EngramEntry:
        with open(fs_path, "rb") as rf:
            data = rf.read()
        return self.add_file(path, data, compression=compression, modified=int(os.path.getmtime(fs_path)))

    def finalize(self):
        if self.f is None or self._finalized:
            raise RuntimeError("Writer is closed")
        cd = bytearray()
        for e in self.entries:
            raw_path = e.path.encode("utf-8")
            cd += _CD_PATH_LEN.pack(len(raw_path)) + raw_path
            cd += _CD_ENTRY.pack(e.compression, e.uncompressed_size, e.compressed_size, e.crc32, e.data_offset, e.modified_time)
        cd_offset = self.f.tell()
        self.f.write(cd)
        params = self.encryptor.params if self.encryptor is not None else None
        header = EngramHeader(
            version_major=ENGRAM_VERSION[0],
            version_minor=ENGRAM_VERSION[1],
            flags=FLAG_ENCRYPTED if params is not None else 0,
            entry_count=len(self.entries),
            content_version=self.content_version,
            central_directory_offset=cd_offset,
            central_directory_size=len(cd),
            created=int(time.time()),
            kdf_salt=params.salt if params else b"\x00" * 16,
            argon_memory_cost=params.memory_cost_kib if params else 0,
            argon_time_cost=params.time_cost if params else 0,
            argon_parallelism=params.parallelism if params else 0,
            header_crc=0,
        )
        self.f.seek(0)
        self.f.write(_pack_header(header))
        self.f.flush()
        os.fsync(self.f.fileno())
        self._finalized = True
        logger.debug("finalized engram %s (%d entries)", self.path, len(self.entries))
        self.close()


class EngramReader:
    def __init__(self, path: str, password: Optional[str] = None):
        self.path = path
        self.password = password
        self.f: Optional[BinaryIO] = None
        self.header: Optional[EngramHeader] = None
        self.entries: List[EngramEntry] = []
        self._by_path: Dict[str, int] = {}
        self.decryptor: Optional[EncryptionContext] = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def open(self):
        if self.f is not None:
            return
        self.f = open(self.path, "rb")
        try:
            self.header = _unpack_header(self.f.read(_HEADER_STRUCT.size))
            self._load_central_directory()
            if self.header.encrypted and self.password:
                params = EncryptionParams(
                    salt=self.header.kdf_salt,
                    time_cost=self.header.argon_time_cost,
                    memory_cost_kib=self.header.argon_memory_cost,
                    parallelism=self.header.argon_parallelism,
                )
                self.decryptor = EncryptionContext.from_params(self.password, params)
        except (OpenError, ValueError, struct.error, UnicodeDecodeError) as exc:
            self.close()
            if isinstance(exc, OpenError):
                raise
            raise OpenError(f"Malformed Engram archive: {exc}") from exc

    def close(self):
        if self.f is not None:
            self.f.close()
            self.f = None

    def _load_central_directory(self):
        hdr = self.header
        file_size = os.fstat(self.f.fileno()).st_size
        if hdr.central_directory_offset + hdr.central_directory_size > file_size:
            raise OpenError("Central directory lies beyond end of file")
        self.f.seek(hdr.central_directory_offset)
        cd = self.f.read(hdr.central_directory_size)
        pos = 0
        entries: List[EngramEntry] = []
        for _ in range(hdr.entry_count):
            (plen,) = _CD_PATH_LEN.unpack_from(cd, pos)
            pos += _CD_PATH_LEN.size
            path = cd[pos:pos + plen].decode("utf-8")
            pos += plen
            codec, usize, csize, crc, off, mtime = _CD_ENTRY.unpack_from(cd, pos)
            pos += _CD_ENTRY.size
            if off + csize > hdr.central_directory_offset:
                raise OpenError(f"Entry {path!r} overlaps the central directory")
            entries.append(EngramEntry(path, codec, usize, csize, crc, off, mtime))
        if pos != len(cd):
            raise OpenError("Central directory length mismatch")
        self.entries = entries
        self._by_path = {e.path: i for i, e in enumerate(entries)}

    def list_files(self) -> List[str]:
        return [e.path for e in self.entries]

    def get_entry(self, path: str) -> Optional[EngramEntry]:
        idx = self._by_path.get(path)
        return self.entries[idx] if idx is not None else None

    def read_raw(self, path: str) -> bytes:
        """Stored bytes of a member, still compressed and sealed."""
        if self.f is None:
            raise RuntimeError("Archive not open")
        entry = self.get_entry(path)
        if entry is None:
            raise NotFoundError(f"'{path}' not found in Engram archive {self.path}")
        self.f.seek(entry.data_offset)
        return self.f.read(entry.compressed_size)

    def read_file(self, path: str) -> bytes:
        stored = self.read_raw(path)
        entry = self.get_entry(path)
        if self.header.encrypted:
            if self.decryptor is None:
                raise EncryptedArchiveRequiresPassword(f"Engram archive {self.path} is encrypted; password required")
            stored = self.decryptor.decrypt(entry.path.encode("utf-8"), stored)
        data = Codec(entry.compression).decompress(stored)
        if len(data) != entry.uncompressed_size:
            raise RuntimeError(f"Size mismatch after decompressing '{path}'")
        return data

    def read_manifest(self) -> Optional[dict]:
        if self.get_entry(MANIFEST_MEMBER) is None:
            return None
        try:
            return json.loads(self.read_file(MANIFEST_MEMBER).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise OpenError(f"Manifest in {self.path} is not valid JSON") from exc
