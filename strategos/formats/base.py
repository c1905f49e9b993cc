from __future__ import annotations

import abc
import enum
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Iterable, List, Optional, Sequence

from ..constants import DATABASE_SUFFIXES
from ..errors import NotFoundError
from ..pathutil import write_member
from .detection import ArchiveFormat


@dataclass
class ArchiveInfo:
    format: str
    version: str
    entry_count: int
    total_size: int
    compressed_size: int
    compression_ratio: float = 1.0
    metadata: Any = field(default_factory=dict)


@dataclass
class FileEntry:
    path: str
    size: int
    compressed_size: int
    compression_method: str
    modified: Optional[int] = None
    crc32: Optional[int] = None


@dataclass
class SearchResult:
    file_path: str
    line_number: int
    line_content: str
    match_offset: int


class OutputFormat(enum.Enum):
    TABLE = "table"
    JSON = "json"
    CSV = "csv"

    @classmethod
    def parse(cls, value: str) -> "OutputFormat":
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Unknown output format: {value} (expected table, json, or csv)") from None


def compression_ratio(total_size: int, compressed_size: int) -> float:
    """stored / logical, 1.0 when either side is unknown."""
    if total_size > 0 and compressed_size > 0:
        return compressed_size / total_size
    return 1.0


def is_database(path: str) -> bool:
    return path.endswith(DATABASE_SUFFIXES)


def _split_lines(text: str) -> Iterable[str]:
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    for line in lines:
        yield line[:-1] if line.endswith("\r") else line


def search_text(file_path: str, data: bytes, pattern: str, case_insensitive: bool = False) -> List[SearchResult]:
    """Literal line search over ``data``; binary (non-UTF-8) data yields nothing."""
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return []
    rx = re.compile(re.escape(pattern), re.IGNORECASE if case_insensitive else 0)
    results: List[SearchResult] = []
    for number, line in enumerate(_split_lines(text), start=1):
        m = rx.search(line)
        if m is None:
            continue
        results.append(
            SearchResult(
                file_path=file_path,
                line_number=number,
                line_content=line,
                match_offset=len(line[:m.start()].encode("utf-8")),
            )
        )
    return results


class Archive(abc.ABC):
    """Read-only core every driver implements."""

    format: ClassVar[ArchiveFormat] = ArchiveFormat.UNKNOWN

    def __init__(self, path: str):
        self.path = path

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @classmethod
    @abc.abstractmethod
    def open(cls, path: str, *, password: Optional[str] = None) -> "Archive":
        """Open ``path``; raises OpenError and leaves nothing open on failure."""

    def close(self) -> None:
        pass

    @property
    def format_name(self) -> str:
        return self.format.display_name

    @abc.abstractmethod
    def info(self) -> ArchiveInfo: ...

    @abc.abstractmethod
    def list_files(self) -> List[FileEntry]: ...

    @abc.abstractmethod
    def read_file(self, path: str) -> bytes: ...

    @abc.abstractmethod
    def verify(self) -> bool: ...

    def member_paths(self) -> List[str]:
        return [e.path for e in self.list_files()]

    def extract(self, output_dir: str, paths: Optional[Sequence[str]] = None) -> List[str]:
        """Write the selected members (all by default) beneath ``output_dir``.

        Not transactional: members written before a failure stay on disk.
        Requested paths must appear in the listing.
        """
        listed = self.member_paths()
        members = list(paths) if paths else listed
        missing = [m for m in members if m not in listed]
        if missing:
            raise NotFoundError(f"'{missing[0]}' not found in {self.format_name} archive {self.path}")
        written: List[str] = []
        for member in members:
            write_member(output_dir, member, self.read_file(member))
            written.append(member)
        return written

    def search(self, pattern: str, case_insensitive: bool = False) -> List[SearchResult]:
        results: List[SearchResult] = []
        for member in self.member_paths():
            results.extend(search_text(member, self.read_file(member), pattern, case_insensitive))
        return results


class MutableArchive(Archive):
    @classmethod
    @abc.abstractmethod
    def open(cls, path: str, *, password: Optional[str] = None, writable: bool = False) -> "MutableArchive":
        """Open ``path``; only a ``writable`` handle accepts write_file/delete_file."""

    @abc.abstractmethod
    def write_file(self, path: str, data: bytes) -> None:
        """Insert or replace ``path``."""

    @abc.abstractmethod
    def delete_file(self, path: str) -> None: ...

    @abc.abstractmethod
    def flush(self) -> None: ...


class QueryableArchive(Archive):
    def list_databases(self) -> List[str]:
        return [p for p in self.member_paths() if is_database(p)]

    def query(self, database: str, sql: str, output_format: OutputFormat = OutputFormat.TABLE) -> str:
        from ..query import execute_query, render_rows

        if database not in self.member_paths():
            raise NotFoundError(f"Database '{database}' not found in {self.format_name} archive {self.path}")
        columns, rows = execute_query(self.read_file(database), sql, label=f"{self.path}:{database}")
        return render_rows(columns, rows, output_format)
