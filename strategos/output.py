from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from .formats.base import ArchiveInfo, FileEntry, SearchResult

SEARCH_DISPLAY_LIMIT = 100


def format_size(n: int) -> str:
    """Human readable byte count (1024 based)."""
    size = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{int(size)} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{n} B"


def _percent(size: int, stored: int) -> float:
    return (stored / size) * 100.0 if size > 0 else 100.0


def render_info(path: str, info: ArchiveInfo, entries: Optional[Sequence[FileEntry]] = None) -> str:
    lines = [
        f"Archive: {path}",
        f"Format: {info.format}",
        f"Format Version: {info.version}",
        f"Total Files: {info.entry_count}",
        f"Total Size: {info.total_size} bytes ({format_size(info.total_size)})",
        f"Compressed: {info.compressed_size} bytes ({info.compression_ratio * 100.0:.1f}%)",
    ]
    metadata: Dict[str, Any] = dict(info.metadata or {})
    manifest = metadata.pop("manifest", None)
    for key in sorted(metadata):
        value = metadata[key]
        if value is None:
            continue
        lines.append(f"{key.replace('_', ' ').capitalize()}: {value}")
    if manifest:
        lines.append("")
        lines.append("Manifest:")
        lines.append(f"  ID: {manifest['id']}")
        lines.append(f"  Name: {manifest['name']}")
        lines.append(f"  Version: {manifest['version']}")
        lines.append(f"  Author: {manifest['author']}")
        if manifest.get("signatures"):
            lines.append(f"  Signatures: {manifest['signatures']}")
    if entries is not None:
        rule = "-" * 60
        lines += ["", rule, "Detailed File Information:", rule]
        for e in entries:
            lines.append("")
            lines.append(e.path)
            lines.append(f"  Compression: {e.compression_method}")
            lines.append(f"  Size: {e.size} -> {e.compressed_size} bytes ({_percent(e.size, e.compressed_size):.1f}%)")
            if e.crc32 is not None:
                lines.append(f"  CRC32: {e.crc32:08X}")
            if e.modified is not None:
                lines.append(f"  Modified: {e.modified}")
    return "\n".join(lines)


def render_signature_results(results: Sequence[bool]) -> str:
    if not results:
        return "  No signatures found"
    out = []
    for i, ok in enumerate(results, start=1):
        out.append(f"  Signature {i} {'valid' if ok else 'invalid'}")
    return "\n".join(out)


def render_listing(entries: Sequence[FileEntry], *, long: bool = False) -> str:
    if not entries:
        return "No files found"
    lines: List[str] = []
    for e in entries:
        if long:
            lines.append(
                f"{e.path:50} {e.size:>10} {e.compressed_size:>10} {e.compression_method:>8} "
                f"({_percent(e.size, e.compressed_size):.1f}%)"
            )
        else:
            lines.append(e.path)
    return "\n".join(lines)


def render_search(results: Sequence[SearchResult], *, limit: int = SEARCH_DISPLAY_LIMIT) -> str:
    """Group hits by member; at most ``limit`` hits are shown."""
    if not results:
        return "No matches found"
    lines: List[str] = []
    current = None
    for r in results[:limit]:
        if r.file_path != current:
            if current is not None:
                lines.append("")
            lines.append(f"{r.file_path}:")
            current = r.file_path
        lines.append(f"  {r.line_number}: {r.line_content}")
    lines.append("")
    if len(results) > limit:
        lines.append(f"Showing {limit} of {len(results)} matches")
    else:
        lines.append(f"Found {len(results)} match(es)")
    return "\n".join(lines)


def render_json(value: Any) -> str:
    return json.dumps(value, indent=2, sort_keys=True)
