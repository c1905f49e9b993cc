from __future__ import annotations

import csv
import io
import json
import logging
import sqlite3
import tempfile
from pathlib import Path
from typing import List, Sequence, Tuple

from .errors import QueryError
from .formats.base import OutputFormat

logger = logging.getLogger(__name__)

NULL = "NULL"


def cell_text(value) -> str:
    """Render one SQLite value as text; NULL and undecodable blobs become ``NULL``."""
    if value is None:
        return NULL
    if isinstance(value, (bytes, bytearray, memoryview)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError:
            return NULL
    return str(value)


def execute_query(database: bytes, sql: str, *, label: str = "database") -> Tuple[List[str], List[List[str]]]:
    """Run ``sql`` against an in-archive SQLite image; returns column names and text rows.

    The image is copied to a scratch directory and opened read-only, so
    statements that modify the database fail with QueryError.
    """
    with tempfile.TemporaryDirectory(prefix="strategos-query-") as scratch:
        db_path = Path(scratch) / "member.db"
        db_path.write_bytes(database)
        uri = "file:" + db_path.as_posix() + "?mode=ro"
        try:
            conn = sqlite3.connect(uri, uri=True)
        except sqlite3.Error as exc:
            raise QueryError(f"Cannot open {label}: {exc}") from exc
        try:
            cur = conn.execute(sql)
            columns = [d[0] for d in cur.description] if cur.description else []
            rows = [[cell_text(v) for v in row] for row in cur.fetchall()]
        except sqlite3.Error as exc:
            raise QueryError(f"Query failed on {label}: {exc}") from exc
        finally:
            conn.close()
    logger.debug("query on %s returned %d rows", label, len(rows))
    return columns, rows


def format_table(columns: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    if not columns:
        return ""
    widths = [len(c) for c in columns]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    lines = ["".join(c.ljust(w + 2) for c, w in zip(columns, widths)).rstrip()]
    lines.append("".join(("-" * w).ljust(w + 2) for w in widths).rstrip())
    for row in rows:
        lines.append("".join(cell.ljust(w + 2) for cell, w in zip(row, widths)).rstrip())
    return "\n".join(lines)


def format_json(columns: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    return json.dumps([dict(zip(columns, row)) for row in rows], indent=2)


def format_csv(columns: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(columns)
    writer.writerows(rows)
    return buf.getvalue().rstrip("\n")


def render_rows(columns: Sequence[str], rows: Sequence[Sequence[str]], output_format: OutputFormat) -> str:
    if output_format is OutputFormat.JSON:
        return format_json(columns, rows)
    if output_format is OutputFormat.CSV:
        return format_csv(columns, rows)
    return format_table(columns, rows)
