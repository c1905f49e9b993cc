from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterator, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]


def norm_path(p: str) -> str:
    """Normalize archive member paths to a canonical forward-slash form.

    Rules:
    - Convert backslashes to slashes
    - Strip leading/trailing slashes
    - Remove empty and '.' segments
    - Reject '..' segments
    """
    p = p.replace("\\", "/").strip("/")
    parts = [q for q in p.split("/") if q not in ("", ".")]
    for q in parts:
        if q == "..":
            raise ValueError(f"Path may not contain '..': {p}")
    if not parts:
        raise ValueError("Empty member path")
    return "/".join(parts)


def member_output_path(output_dir: PathLike, member: str) -> Path:
    """Destination for ``member`` beneath ``output_dir``; never escapes it."""
    return Path(output_dir).joinpath(*norm_path(member).split("/"))


def write_member(output_dir: PathLike, member: str, data: bytes) -> Path:
    dst = member_output_path(output_dir, member)
    dst.parent.mkdir(parents=True, exist_ok=True)
    with open(dst, "wb") as wf:
        wf.write(data)
    return dst


@contextlib.contextmanager
def atomic_replace(path: PathLike) -> Iterator[Path]:
    """Yield a temporary sibling of ``path``; rename it over ``path`` on success.

    The rename is the only point at which ``path`` changes. Any exception
    raised inside the block removes the temporary file and leaves ``path``
    untouched.
    """
    target = Path(path)
    directory = target.parent if str(target.parent) else Path(".")
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(directory))
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        yield tmp_path
        if target.exists():
            shutil.copymode(str(target), str(tmp_path))
        os.replace(str(tmp_path), str(target))
        logger.debug("replaced %s", target)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
