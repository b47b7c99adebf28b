"""
Atomic file writes.

Output is written to a temporary file in the destination directory and moved
into place with ``os.replace()``, so readers see either the previous file or
the complete new one. A failed write leaves no partial file behind.
"""

from __future__ import annotations

import json
import os
import tempfile
from typing import Any, Callable, IO

import pandas as pd

__all__ = ['atomic_write', 'atomic_write_json', 'atomic_write_text', 'atomic_write_frame']


def atomic_write(path: str | os.PathLike, write: Callable[[IO[str]], None]) -> None:
    """Call ``write(handle)`` on a temp file next to *path*, then rename it over *path*.

    The destination directory is created if missing.
    """
    path = os.fspath(path)
    dir_path = os.path.dirname(path) or "."
    os.makedirs(dir_path, exist_ok=True)
    tmp_path: str | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w", dir=dir_path, suffix=".tmp", delete=False, newline=""
        ) as tmp:
            tmp_path = tmp.name
            write(tmp)
        os.replace(tmp_path, path)
    except BaseException:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def atomic_write_json(path: str | os.PathLike, data: Any, *, indent: int = 2) -> None:
    """Serialize *data* as JSON to *path* atomically."""
    atomic_write(path, lambda handle: json.dump(data, handle, indent=indent, default=str))


def atomic_write_text(path: str | os.PathLike, content: str) -> None:
    atomic_write(path, lambda handle: handle.write(content))


def atomic_write_frame(
    path: str | os.PathLike,
    frame: pd.DataFrame,
    *,
    sep: str = "\t",
    index: bool = False,
    float_format: str | None = None,
) -> None:
    """Write a DataFrame as delimited text atomically.

    Missing values are written as ``NA``.
    """
    atomic_write(
        path,
        lambda handle: frame.to_csv(
            handle, sep=sep, index=index, na_rep="NA", float_format=float_format,
            lineterminator="\n",
        ),
    )
