"""
guardian.loading
~~~~~~~~~~~~~~~~
Shared plumbing for the line-oriented credential and authorization files.

Both formats are UTF-8 text, one record per line.  Blank lines and
``# comment`` lines are skipped; everything else must parse or the whole
load fails.
"""

from __future__ import annotations

import pathlib
from typing import IO, Iterator, Tuple, Union


class LoadError(Exception):
    """Raised when a store cannot be built from its source."""


def read_records(reader: IO, kind: str) -> Iterator[Tuple[int, str]]:
    """Yield ``(lineno, line)`` for every meaningful line of *reader*."""
    data = reader.read()
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise LoadError(f"{kind}: source is not valid UTF-8 ({e})") from e

    for lineno, ln in enumerate(data.splitlines(), start=1):
        ln = ln.strip()
        if not ln or ln.startswith("#"):
            continue
        yield lineno, ln


def open_source(path: Union[str, pathlib.Path], kind: str) -> IO[bytes]:
    try:
        return pathlib.Path(path).open("rb")
    except OSError as e:
        raise LoadError(f"{kind}: cannot read {path}: {e.strerror or e}") from e
