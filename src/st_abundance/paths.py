"""Utilities for resolving repository-relative paths.

Notebooks live in different folders than the bundled rasters and boundary
files, so every location the package reads by default is resolved here
against the repository root.  All helpers return :class:`pathlib.Path`
objects.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Union, overload

PathLike = Union[str, Path]


def _resolve_root() -> Path:
    """Return the repository root directory (``.../src/st_abundance/paths.py`` -> root)."""

    return Path(__file__).resolve().parent.parent.parent


_DATA_DIR = _resolve_root() / "data"


def _coerce_parts(parts: tuple[PathLike | Iterable[PathLike], ...]) -> Iterable[PathLike]:
    """Normalise variadic path components into a single iterable."""

    if len(parts) == 1 and isinstance(parts[0], Iterable) and not isinstance(parts[0], (str, bytes, Path)):
        return parts[0]

    return parts


@overload
def data_path(*parts: PathLike) -> Path:
    ...


@overload
def data_path(parts: Iterable[PathLike]) -> Path:
    ...


def data_path(*parts: PathLike | Iterable[PathLike]) -> Path:
    """Return a path inside the repository ``data`` directory.

    Parameters
    ----------
    parts:
        Path segments joined beneath ``data``.  Either variadic positional
        arguments or a single iterable of segments.

    Examples
    --------
    >>> data_path("abundance", "woothr_abundance_median_27km.tif")
    PosixPath('/.../data/abundance/woothr_abundance_median_27km.tif')
    """

    return _DATA_DIR.joinpath(*map(Path, _coerce_parts(parts)))


def as_path(value: PathLike) -> Path:
    """Return ``value`` as a :class:`~pathlib.Path` instance."""

    return value if isinstance(value, Path) else Path(value)
