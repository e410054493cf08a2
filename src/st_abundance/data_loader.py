"""Loaders for the weekly and seasonal abundance products and their companions.

The abundance products are multi-band GeoTIFFs: weekly stacks carry one band
per week of the reference year, seasonal rasters one band per season, and
the confidence-bound products mirror the weekly layout.  This module turns
them into masked :class:`xarray.DataArray` objects with a ``time`` (or
``season``) dimension so the aggregation and mapping helpers can stay
agnostic of file layout.

Region boundaries and map parameters are small and reused across notebook
cells, so they are read once and cached; callers always receive a copy so
the cached object cannot be mutated by accident.
"""

from __future__ import annotations

import calendar
import json
from dataclasses import dataclass, field
from datetime import date, timedelta
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import geopandas as gpd
import pandas as pd
import rasterio
import rioxarray as rxr
import xarray as xr

from st_abundance import config
from st_abundance.errors import DataShapeError
from st_abundance.paths import PathLike, as_path, data_path

DEFAULT_BOUNDARIES_PATH = data_path("boundaries", "ne_50m_admin_1_states_provinces.shp")
DEFAULT_STACK_PATTERN = "{species}_abundance_median.tif"


def _ensure_exists(path: Path, *, description: str) -> Path:
    """Ensure ``path`` exists before attempting to read it."""

    if not path.exists():
        raise FileNotFoundError(f"Expected {description} at '{path}'.")
    return path


# -----------------------------------------------------------------------------
# Week dates
# -----------------------------------------------------------------------------
def week_midpoints(year: int = config.REFERENCE_YEAR, weeks: int = config.WEEKS_PER_YEAR) -> List[date]:
    """Return the midpoint date of each of ``weeks`` equal bins of ``year``.

    With the defaults this yields the 52 week dates used by the weekly
    products (January 4th, January 11th, ...).
    """

    if weeks <= 0:
        return []
    days_in_year = 366 if calendar.isleap(year) else 365
    start = date(year, 1, 1)
    bin_length = days_in_year / weeks
    return [start + timedelta(days=int((i + 0.5) * bin_length)) for i in range(weeks)]


def _band_descriptions(path: Path) -> Tuple[Optional[str], ...]:
    with rasterio.open(path) as src:
        return tuple(src.descriptions)


def _dates_from_descriptions(descriptions: Sequence[Optional[str]]) -> Optional[List[date]]:
    """Parse ISO dates stored as band descriptions, or ``None`` if any band lacks one."""

    try:
        return [date.fromisoformat(d) for d in descriptions]
    except (TypeError, ValueError):
        return None


# -----------------------------------------------------------------------------
# Abundance rasters
# -----------------------------------------------------------------------------
def load_weekly_abundance(path: PathLike, dates: Optional[Sequence[date]] = None) -> xr.DataArray:
    """
    Load a weekly abundance stack as a masked DataArray with dims ('time', 'y', 'x').

    Week dates come from ``dates`` when given, otherwise from the band
    descriptions (ISO dates), otherwise from :func:`week_midpoints`.
    """
    path = _ensure_exists(as_path(path), description="weekly abundance raster")
    da = rxr.open_rasterio(path, masked=True)
    n_bands = da.sizes["band"]

    if dates is None:
        dates = _dates_from_descriptions(_band_descriptions(path))
    if dates is None:
        dates = week_midpoints(weeks=n_bands)
    if len(dates) != n_bands:
        raise DataShapeError(f"{path.name} has {n_bands} bands but {len(dates)} week dates were given.")

    da = da.rename({"band": "time"}).assign_coords(time=pd.to_datetime(list(dates)))
    da.name = "abundance"
    return da


def load_seasonal_abundance(path: PathLike, seasons: Optional[Sequence[str]] = None) -> xr.DataArray:
    """
    Load a seasonal abundance raster as a DataArray with dims ('season', 'y', 'x').

    Season labels come from ``seasons``, the band descriptions, or
    :data:`st_abundance.config.SEASONS`, in that order.
    """
    path = _ensure_exists(as_path(path), description="seasonal abundance raster")
    da = rxr.open_rasterio(path, masked=True)
    n_bands = da.sizes["band"]

    if seasons is None:
        descriptions = _band_descriptions(path)
        if all(descriptions):
            seasons = list(descriptions)
        else:
            seasons = list(config.SEASONS[:n_bands])
    if len(seasons) != n_bands:
        raise DataShapeError(f"{path.name} has {n_bands} bands but {len(seasons)} season labels.")

    da = da.rename({"band": "season"}).assign_coords(season=list(seasons))
    da.name = "abundance"
    return da


def load_abundance_bounds(
    lower_path: PathLike,
    upper_path: PathLike,
    dates: Optional[Sequence[date]] = None,
) -> Tuple[xr.DataArray, xr.DataArray]:
    """Load the weekly lower and upper confidence-bound stacks; both must share a grid."""

    lower = load_weekly_abundance(lower_path, dates=dates)
    upper = load_weekly_abundance(upper_path, dates=dates)

    if lower.shape != upper.shape or lower.rio.transform() != upper.rio.transform():
        raise DataShapeError(
            f"Lower bound grid {lower.shape} does not match upper bound grid {upper.shape}."
        )
    lower.name = "lower"
    upper.name = "upper"
    return lower, upper


def load_species_stacks(
    folder: PathLike,
    species: Iterable[str],
    pattern: str = DEFAULT_STACK_PATTERN,
) -> Dict[str, xr.DataArray]:
    """Load one weekly stack per species from ``folder`` using a file-name ``pattern``."""

    folder = as_path(folder)
    return {name: load_weekly_abundance(folder / pattern.format(species=name)) for name in species}


# -----------------------------------------------------------------------------
# Map parameters
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class MapParameters:
    """Projection and colour-bin settings shipped with each species' products."""

    crs: str
    extent: Optional[Tuple[float, float, float, float]] = None  # xmin, xmax, ymin, ymax
    weekly_bins: List[float] = field(default_factory=list)
    seasonal_bins: List[float] = field(default_factory=list)


def load_map_parameters(path: PathLike) -> MapParameters:
    """Read a species' map-parameter JSON file."""

    path = _ensure_exists(as_path(path), description="map parameter file")
    with path.open() as fp:
        raw: Mapping = json.load(fp)

    if "crs" not in raw:
        raise KeyError(f"Map parameter file '{path}' has no 'crs' entry.")

    extent = raw.get("extent")
    if isinstance(extent, Mapping):
        extent = (extent["xmin"], extent["xmax"], extent["ymin"], extent["ymax"])
    return MapParameters(
        crs=raw["crs"],
        extent=tuple(extent) if extent is not None else None,
        weekly_bins=list(raw.get("weekly_bins", [])),
        seasonal_bins=list(raw.get("seasonal_bins", [])),
    )


# -----------------------------------------------------------------------------
# Region boundaries
# -----------------------------------------------------------------------------
@lru_cache(maxsize=None)
def _load_region_boundaries(path: Path) -> gpd.GeoDataFrame:
    """Read a region boundary file from disk."""

    return gpd.read_file(_ensure_exists(path, description="region boundary file"))


def get_region_boundaries(path: Optional[PathLike] = None) -> gpd.GeoDataFrame:
    """Return a cached copy of the region boundaries at ``path`` (bundled file by default)."""

    resolved = as_path(path) if path is not None else DEFAULT_BOUNDARIES_PATH
    return _load_region_boundaries(resolved.resolve()).copy()


def select_region(boundaries: gpd.GeoDataFrame, name: str, column: str = "name") -> gpd.GeoDataFrame:
    """Return the rows of ``boundaries`` whose ``column`` equals ``name``."""

    if column not in boundaries.columns:
        raise KeyError(f"Column '{column}' not in boundaries. Available: {list(boundaries.columns)}")
    selected = boundaries[boundaries[column] == name]
    if selected.empty:
        raise KeyError(f"No region named '{name}' in column '{column}'.")
    return selected.copy()
