# MAP AND CHART FUNCTIONS #

# MODULES
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import geopandas as gpd
import matplotlib.pyplot as plt
import numpy as np
import rioxarray  # noqa: F401 - registers the rio accessor
import xarray as xr
from matplotlib.colors import BoundaryNorm
from rasterio.coords import BoundingBox

from st_abundance.map_calculations import Region, region_cell_mask, select_layer, valid_cells
from st_abundance.trajectories import RichnessRecord, TrajectoryRecord


def _prepare_abundance_layer(
    da: xr.DataArray,
    *,
    when: Optional[date] = None,
    region: Optional[Region] = None,
    eliminate_zeros: bool = False,
) -> Tuple[np.ndarray, BoundingBox, object]:
    """Normalise an abundance raster for plotting.

    Returns
    -------
    tuple
        ``(array, bounds, crs)`` where ``array`` is a ``float32`` grid with
        NaN for no data (and for cells outside ``region``, selected with the
        same center-in-polygon rule used for region sums).
    """
    layer = select_layer(da, when)
    data = np.asarray(layer.values, dtype="float32").copy()

    keep = valid_cells(data, layer.rio.nodata)
    if region is not None:
        keep &= region_cell_mask(layer, region)
    if eliminate_zeros:
        keep &= data != 0
    data[~keep] = np.nan

    minx, miny, maxx, maxy = layer.rio.bounds()
    bounds = BoundingBox(left=minx, bottom=miny, right=maxx, top=maxy)
    return data, bounds, layer.rio.crs


def plot_abundance_map(
    da: xr.DataArray,
    title: str,
    label_title: str = "Relative abundance",
    when: Optional[date] = None,
    region: Optional[Region] = None,
    bins: Optional[Sequence[float]] = None,
    cmap: str = "viridis",
    eliminate_zeros: bool = True,
    base_shp: Optional[gpd.GeoDataFrame] = None,
    x_size: float = 10,
    y_size: float = 8,
    plt_show: bool = True,
):
    """
    Plot one abundance layer in its native projection.

    - ``when`` picks the week from a weekly stack.
    - ``region`` masks the map to the cells counted in region sums.
    - ``bins`` (e.g. ``MapParameters.weekly_bins``) switches to a binned colour scale.
    - ``base_shp`` is reprojected to the raster CRS and drawn as outlines.
    """
    raster_data, bounds, raster_crs = _prepare_abundance_layer(
        da, when=when, region=region, eliminate_zeros=eliminate_zeros
    )

    fig, ax = plt.subplots(figsize=(x_size, y_size))

    norm = None
    colormap = plt.get_cmap(cmap)
    if bins is not None and len(bins) > 1:
        norm = BoundaryNorm(list(bins), ncolors=colormap.N, extend="both")

    img = ax.imshow(
        raster_data,
        extent=(bounds.left, bounds.right, bounds.bottom, bounds.top),
        origin="upper",
        cmap=colormap,
        norm=norm,
        interpolation="nearest",
    )

    if base_shp is not None and not base_shp.empty:
        shp_to_plot = base_shp.to_crs(raster_crs) if (raster_crs is not None and base_shp.crs is not None) else base_shp
        shp_to_plot.boundary.plot(ax=ax, color="#555555", linewidth=0.5)

    cbar = fig.colorbar(img, ax=ax, shrink=0.7)
    cbar.set_label(label_title)
    ax.set_title(title)
    ax.set_xlabel("Easting")
    ax.set_ylabel("Northing")
    ax.set_xlim(bounds.left, bounds.right)
    ax.set_ylim(bounds.bottom, bounds.top)

    if plt_show:
        plt.show()
    else:
        return fig, ax


def _group_by_species(records: Iterable[TrajectoryRecord]) -> Dict[str, List[TrajectoryRecord]]:
    grouped: Dict[str, List[TrajectoryRecord]] = {}
    for record in records:
        grouped.setdefault(record.species, []).append(record)
    for species_records in grouped.values():
        species_records.sort(key=lambda r: r.date)
    return grouped


def plot_trajectories(
    records: Iterable[TrajectoryRecord],
    title: str = "Proportion of population in region",
    xlabel: str = "Week",
    ylabel: str = "Proportion of population",
    x_size: float = 12,
    y_size: float = 6,
    plt_show: bool = True,
):
    """
    Plot one line per species of the weekly proportion of its population.

    Undefined weeks are drawn as gaps.
    """
    fig, ax = plt.subplots(figsize=(x_size, y_size))

    for species, species_records in _group_by_species(records).items():
        ax.plot(
            [r.date for r in species_records],
            [r.proportion for r in species_records],
            label=species,
        )

    ax.set_xlabel(xlabel)
    ax.set_ylabel(ylabel)
    ax.set_title(title)
    ax.set_ylim(bottom=0)
    if ax.get_legend_handles_labels()[0]:
        ax.legend(loc="upper left", bbox_to_anchor=(1.01, 1.0), fontsize="small")
    ax.grid(axis="y", visible=True, color="#f0f0f0")
    fig.tight_layout()

    if plt_show:
        plt.show()
    else:
        return fig, ax


def plot_richness(
    records: Iterable[RichnessRecord],
    title: str = "Species richness in region",
    xlabel: str = "Week",
    ylabel: str = "Number of species",
    x_size: float = 12,
    y_size: float = 5,
    plt_show: bool = True,
):
    """Plot the weekly richness count."""
    records = sorted(records, key=lambda r: r.date)

    fig, ax = plt.subplots(figsize=(x_size, y_size))
    ax.plot([r.date for r in records], [r.count for r in records], marker="o")
    ax.set_xlabel(xlabel)
    ax.set_ylabel(ylabel)
    ax.set_title(title)
    ax.set_ylim(bottom=0)
    ax.grid(True, "major")
    fig.tight_layout()

    if plt_show:
        plt.show()
    else:
        return fig, ax


def plot_point_intervals(
    points: gpd.GeoDataFrame,
    label_column: str,
    title: str = "Relative abundance at sites",
    ylabel: str = "Relative abundance",
    x_size: float = 10,
    y_size: float = 6,
    plt_show: bool = True,
):
    """
    Error-bar plot of the estimates produced by
    :func:`st_abundance.map_calculations.extract_point_intervals`.

    Points with a missing estimate are skipped.
    """
    required = {label_column, "abundance", "lower", "upper"}
    missing = required - set(points.columns)
    if missing:
        raise ValueError(f"Missing columns for interval plot: {sorted(missing)}")

    data = points.dropna(subset=["abundance"])
    estimate = data["abundance"].to_numpy(dtype=float)
    lower_err = np.clip(estimate - data["lower"].to_numpy(dtype=float), 0, None)
    upper_err = np.clip(data["upper"].to_numpy(dtype=float) - estimate, 0, None)
    positions = np.arange(len(data))

    fig, ax = plt.subplots(figsize=(x_size, y_size))
    ax.errorbar(
        positions,
        estimate,
        yerr=np.vstack([np.nan_to_num(lower_err), np.nan_to_num(upper_err)]),
        fmt="o",
        capsize=4,
    )
    ax.set_xticks(positions)
    ax.set_xticklabels(data[label_column].astype(str).tolist(), rotation=45, ha="right")
    ax.set_ylabel(ylabel)
    ax.set_title(title)
    ax.grid(axis="y", visible=True, color="#f0f0f0")
    fig.tight_layout()

    if plt_show:
        plt.show()
    else:
        return fig, ax
