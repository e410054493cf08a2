"""st_abundance: analyses on weekly relative-abundance rasters of bird species.

The top-level package re-exports the workflows the notebooks rely on so
they can depend on a stable surface area.  The curated groups are:

* Population trajectories (:mod:`st_abundance.trajectories`)
  - :func:`compute_trajectory`, :func:`compute_week_sums`
  - :func:`compute_trajectories`, :class:`TrajectoryBatch`
  - :func:`compute_richness`
  - :func:`trajectories_to_frame`, :func:`richness_to_frame`
  - :func:`write_trajectories`, :func:`read_trajectories`
  - :class:`TrajectoryRecord`, :class:`RichnessRecord`, :class:`WeekSums`,
    :class:`WeekFailure`, :data:`UNDEFINED`
* Data loading (:mod:`st_abundance.data_loader`)
  - :func:`load_weekly_abundance`, :func:`load_seasonal_abundance`
  - :func:`load_abundance_bounds`, :func:`load_species_stacks`
  - :func:`load_map_parameters`, :class:`MapParameters`
  - :func:`get_region_boundaries`, :func:`select_region`
  - :func:`week_midpoints`
* Map calculations (:mod:`st_abundance.map_calculations`)
  - :func:`region_geometry`, :func:`reproject_region`, :func:`region_cell_mask`
  - :func:`crop_to_region`, :func:`reproject_abundance`
  - :func:`select_top_quantile_cells`
  - :func:`extract_point_values`, :func:`extract_point_intervals`
* Plotting helpers (:mod:`st_abundance.map_plotting`)
  - :func:`plot_abundance_map`, :func:`plot_trajectories`
  - :func:`plot_richness`, :func:`plot_point_intervals`
* Errors (:mod:`st_abundance.errors`)
  - :class:`DataShapeError`
"""

from .errors import DataShapeError
from .data_loader import (
    MapParameters,
    get_region_boundaries,
    load_abundance_bounds,
    load_map_parameters,
    load_seasonal_abundance,
    load_species_stacks,
    load_weekly_abundance,
    select_region,
    week_midpoints,
)
from .map_calculations import (
    crop_to_region,
    extract_point_intervals,
    extract_point_values,
    region_cell_mask,
    region_geometry,
    reproject_abundance,
    reproject_region,
    select_top_quantile_cells,
)
from .trajectories import (
    UNDEFINED,
    RichnessRecord,
    TrajectoryBatch,
    TrajectoryRecord,
    WeekFailure,
    WeekSums,
    compute_richness,
    compute_trajectories,
    compute_trajectory,
    compute_week_sums,
    read_trajectories,
    richness_to_frame,
    trajectories_to_frame,
    write_trajectories,
)
from .map_plotting import (
    plot_abundance_map,
    plot_point_intervals,
    plot_richness,
    plot_trajectories,
)


_ERROR_EXPORTS = ["DataShapeError"]
_DATA_LOADER_EXPORTS = [
    "MapParameters",
    "get_region_boundaries",
    "load_abundance_bounds",
    "load_map_parameters",
    "load_seasonal_abundance",
    "load_species_stacks",
    "load_weekly_abundance",
    "select_region",
    "week_midpoints",
]
_MAP_CALCULATIONS_EXPORTS = [
    "crop_to_region",
    "extract_point_intervals",
    "extract_point_values",
    "region_cell_mask",
    "region_geometry",
    "reproject_abundance",
    "reproject_region",
    "select_top_quantile_cells",
]
_TRAJECTORY_EXPORTS = [
    "UNDEFINED",
    "RichnessRecord",
    "TrajectoryBatch",
    "TrajectoryRecord",
    "WeekFailure",
    "WeekSums",
    "compute_richness",
    "compute_trajectories",
    "compute_trajectory",
    "compute_week_sums",
    "read_trajectories",
    "richness_to_frame",
    "trajectories_to_frame",
    "write_trajectories",
]
_MAP_PLOTTING_EXPORTS = [
    "plot_abundance_map",
    "plot_point_intervals",
    "plot_richness",
    "plot_trajectories",
]


__all__ = (
    _ERROR_EXPORTS
    + _DATA_LOADER_EXPORTS
    + _MAP_CALCULATIONS_EXPORTS
    + _TRAJECTORY_EXPORTS
    + _MAP_PLOTTING_EXPORTS
    + ["__version__", "__author__"]
)

# Package metadata
from importlib import metadata as _metadata
from pathlib import Path


try:
    __version__ = _metadata.version("st_abundance")
except _metadata.PackageNotFoundError:
    try:  # Python 3.11+
        import tomllib
    except ModuleNotFoundError:  # pragma: no cover - Python <3.11
        tomllib = None

    _pyproject = Path(__file__).resolve().parents[2] / "pyproject.toml"
    if tomllib is not None and _pyproject.exists():
        with _pyproject.open("rb") as _fp:
            __version__ = tomllib.load(_fp)["project"]["version"]
    else:
        __version__ = "0.0.0.dev1"

__author__ = "st_abundance contributors"
