"""
Population trajectories and species richness from weekly abundance stacks.

For every week of a species' abundance stack the aggregator sums the
relative abundance inside a region and over the whole modelled range; the
ratio is the proportion of the species' population found in the region
that week.  Across species, the weekly proportions collapse into a richness
count: how many species have a defined, non-zero share of their population
in the region on each date.

No-data cells are left out of both sums.  A week whose range-wide total is
zero has no meaningful proportion and is reported as :data:`UNDEFINED`
(NaN) rather than 0, so "nothing modelled" never reads as "population
absent".
"""

from __future__ import annotations

import math
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import polars as pl
import xarray as xr
from rioxarray.exceptions import RioXarrayError
from tqdm.auto import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

from st_abundance import config
from st_abundance.data_loader import week_midpoints
from st_abundance.errors import DataShapeError
from st_abundance.map_calculations import LOGGER, Region, region_cell_mask, valid_cells
from st_abundance.paths import PathLike, as_path

trajectory_logger = LOGGER.getChild("trajectory")

# Proportion of a week whose range-wide total is zero.
UNDEFINED = math.nan

WeekGrid = Union[xr.DataArray, Tuple[date, xr.DataArray]]
RasterStack = Union[xr.DataArray, Sequence[WeekGrid]]
GridLayout = Tuple[Tuple[int, ...], Tuple[float, ...], Optional[str]]

TRAJECTORY_SCHEMA = {"species": pl.Utf8, "date": pl.Date, "proportion": pl.Float64}
RICHNESS_SCHEMA = {"date": pl.Date, "count": pl.Int64}


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class TrajectoryRecord:
    """Share of a species' range-wide abundance inside the region on one date."""

    species: str
    date: date
    proportion: float

    @property
    def is_undefined(self) -> bool:
        return math.isnan(self.proportion)


@dataclass(frozen=True)
class WeekSums:
    week: int
    date: date
    region_sum: float
    total_sum: float


@dataclass(frozen=True)
class RichnessRecord:
    date: date
    count: int


@dataclass(frozen=True)
class WeekFailure:
    """A unit of work that could not be computed.

    ``week`` and ``date`` are ``None`` when the whole species failed before
    any week was processed (e.g. a region in the wrong CRS).
    """

    species: str
    week: Optional[int]
    date: Optional[date]
    error: str


@dataclass
class TrajectoryBatch:
    """Outcome of a multi-species run.

    ``failures`` lists the units that could not be computed at all, kept
    apart from weeks whose proportion is scientifically undefined
    (:attr:`undefined`).
    """

    records: List[TrajectoryRecord] = field(default_factory=list)
    failures: List[WeekFailure] = field(default_factory=list)
    inconsistent: List[Tuple[str, date]] = field(default_factory=list)

    @property
    def undefined(self) -> List[Tuple[str, date]]:
        return [(r.species, r.date) for r in self.records if r.is_undefined]

    @property
    def failed_species(self) -> List[str]:
        return sorted({f.species for f in self.failures})

    def to_frame(self) -> pl.DataFrame:
        return trajectories_to_frame(self.records)

    def richness(self) -> List[RichnessRecord]:
        return compute_richness(self.records)


# -----------------------------------------------------------------------------
# Input normalisation
# -----------------------------------------------------------------------------
def _as_date(value) -> date:
    if type(value) is date:
        return value
    try:
        return pd.Timestamp(value).date()
    except (TypeError, ValueError) as e:
        raise DataShapeError(f"Cannot read a week date from {value!r}.") from e


def _week_grids(raster_stack: RasterStack, species: str) -> Tuple[Tuple[int, date, xr.DataArray], ...]:
    """Return an immutable tuple of ``(week_index, date, grid)`` triples."""

    if isinstance(raster_stack, xr.DataArray):
        if raster_stack.ndim != 3 or "time" not in raster_stack.dims:
            raise DataShapeError(
                f"Expected a stack with dims ('time', 'y', 'x'), got {raster_stack.dims}.",
                species=species,
            )
        n_weeks = raster_stack.sizes["time"]
        if "time" in raster_stack.coords:
            dates = [_as_date(t) for t in raster_stack["time"].values]
        else:
            dates = week_midpoints(weeks=n_weeks)
        grids = [raster_stack.isel(time=i) for i in range(n_weeks)]
    else:
        items = list(raster_stack)
        dates, grids = [], []
        fallback = week_midpoints(weeks=len(items))
        for i, item in enumerate(items):
            if isinstance(item, tuple) and len(item) == 2:
                when, grid = item
            else:
                grid = item
                has_time = isinstance(grid, xr.DataArray) and "time" in grid.coords
                when = grid["time"].values[()] if has_time else fallback[i]
            try:
                dates.append(_as_date(when))
            except DataShapeError as e:
                raise e.for_unit(species=species, week=i) from e
            grids.append(grid)

    if len(set(dates)) != len(dates):
        raise DataShapeError("Stack contains duplicate week dates.", species=species)

    return tuple((i, d, g) for i, (d, g) in enumerate(zip(dates, grids)))


def _grid_layout(grid) -> GridLayout:
    """Return ``(shape, transform, crs_wkt)`` of a usable 2-D week grid."""

    if not isinstance(grid, xr.DataArray):
        raise DataShapeError(f"Week grid must be an xarray.DataArray, got {type(grid).__name__}.")
    if grid.ndim != 2:
        raise DataShapeError(f"Week grid must be 2-D, got dims {grid.dims}.")
    if grid.size == 0:
        raise DataShapeError("Week grid is empty.")
    try:
        transform = grid.rio.transform()
        crs = grid.rio.crs
    except RioXarrayError as e:
        raise DataShapeError(f"Week grid has no usable spatial layout: {e}") from e
    return grid.shape, tuple(transform), crs.to_wkt() if crs is not None else None


def _reference_grid(tasks: Sequence[Tuple[int, date, xr.DataArray]], species: str) -> Tuple[xr.DataArray, GridLayout]:
    """Pick the layout shared by most weeks (the earliest on a tie) and a grid that has it."""

    grids: Dict[GridLayout, xr.DataArray] = {}
    counts: Counter = Counter()
    for _, _, grid in tasks:
        try:
            layout = _grid_layout(grid)
        except DataShapeError:
            continue
        grids.setdefault(layout, grid)
        counts[layout] += 1

    if not counts:
        raise DataShapeError("Stack has no usable 2-D week grid.", species=species)
    layout = max(counts, key=counts.__getitem__)
    return grids[layout], layout


def _check_grid(grid, reference: GridLayout) -> None:
    """Fail unless ``grid`` is a 2-D layer with the ``reference`` layout."""

    shape, transform, crs = _grid_layout(grid)
    ref_shape, ref_transform, ref_crs = reference
    if shape != ref_shape:
        raise DataShapeError(f"Week grid shape {shape} differs from the stack's shape {ref_shape}.")
    if transform != ref_transform:
        raise DataShapeError("Week grid transform differs from the rest of the stack.")
    if crs != ref_crs:
        raise DataShapeError(f"Week grid CRS {grid.rio.crs} differs from the stack's CRS.")


# -----------------------------------------------------------------------------
# Week sums
# -----------------------------------------------------------------------------
def _sum_week(week: int, when: date, grid: xr.DataArray, reference: GridLayout, region_mask: np.ndarray) -> WeekSums:
    _check_grid(grid, reference)

    values = np.asarray(grid.values, dtype=np.float64)
    valid = valid_cells(values, grid.rio.nodata)

    total_sum = float(values[valid].sum())
    region_sum = float(values[valid & region_mask].sum())
    return WeekSums(week=week, date=when, region_sum=region_sum, total_sum=total_sum)


def _collect_week_sums(
    raster_stack: RasterStack,
    region_polygon: Region,
    species: str,
    max_workers: Optional[int],
) -> Tuple[List[WeekSums], List[DataShapeError]]:
    """Compute the sums of every week, isolating per-week shape errors.

    Results land in a list indexed by week, so the order in which workers
    finish never decides the output order.
    """
    tasks = _week_grids(raster_stack, species)
    if not tasks:
        trajectory_logger.info("Empty stack for %s; nothing to compute.", species or "<unnamed>")
        return [], []
    if len(tasks) != config.WEEKS_PER_YEAR:
        trajectory_logger.warning(
            "Stack for %s has %d weeks (expected %d); computing each available week.",
            species or "<unnamed>",
            len(tasks),
            config.WEEKS_PER_YEAR,
        )

    template, reference = _reference_grid(tasks, species)
    try:
        region_mask = region_cell_mask(template, region_polygon)
    except DataShapeError as e:
        raise e.for_unit(species=species) from e

    outcomes: List[Union[WeekSums, DataShapeError, None]] = [None] * len(tasks)

    def run(task):
        week, when, grid = task
        try:
            return _sum_week(week, when, grid, reference, region_mask)
        except DataShapeError as e:
            return e.for_unit(species=species, week=week, date=when)

    workers = config.MAX_WORKERS if max_workers is None else max_workers
    if workers <= 1 or len(tasks) == 1:
        for task in tasks:
            outcomes[task[0]] = run(task)
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(run, task): task[0] for task in tasks}
            for future in as_completed(futures):
                outcomes[futures[future]] = future.result()

    sums = [o for o in outcomes if isinstance(o, WeekSums)]
    errors = [o for o in outcomes if isinstance(o, DataShapeError)]
    for err in errors:
        trajectory_logger.error("Week could not be computed: %s", err)
    return sums, errors


def compute_week_sums(
    raster_stack: RasterStack,
    region_polygon: Region,
    species: str = "",
    *,
    max_workers: Optional[int] = None,
) -> List[WeekSums]:
    """
    Region-sum and total-sum of every week of ``raster_stack``.

    Raises
    ------
    DataShapeError
        If the stack or any week grid cannot be used; raised after all weeks
        have been attempted, carrying the species/week/date of the first
        failing week.
    """
    sums, errors = _collect_week_sums(raster_stack, region_polygon, species, max_workers)
    if errors:
        raise errors[0]
    return sorted(sums, key=lambda s: (s.date, s.week))


def _proportion(sums: WeekSums, species: str) -> float:
    if sums.total_sum == 0:
        return UNDEFINED
    if sums.region_sum > sums.total_sum:
        trajectory_logger.warning(
            "Region sum %.6g exceeds total sum %.6g for %s on %s; check the upstream data for negative values.",
            sums.region_sum,
            sums.total_sum,
            species or "<unnamed>",
            sums.date,
        )
    return sums.region_sum / sums.total_sum


def _records_from_sums(sums: Iterable[WeekSums], species: str) -> List[TrajectoryRecord]:
    return [TrajectoryRecord(species=species, date=s.date, proportion=_proportion(s, species)) for s in sums]


# -----------------------------------------------------------------------------
# Trajectories
# -----------------------------------------------------------------------------
def compute_trajectory(
    raster_stack: RasterStack,
    region_polygon: Region,
    species: str = "",
    *,
    max_workers: Optional[int] = None,
) -> List[TrajectoryRecord]:
    """
    Weekly proportion of a species' abundance that falls inside a region.

    Parameters
    ----------
    raster_stack : xarray.DataArray or sequence
        Either a stack with dims ('time', 'y', 'x') and a ``time`` coordinate
        of week dates, or a sequence of 2-D week grids (each with a scalar
        ``time`` coordinate, or given as ``(date, grid)`` pairs).
    region_polygon : shapely geometry, GeoDataFrame or GeoSeries
        Target region, already in the raster CRS. Cells are selected when
        their center lies inside the region.
    species : str
        Label written to every record.
    max_workers : int, optional
        Threads used across weeks; ``1`` runs sequentially. Output is the
        same either way.

    Returns
    -------
    list of TrajectoryRecord
        One record per week in date order. Weeks with a zero total carry
        :data:`UNDEFINED`. An empty stack gives an empty list.
    """
    sums = compute_week_sums(raster_stack, region_polygon, species, max_workers=max_workers)
    return _records_from_sums(sums, species)


def _run_species(species: str, stack: RasterStack, region_polygon: Region) -> TrajectoryBatch:
    batch = TrajectoryBatch()
    try:
        sums, errors = _collect_week_sums(stack, region_polygon, species, max_workers=1)
    except DataShapeError as e:
        trajectory_logger.error("Species %s could not be computed: %s", species, e)
        batch.failures.append(WeekFailure(species=species, week=None, date=None, error=e.message))
        return batch

    sums = sorted(sums, key=lambda s: (s.date, s.week))
    batch.records.extend(_records_from_sums(sums, species))
    batch.failures.extend(
        WeekFailure(species=species, week=e.week, date=e.date, error=e.message) for e in errors
    )
    batch.inconsistent.extend((species, s.date) for s in sums if s.total_sum > 0 and s.region_sum > s.total_sum)
    return batch


def compute_trajectories(
    stacks: Mapping[str, RasterStack],
    region_polygon: Region,
    *,
    max_workers: Optional[int] = None,
    progress: bool = True,
) -> TrajectoryBatch:
    """
    Compute trajectories for several species against one region.

    Species run independently across a thread pool. A species or week that
    fails with :class:`DataShapeError` is recorded in
    :attr:`TrajectoryBatch.failures` and does not affect the others.
    Records are returned grouped by species (in the order of ``stacks``),
    each species in date order.
    """
    names = list(stacks)
    results: Dict[str, TrajectoryBatch] = {}
    workers = config.MAX_WORKERS if max_workers is None else max_workers

    trajectory_logger.info("Computing trajectories for %d species with %d workers", len(names), workers)

    with logging_redirect_tqdm(loggers=[LOGGER]):
        with tqdm(total=len(names), desc="Species trajectories", unit="species", disable=not progress) as bar:
            if workers <= 1 or len(names) <= 1:
                for name in names:
                    results[name] = _run_species(name, stacks[name], region_polygon)
                    bar.update(1)
            else:
                with ThreadPoolExecutor(max_workers=workers) as executor:
                    futures = {
                        executor.submit(_run_species, name, stacks[name], region_polygon): name
                        for name in names
                    }
                    for future in as_completed(futures):
                        results[futures[future]] = future.result()
                        bar.update(1)

    batch = TrajectoryBatch()
    for name in names:
        batch.records.extend(results[name].records)
        batch.failures.extend(results[name].failures)
        batch.inconsistent.extend(results[name].inconsistent)

    trajectory_logger.info(
        "Finished: %d records, %d undefined weeks, %d failed units.",
        len(batch.records),
        len(batch.undefined),
        len(batch.failures),
    )
    if batch.failures:
        trajectory_logger.warning(
            "Failed units: %s",
            ", ".join(
                f"{f.species}" + (f" week {f.week} ({f.date})" if f.week is not None else " (all weeks)")
                for f in batch.failures
            ),
        )
    return batch


# -----------------------------------------------------------------------------
# Richness
# -----------------------------------------------------------------------------
def compute_richness(records: Iterable[TrajectoryRecord]) -> List[RichnessRecord]:
    """
    Count, per date, the distinct species with a defined non-zero proportion.

    Every date present in ``records`` gets a record (possibly with count 0),
    in chronological order. Repeated (species, date) pairs count once.
    """
    present: Dict[date, set] = {}
    for record in records:
        species_on_date = present.setdefault(record.date, set())
        if not record.is_undefined and record.proportion != 0:
            species_on_date.add(record.species)

    return [RichnessRecord(date=d, count=len(present[d])) for d in sorted(present)]


# -----------------------------------------------------------------------------
# Tables and persistence
# -----------------------------------------------------------------------------
def trajectories_to_frame(records: Iterable[TrajectoryRecord]) -> pl.DataFrame:
    """Tidy table with columns ``species``, ``date`` and ``proportion``."""

    records = list(records)
    return pl.DataFrame(
        {
            "species": [r.species for r in records],
            "date": [r.date for r in records],
            "proportion": [r.proportion for r in records],
        },
        schema=TRAJECTORY_SCHEMA,
    )


def richness_to_frame(records: Iterable[RichnessRecord]) -> pl.DataFrame:
    """Table with columns ``date`` and ``count``."""

    records = list(records)
    return pl.DataFrame(
        {"date": [r.date for r in records], "count": [r.count for r in records]},
        schema=RICHNESS_SCHEMA,
    )


def write_trajectories(records: Iterable[TrajectoryRecord], path: PathLike) -> Path:
    """
    Save trajectory records to ``.csv`` or ``.parquet``.

    Undefined proportions are stored as nulls and restored as
    :data:`UNDEFINED` by :func:`read_trajectories`.
    """
    path = as_path(path)
    frame = trajectories_to_frame(records).with_columns(pl.col("proportion").fill_nan(None))

    suffix = path.suffix.lower()
    if suffix == ".csv":
        frame.write_csv(path)
    elif suffix == ".parquet":
        frame.write_parquet(path)
    else:
        raise ValueError(f"Unsupported trajectory file type '{path.suffix}'; use .csv or .parquet.")

    trajectory_logger.debug("Wrote %d trajectory records to %s", frame.height, path)
    return path


def read_trajectories(path: PathLike) -> List[TrajectoryRecord]:
    """Load trajectory records written by :func:`write_trajectories`."""

    path = as_path(path)
    if not path.exists():
        raise FileNotFoundError(f"Expected trajectory file at '{path}'.")

    suffix = path.suffix.lower()
    if suffix == ".csv":
        frame = pl.read_csv(path, schema=TRAJECTORY_SCHEMA)
    elif suffix == ".parquet":
        frame = pl.read_parquet(path).cast(TRAJECTORY_SCHEMA)
    else:
        raise ValueError(f"Unsupported trajectory file type '{path.suffix}'; use .csv or .parquet.")

    return [
        TrajectoryRecord(
            species=species,
            date=when,
            proportion=UNDEFINED if proportion is None or math.isnan(proportion) else proportion,
        )
        for species, when, proportion in frame.iter_rows()
    ]
