"""Tests for the weekly population-proportion aggregator."""

import math
import random
import time
from datetime import date

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
import rioxarray  # noqa: F401 - ensures the rio accessor is registered
import xarray as xr
from rasterio.transform import from_origin
from shapely.geometry import box

import st_abundance.trajectories as trajectories
from st_abundance.data_loader import week_midpoints
from st_abundance.errors import DataShapeError
from st_abundance.trajectories import (
    UNDEFINED,
    TrajectoryRecord,
    compute_trajectories,
    compute_trajectory,
    compute_week_sums,
)


def _make_stack(data, dates=None, nodata=None, crs="EPSG:4326"):
    data = np.asarray(data, dtype="float64")
    n_weeks, height, width = data.shape
    if dates is None:
        dates = week_midpoints(weeks=n_weeks)

    da = xr.DataArray(
        data,
        dims=("time", "y", "x"),
        coords={
            "time": pd.to_datetime(list(dates)),
            "y": np.arange(height)[::-1] + 0.5,
            "x": np.arange(width) + 0.5,
        },
    )
    da = da.rio.write_crs(crs)
    da = da.rio.write_transform(from_origin(0, height, 1, 1))
    if nodata is not None:
        da = da.rio.write_nodata(nodata)
    return da


def _random_stack(n_weeks=52, seed=7):
    rng = np.random.default_rng(seed)
    data = rng.gamma(2.0, 3.0, size=(n_weeks, 6, 8))
    data[rng.random(data.shape) < 0.1] = np.nan
    data[5] = 0.0
    return _make_stack(data)


def _rows(records):
    return [(r.species, r.date, None if r.is_undefined else r.proportion) for r in records]


FULL_2x2 = box(0, 0, 2, 2)
LEFT_COLUMN_2x2 = box(0, 0, 1, 2)
FAR_AWAY = box(100, 100, 101, 101)


def test_concrete_three_week_scenario():
    data = np.array(
        [
            [[25.0, 75.0], [0.0, 0.0]],
            [[0.0, 0.0], [0.0, 0.0]],
            [[0.0, 20.0], [0.0, 30.0]],
        ]
    )
    stack = _make_stack(data)

    sums = compute_week_sums(stack, LEFT_COLUMN_2x2, "A")
    assert [s.total_sum for s in sums] == [100.0, 0.0, 50.0]
    assert [s.region_sum for s in sums] == [25.0, 0.0, 0.0]

    records = compute_trajectory(stack, LEFT_COLUMN_2x2, "A")

    assert [r.proportion for r in records][0] == 0.25
    assert records[1].is_undefined
    assert records[2].proportion == 0.0
    assert [r.date for r in records] == week_midpoints(weeks=3)
    assert all(r.species == "A" for r in records)


def test_full_cover_region_gives_one_every_week():
    stack = _random_stack()
    region = box(0, 0, 8, 6)

    records = compute_trajectory(stack, region, "full")

    assert len(records) == 52
    for record in records:
        if record.date == week_midpoints()[5]:
            assert record.is_undefined
        else:
            assert record.proportion == 1.0


def test_disjoint_region_gives_zero_region_sum():
    stack = _random_stack()

    sums = compute_week_sums(stack, FAR_AWAY, "away")
    records = compute_trajectory(stack, FAR_AWAY, "away")

    assert all(s.region_sum == 0.0 for s in sums)
    for s, r in zip(sums, records):
        if s.total_sum > 0:
            assert r.proportion == 0.0
        else:
            assert r.is_undefined


def test_proportions_are_within_unit_interval():
    stack = _random_stack(seed=11)
    region = box(1.2, 0.4, 5.7, 4.9)

    records = compute_trajectory(stack, region, "partial")

    defined = [r.proportion for r in records if not r.is_undefined]
    assert defined
    assert all(0.0 <= p <= 1.0 for p in defined)


def test_nodata_cells_are_excluded_from_both_sums():
    data = np.array([[[-9999.0, 4.0], [6.0, np.nan]]])
    stack = _make_stack(data, nodata=-9999.0)

    (sums,) = compute_week_sums(stack, LEFT_COLUMN_2x2)

    assert sums.region_sum == 6.0
    assert sums.total_sum == 10.0


def test_all_nodata_week_is_undefined_not_zero():
    data = np.full((2, 2, 2), np.nan)
    data[1] = 1.0
    stack = _make_stack(data)

    records = compute_trajectory(stack, LEFT_COLUMN_2x2)

    assert records[0].is_undefined
    assert records[1].proportion == 0.5


def test_cells_are_selected_by_center():
    # The region covers 60% of column 1 but not its center (x=1.5).
    data = np.ones((1, 2, 2))
    stack = _make_stack(data)

    (sums,) = compute_week_sums(stack, box(0, 0, 1.4, 2))

    assert sums.region_sum == 2.0


def test_region_sum_above_total_is_reported_not_clamped(caplog):
    data = np.array([[[5.0, -3.0], [0.0, 0.0]]])
    stack = _make_stack(data)

    records = compute_trajectory(stack, box(0, 1, 1, 2), "odd")
    batch = compute_trajectories({"odd": stack}, box(0, 1, 1, 2), progress=False)

    assert records[0].proportion == 2.5
    assert batch.inconsistent == [("odd", records[0].date)]
    assert "exceeds total sum" in caplog.text


def test_repeated_calls_are_identical():
    stack = _random_stack(seed=3)
    region = box(2, 1, 6, 5)

    first = compute_trajectory(stack, region, "A")
    second = compute_trajectory(stack, region, "A")

    assert _rows(first) == _rows(second)


def test_parallel_output_matches_sequential_under_shuffled_completion(monkeypatch):
    stack = _random_stack(n_weeks=12, seed=5)
    region = box(0, 0, 4, 3)

    sequential = compute_trajectory(stack, region, "A", max_workers=1)

    original = trajectories._sum_week
    delays = list(range(12))
    random.Random(0).shuffle(delays)

    def slow_sum_week(week, *args, **kwargs):
        time.sleep(delays[week] * 0.002)
        return original(week, *args, **kwargs)

    monkeypatch.setattr(trajectories, "_sum_week", slow_sum_week)
    parallel = compute_trajectory(stack, region, "A", max_workers=6)

    assert _rows(parallel) == _rows(sequential)
    assert [r.date for r in parallel] == sorted(r.date for r in parallel)


def test_empty_stack_returns_empty_sequence():
    stack = _make_stack(np.zeros((0, 2, 2)))

    assert compute_trajectory(stack, FULL_2x2, "A") == []


def test_short_stack_is_computed_with_warning(caplog):
    stack = _make_stack(np.ones((3, 2, 2)))

    records = compute_trajectory(stack, LEFT_COLUMN_2x2, "A")

    assert [r.proportion for r in records] == [0.5, 0.5, 0.5]
    assert "expected 52" in caplog.text


def test_sequence_of_dated_grids_is_accepted():
    stack = _make_stack(np.arange(12, dtype=float).reshape(3, 2, 2))
    pairs = [(d, stack.isel(time=i).drop_vars("time")) for i, d in enumerate(week_midpoints(weeks=3))]

    from_pairs = compute_trajectory(pairs, LEFT_COLUMN_2x2, "A")
    from_grids = compute_trajectory([stack.isel(time=i) for i in range(3)], LEFT_COLUMN_2x2, "A")

    assert from_pairs == from_grids == compute_trajectory(stack, LEFT_COLUMN_2x2, "A")


def test_output_follows_date_order():
    dates = [date(2022, 3, 1), date(2022, 1, 1), date(2022, 2, 1)]
    stack = _make_stack(np.ones((3, 2, 2)), dates=dates)

    records = compute_trajectory(stack, FULL_2x2)

    assert [r.date for r in records] == sorted(dates)


def test_duplicate_dates_are_rejected():
    dates = [date(2022, 1, 4), date(2022, 1, 4)]
    stack = _make_stack(np.ones((2, 2, 2)), dates=dates)

    with pytest.raises(DataShapeError, match="duplicate"):
        compute_trajectory(stack, FULL_2x2, "A")


def test_malformed_week_grid_raises_with_context():
    good = _make_stack(np.ones((2, 2, 2)))
    bad = _make_stack(np.ones((1, 3, 3))).isel(time=0)
    when = date(2022, 1, 18)
    grids = [(good.time.values[0], good.isel(time=0)), (good.time.values[1], good.isel(time=1)), (when, bad)]

    with pytest.raises(DataShapeError) as excinfo:
        compute_trajectory(grids, FULL_2x2, "A")

    assert excinfo.value.species == "A"
    assert excinfo.value.week == 2
    assert excinfo.value.date == when


def test_region_in_other_crs_fails_loudly():
    stack = _make_stack(np.ones((2, 2, 2)))
    region = gpd.GeoDataFrame(geometry=[FULL_2x2], crs="EPSG:3857")

    with pytest.raises(DataShapeError, match="reproject"):
        compute_trajectory(stack, region, "A")


def test_region_geodataframe_in_matching_crs():
    stack = _make_stack(np.ones((1, 2, 2)))
    region = gpd.GeoDataFrame(geometry=[box(0, 0, 1, 1), box(0, 1, 1, 2)], crs="EPSG:4326")

    records = compute_trajectory(stack, region, "A")

    assert records[0].proportion == 0.5


def test_stack_with_wrong_dims_is_rejected():
    da = xr.DataArray(np.ones((2, 2)), dims=("y", "x"))

    with pytest.raises(DataShapeError):
        compute_trajectory(da, FULL_2x2)


def test_batch_isolates_failures():
    good = _make_stack(np.ones((3, 2, 2)))
    wrong_crs = _make_stack(np.ones((3, 2, 2)), crs="EPSG:3857")
    weekly = [(d, good.isel(time=i)) for i, d in enumerate(week_midpoints(weeks=3))]
    weekly[1] = (weekly[1][0], _make_stack(np.ones((1, 4, 4))).isel(time=0))
    region = gpd.GeoDataFrame(geometry=[LEFT_COLUMN_2x2], crs="EPSG:4326")

    batch = compute_trajectories(
        {"good": good, "bad_week": weekly, "wrong_crs": wrong_crs},
        region,
        max_workers=3,
        progress=False,
    )

    by_species = {}
    for record in batch.records:
        by_species.setdefault(record.species, []).append(record)

    assert [r.proportion for r in by_species["good"]] == [0.5, 0.5, 0.5]
    assert [r.date for r in by_species["bad_week"]] == [weekly[0][0], weekly[2][0]]
    assert "wrong_crs" not in by_species

    failures = {(f.species, f.week) for f in batch.failures}
    assert failures == {("bad_week", 1), ("wrong_crs", None)}
    assert batch.failed_species == ["bad_week", "wrong_crs"]
    assert batch.undefined == []


def test_batch_separates_undefined_from_failed():
    data = np.ones((2, 2, 2))
    data[0] = 0.0
    stack = _make_stack(data)

    batch = compute_trajectories({"A": stack}, LEFT_COLUMN_2x2, max_workers=1, progress=False)

    assert batch.failures == []
    assert batch.undefined == [("A", stack.time.values[0].astype("datetime64[D]").item())]
    assert batch.to_frame().height == 2
    assert [r.count for r in batch.richness()] == [0, 1]


def test_batch_keeps_species_order():
    stacks = {name: _make_stack(np.ones((2, 2, 2))) for name in ["c", "a", "b"]}

    batch = compute_trajectories(stacks, FULL_2x2, max_workers=3, progress=False)

    assert [r.species for r in batch.records] == ["c", "c", "a", "a", "b", "b"]


def test_undefined_marker_is_shared():
    record = TrajectoryRecord("A", date(2022, 1, 4), UNDEFINED)

    assert math.isnan(record.proportion)
    assert record.is_undefined
    assert not TrajectoryRecord("A", date(2022, 1, 4), 0.0).is_undefined


def test_odd_first_week_is_the_one_reported():
    good = _make_stack(np.ones((3, 2, 2)))
    dates = week_midpoints(weeks=3)
    weekly = [(d, good.isel(time=i)) for i, d in enumerate(dates)]
    weekly[0] = (dates[0], _make_stack(np.ones((1, 4, 4))).isel(time=0))

    batch = compute_trajectories({"shifted": weekly}, LEFT_COLUMN_2x2, max_workers=1, progress=False)

    assert [(f.species, f.week, f.date) for f in batch.failures] == [("shifted", 0, dates[0])]
    assert [(r.date, r.proportion) for r in batch.records] == [(dates[1], 0.5), (dates[2], 0.5)]

    with pytest.raises(DataShapeError) as excinfo:
        compute_trajectory(weekly, LEFT_COLUMN_2x2, "shifted")
    assert excinfo.value.week == 0


def test_batch_survives_week_grid_that_is_not_a_raster():
    good = _make_stack(np.ones((3, 2, 2)))
    dates = week_midpoints(weeks=3)
    weekly = [(d, good.isel(time=i)) for i, d in enumerate(dates)]
    weekly[1] = (dates[1], np.ones((2, 2)))

    batch = compute_trajectories(
        {"good": good, "bad_week": weekly},
        LEFT_COLUMN_2x2,
        max_workers=2,
        progress=False,
    )

    good_records = [r for r in batch.records if r.species == "good"]
    assert [r.proportion for r in good_records] == [0.5, 0.5, 0.5]
    assert [r.date for r in batch.records if r.species == "bad_week"] == [dates[0], dates[2]]
    (failure,) = batch.failures
    assert (failure.species, failure.week, failure.date) == ("bad_week", 1, dates[1])
    assert "DataArray" in failure.error


def test_stack_without_any_raster_grid_fails_for_the_species():
    grids = [np.ones((2, 2)), np.ones((2, 2))]

    batch = compute_trajectories({"arrays": grids}, FULL_2x2, max_workers=1, progress=False)

    assert batch.records == []
    assert [(f.species, f.week) for f in batch.failures] == [("arrays", None)]
