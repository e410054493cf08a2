# Methods for map calculations on relative-abundance rasters

# MODULES
# GIS
import logging
from datetime import date
from typing import Optional, Tuple, Union

import geopandas as gpd
import numpy as np
import pyproj
import rioxarray  # noqa: F401 - registers the rio accessor
import xarray as xr
from rasterio.enums import Resampling
from rasterio.features import geometry_mask
from rasterio.transform import rowcol
from shapely import unary_union
from shapely.geometry.base import BaseGeometry

# My modules
from st_abundance import config
from st_abundance.errors import DataShapeError

Region = Union[BaseGeometry, gpd.GeoDataFrame, gpd.GeoSeries]

###############
### LOGGERS ###
###############

# Set up the package logger only once.


def _build_logger(name: str) -> logging.Logger:
    """Create a logger with the shared handlers if it has not been configured."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    if config.LOG_FILE:
        file_handler = logging.FileHandler(config.LOG_FILE)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(logging.INFO)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    return logger


LOGGER = _build_logger("st_abundance")
raster_logger = LOGGER.getChild("raster")
raster_logger.setLevel(logging.DEBUG)
shape_logger = LOGGER.getChild("shape")
shape_logger.setLevel(logging.DEBUG)


###########################
### REGION NORMALISATION ###
###########################

def _same_crs(a, b) -> bool:
    return pyproj.CRS.from_user_input(a) == pyproj.CRS.from_user_input(b)


def region_geometry(region: Region, crs=None) -> BaseGeometry:
    """
    Collapse a region into a single shapely geometry.

    GeoDataFrames and GeoSeries are dissolved into one geometry. When both the
    region and ``crs`` carry a reference system they must match: reprojection
    is the caller's job (see :func:`reproject_region`), and a silent mismatch
    would produce region sums of zero or of the whole grid.
    """
    if isinstance(region, BaseGeometry):
        return region

    if isinstance(region, (gpd.GeoDataFrame, gpd.GeoSeries)):
        if region.crs is not None:
            if crs is None:
                raise DataShapeError(
                    f"Region is in {region.crs} but the raster has no CRS to compare against."
                )
            if not _same_crs(region.crs, crs):
                raise DataShapeError(
                    f"Region CRS {region.crs} does not match raster CRS {crs}; reproject the region first."
                )
        geoms = [g for g in region.geometry if g is not None and not g.is_empty]
        if not geoms:
            shape_logger.debug("Region has no usable geometries.")
            return unary_union([])
        return unary_union(geoms)

    raise TypeError(f"Unsupported region type: {type(region).__name__}")


def reproject_region(region: Union[gpd.GeoDataFrame, gpd.GeoSeries], target) -> Union[gpd.GeoDataFrame, gpd.GeoSeries]:
    """
    Reproject ``region`` into the reference system of ``target``.

    ``target`` is either a raster (anything with a ``rio`` accessor) or a CRS
    definition accepted by :mod:`pyproj`.
    """
    if not isinstance(region, (gpd.GeoDataFrame, gpd.GeoSeries)):
        raise TypeError("Only GeoDataFrame/GeoSeries regions carry a CRS that can be reprojected.")
    if region.crs is None:
        raise DataShapeError("Region has no CRS; set one before reprojecting.")

    target_crs = target.rio.crs if hasattr(target, "rio") else target
    if target_crs is None:
        raise DataShapeError("Target raster has no CRS.")

    if _same_crs(region.crs, target_crs):
        return region
    shape_logger.debug("Reprojecting region from %s to %s", region.crs, target_crs)
    return region.to_crs(target_crs)


######################
### CELL SELECTION ###
######################

def valid_cells(values: np.ndarray, nodata=None) -> np.ndarray:
    """Boolean mask of cells holding data (finite and not the nodata marker)."""
    valid = np.isfinite(values)
    if nodata is not None and not np.isnan(nodata):
        valid &= values != nodata
    return valid


def region_cell_mask(template: xr.DataArray, region: Region) -> np.ndarray:
    """
    Select the cells of ``template`` that belong to ``region``.

    A cell belongs to the region when its center lies inside the polygon
    (``all_touched=False``). Every region sum and every masked map in this
    package goes through this function so the numbers and the maps agree on
    edge cells.

    Returns
    -------
    np.ndarray
        Boolean array of shape ``(height, width)``.
    """
    geom = region_geometry(region, crs=template.rio.crs)
    height, width = template.rio.shape
    if geom.is_empty:
        return np.zeros((height, width), dtype=bool)

    return geometry_mask(
        [geom],
        out_shape=(height, width),
        transform=template.rio.transform(),
        all_touched=False,
        invert=True,
    )


def crop_to_region(da: xr.DataArray, region: Region, *, mask: bool = True) -> xr.DataArray:
    """
    Crop a raster to the extent of ``region``.

    With ``mask=True`` cells outside the polygon are set to no data, using
    the same center-in-polygon rule as :func:`region_cell_mask`. With
    ``mask=False`` only the bounding box is cropped.
    """
    geom = region_geometry(region, crs=da.rio.crs)
    if geom.is_empty:
        raise DataShapeError("Cannot crop to an empty region.")

    if mask:
        return da.rio.clip([geom], crs=da.rio.crs, all_touched=False, drop=True)

    minx, miny, maxx, maxy = geom.bounds
    return da.rio.clip_box(minx=minx, miny=miny, maxx=maxx, maxy=maxy)


def reproject_abundance(
    da: xr.DataArray,
    dst_crs,
    resampling: Resampling = Resampling.nearest,
) -> xr.DataArray:
    """Reproject an abundance raster (single layer or stack) to ``dst_crs``."""
    if da.rio.crs is None:
        raise DataShapeError("Raster has no CRS; cannot reproject.")
    raster_logger.debug("Reprojecting raster from %s to %s", da.rio.crs, dst_crs)
    return da.rio.reproject(dst_crs, resampling=resampling)


def select_layer(da: xr.DataArray, when: Optional[date] = None) -> xr.DataArray:
    """Return a 2-D layer, picking the week ``when`` from a stack."""
    if "time" in da.dims:
        if when is None:
            if da.sizes["time"] != 1:
                raise DataShapeError("Raster has several weeks; pass the week date to sample.")
            return da.isel(time=0)
        return da.sel(time=np.datetime64(when, "ns"))
    if da.ndim != 2:
        raise DataShapeError(f"Expected a 2-D raster with dims (y, x), got dims {da.dims}.")
    return da


##########################
### QUANTILE SELECTION ###
##########################

def select_top_quantile_cells(
    da: xr.DataArray,
    quantile: float = config.DEFAULT_TOP_QUANTILE,
    region: Optional[Region] = None,
    exclude_zeros: bool = True,
) -> Tuple[xr.DataArray, float]:
    """
    Flag the cells whose abundance is at or above the ``quantile`` of the
    candidate cells.

    Candidates are the cells with data, optionally restricted to ``region``
    and to non-zero values (cells where the species is modelled as absent
    would otherwise dominate the distribution).

    Returns
    -------
    (mask, threshold)
        ``mask`` is a boolean DataArray on the grid of ``da``; ``threshold``
        is the abundance cut-off, NaN when there are no candidate cells.
    """
    if not 0.0 <= quantile < 1.0:
        raise ValueError(f"quantile must be in [0, 1), got {quantile}.")

    layer = select_layer(da)
    values = np.asarray(layer.values, dtype=np.float64)

    candidates = valid_cells(values, layer.rio.nodata)
    if region is not None:
        candidates &= region_cell_mask(layer, region)
    if exclude_zeros:
        candidates &= values > 0

    if not np.any(candidates):
        raster_logger.info("No candidate cells for quantile selection.")
        selected = np.zeros_like(candidates)
        threshold = np.nan
    else:
        threshold = float(np.quantile(values[candidates], quantile))
        selected = candidates & (values >= threshold)
        raster_logger.debug(
            "Quantile %.2f threshold %.6g selects %d of %d cells",
            quantile,
            threshold,
            int(selected.sum()),
            int(candidates.sum()),
        )

    mask = xr.DataArray(selected, coords=layer.coords, dims=layer.dims, name="top_quantile")
    return mask, threshold


########################
### POINT EXTRACTION ###
########################

def extract_point_values(
    points: gpd.GeoDataFrame,
    da: xr.DataArray,
    column: str = "abundance",
    when: Optional[date] = None,
) -> gpd.GeoDataFrame:
    """
    Sample a raster at point locations and append the values as ``column``.

    Points are reprojected to the raster CRS when needed. Points outside the
    grid or on no-data cells get NaN.
    """
    layer = select_layer(da, when)
    points_gdf = points.copy()

    raster_crs = layer.rio.crs
    if points_gdf.crs is not None and raster_crs is not None and not _same_crs(points_gdf.crs, raster_crs):
        points_gdf = points_gdf.to_crs(raster_crs)

    values = np.asarray(layer.values, dtype=np.float64)
    valid = valid_cells(values, layer.rio.nodata)
    height, width = values.shape

    xs = [geom.x for geom in points_gdf.geometry]
    ys = [geom.y for geom in points_gdf.geometry]
    sampled = []
    if xs:
        rows, cols = rowcol(layer.rio.transform(), xs, ys)
        for r, c in zip(np.atleast_1d(rows), np.atleast_1d(cols)):
            r, c = int(r), int(c)
            if 0 <= r < height and 0 <= c < width and valid[r, c]:
                sampled.append(float(values[r, c]))
            else:
                sampled.append(np.nan)

    # Keep the caller's CRS on the returned frame.
    out = points.copy()
    out[column] = sampled
    return out


def extract_point_intervals(
    points: gpd.GeoDataFrame,
    abundance: xr.DataArray,
    lower: xr.DataArray,
    upper: xr.DataArray,
    when: Optional[date] = None,
) -> gpd.GeoDataFrame:
    """
    Extract the abundance estimate and its lower/upper bounds at each point.

    Adds the columns ``abundance``, ``lower`` and ``upper``. For weekly
    stacks pass the week date as ``when``.
    """
    out = extract_point_values(points, abundance, column="abundance", when=when)
    out = extract_point_values(out, lower, column="lower", when=when)
    out = extract_point_values(out, upper, column="upper", when=when)

    crossed = (out["lower"] > out["upper"]).sum()
    if crossed:
        raster_logger.warning("%d points have a lower bound above the upper bound.", int(crossed))
    return out


__all__ = [
    "LOGGER",
    "crop_to_region",
    "extract_point_intervals",
    "extract_point_values",
    "region_cell_mask",
    "region_geometry",
    "reproject_abundance",
    "reproject_region",
    "select_layer",
    "select_top_quantile_cells",
    "valid_cells",
]
