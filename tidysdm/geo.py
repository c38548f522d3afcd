import logging
from typing import List, Optional, Union

import geopandas as gpd
import numpy as np
import pandas as pd
import rioxarray  # noqa: F401  registers the .rio accessor
import xarray as xr
from pyproj import CRS
from scipy.spatial import cKDTree
from sklearn.neighbors import BallTree

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371008.8

Raster = Union[xr.Dataset, xr.DataArray]


def km2m(x: float) -> float:
    """Convert kilometres to metres."""
    return x * 1000


def is_geographic(crs) -> bool:
    if crs is None:
        return False
    return _as_pyproj(crs).is_geographic


def _as_pyproj(crs) -> CRS:
    # rasterio CRS -> WKT
    if hasattr(crs, "to_wkt") and not isinstance(crs, CRS):
        crs = crs.to_wkt()
    return CRS.from_user_input(crs)


def same_crs(a, b) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return _as_pyproj(a) == _as_pyproj(b)


def get_coords(data: gpd.GeoDataFrame) -> np.ndarray:
    """Return an (n, 2) array of x/y coordinates of point geometries."""
    if not all(data.geometry.geom_type == "Point"):
        raise ValueError("Only point geometries are supported.")
    return np.column_stack([data.geometry.x.values, data.geometry.y.values])


def points_from_frame(
    df: pd.DataFrame,
    x: str = "x",
    y: str = "y",
    crs: Optional[Union[str, int]] = None,
) -> gpd.GeoDataFrame:
    """Build a point GeoDataFrame from coordinate columns, keeping the other columns."""
    missing = [c for c in (x, y) if c not in df.columns]
    if missing:
        raise KeyError(f"Coordinate columns not found: {missing}")
    return gpd.GeoDataFrame(
        df.drop(columns=[x, y]),
        geometry=gpd.points_from_xy(df[x], df[y]),
        crs=crs,
    )


def _first_slice(da: xr.DataArray, keep=("y", "x", "variable")) -> xr.DataArray:
    for dim in da.dims:
        if dim not in keep:
            da = da.isel({dim: 0}, drop=True)
    return da


def template_grid(raster: Raster) -> xr.DataArray:
    """A 2-D (y, x) grid taken from the first variable and first band/time slice of a raster."""
    if isinstance(raster, xr.Dataset):
        if len(raster.data_vars) == 0:
            raise ValueError("Raster dataset has no variables.")
        da = raster[list(raster.data_vars)[0]]
    elif isinstance(raster, xr.DataArray):
        da = raster
    else:
        raise TypeError(f"Expected an xarray Dataset or DataArray, got {type(raster)}")
    if "y" not in da.dims or "x" not in da.dims:
        raise ValueError(f"Raster must have 'y' and 'x' dimensions, got {da.dims}")
    return _first_slice(da, keep=("y", "x")).transpose("y", "x")


def valid_mask(raster: Raster) -> np.ndarray:
    """Boolean (y, x) array, True where every variable has a value."""
    if isinstance(raster, xr.Dataset):
        stacked = _first_slice(raster.to_array("variable"))
        null = stacked.isnull().any("variable")
    else:
        null = template_grid(raster).isnull()
    return ~null.transpose("y", "x").values


def cell_index(raster: Raster, xs, ys) -> np.ndarray:
    """Flat (row-major) cell index of each coordinate, -1 for coordinates off the grid."""
    grid = template_grid(raster)
    height, width = grid.shape
    transform = grid.rio.transform(recalc=True)
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    cols, rows = ~transform * (xs, ys)
    finite = np.isfinite(cols) & np.isfinite(rows)
    cols = np.floor(np.where(finite, cols, -1)).astype(int)
    rows = np.floor(np.where(finite, rows, -1)).astype(int)
    inside = finite & (cols >= 0) & (cols < width) & (rows >= 0) & (rows < height)
    return np.where(inside, rows * width + cols, -1)


def valid_cells(raster: Raster) -> pd.DataFrame:
    """Cell centres of all non-NaN cells, with their flat cell index."""
    grid = template_grid(raster)
    width = grid.shape[1]
    rows, cols = np.nonzero(valid_mask(raster))
    return pd.DataFrame(
        {
            "x": grid.x.values[cols],
            "y": grid.y.values[rows],
            "cell": rows * width + cols,
        }
    )


def aggregate_grid(raster: Raster, agg_fact: int) -> xr.DataArray:
    """Coarsen the template grid by an integer factor (mean of the block)."""
    if agg_fact < 1:
        raise ValueError("agg_fact must be a positive integer")
    grid = template_grid(raster)
    if agg_fact == 1:
        return grid
    crs = grid.rio.crs
    coarse = grid.coarsen(y=agg_fact, x=agg_fact, boundary="trim").mean()
    if crs is not None:
        coarse = coarse.rio.write_crs(crs)
    return coarse


def _to_radians(coords: np.ndarray) -> np.ndarray:
    # BallTree haversine expects (lat, lon)
    return np.radians(coords[:, [1, 0]])


def neighbours_within(coords: np.ndarray, dist: float, geographic: bool = False) -> List[np.ndarray]:
    """For each point, indices of the other points closer than ``dist``.

    Distances are great-circle metres for geographic coordinates, CRS units otherwise.
    """
    if len(coords) == 0:
        return []
    if geographic:
        tree = BallTree(_to_radians(coords), metric="haversine")
        found = tree.query_radius(_to_radians(coords), r=np.nextafter(dist / EARTH_RADIUS_M, 0))
    else:
        tree = cKDTree(coords)
        found = tree.query_ball_point(coords, r=np.nextafter(dist, 0))
    return [np.setdiff1d(np.asarray(f, dtype=int), [i]) for i, f in enumerate(found)]


def nearest_distance(from_coords: np.ndarray, to_coords: np.ndarray, geographic: bool = False) -> np.ndarray:
    """Distance from each point in ``from_coords`` to the closest point of ``to_coords``."""
    if len(to_coords) == 0:
        return np.full(len(from_coords), np.inf)
    if geographic:
        tree = BallTree(_to_radians(to_coords), metric="haversine")
        dist, _ = tree.query(_to_radians(from_coords), k=1)
        return dist[:, 0] * EARTH_RADIUS_M
    dist, _ = cKDTree(to_coords).query(from_coords, k=1)
    return dist


def make_mask_from_presence(
    data: gpd.GeoDataFrame,
    method: str = "convex_hull",
    buffer: float = 0,
) -> gpd.GeoDataFrame:
    """Polygon enclosing the presences, used to restrict pseudo-absence sampling or predictions.

    Args:
        data: Presence points.
        method: "convex_hull" (hull of all points) or "buffer" (union of buffered points).
        buffer: Buffer distance in CRS units. Required for "buffer".
    """
    if data.empty:
        raise ValueError("Cannot build a mask from an empty set of presences.")
    if method == "convex_hull":
        shape = data.geometry.union_all().convex_hull
        if buffer > 0:
            shape = shape.buffer(buffer)
    elif method == "buffer":
        if buffer <= 0:
            raise ValueError("method='buffer' needs a positive buffer distance")
        shape = data.geometry.buffer(buffer).union_all()
    else:
        raise ValueError(f"Unknown mask method: {method}")
    return gpd.GeoDataFrame(geometry=[shape], crs=data.crs)


def mask_raster(raster: Raster, mask: gpd.GeoDataFrame) -> Raster:
    """Set cells outside ``mask`` to NaN, keeping the grid extent."""
    crs = raster.rio.crs or mask.crs
    return raster.rio.clip(mask.geometry.values, crs, drop=False)


def align_crs(data: gpd.GeoDataFrame, raster: Raster) -> gpd.GeoDataFrame:
    """Reproject points to the raster CRS when both are known and differ."""
    raster_crs = raster.rio.crs
    if raster_crs is not None and data.crs is not None and not same_crs(data.crs, raster_crs):
        logger.info(f"Re-projecting points from {data.crs} to {raster_crs}")
        return data.to_crs(raster_crs)
    return data
