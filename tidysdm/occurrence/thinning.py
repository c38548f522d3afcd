"""Spatial (and spatio-temporal) thinning of occurrence records."""

import logging
from typing import List, Optional, Sequence, Union

import geopandas as gpd
import numpy as np
import pandas as pd

from tidysdm.geo import (
    Raster,
    aggregate_grid,
    cell_index,
    get_coords,
    is_geographic,
    neighbours_within,
    valid_mask,
)

logger = logging.getLogger(__name__)


def as_numeric_time(values) -> np.ndarray:
    """Times as float64; datetimes become nanoseconds since the epoch."""
    values = np.asarray(values)
    if np.issubdtype(values.dtype, np.datetime64):
        return values.astype("datetime64[ns]").astype("int64").astype(float)
    if values.dtype == object:
        return pd.to_datetime(values).values.astype("datetime64[ns]").astype("int64").astype(float)
    return values.astype(float)


def _as_numeric_interval(interval, is_datetime: bool) -> float:
    if not is_datetime:
        return float(interval)
    if isinstance(interval, (int, float)):
        # plain numbers are days for datetime columns
        interval = pd.Timedelta(days=interval)
    return float(pd.Timedelta(interval).value)


def assign_time_steps(times, time_steps) -> np.ndarray:
    """Index of the closest time step for each observation."""
    steps = as_numeric_time(time_steps)
    if len(steps) == 0:
        raise ValueError("No time steps given.")
    t = as_numeric_time(times)
    return np.abs(t[:, None] - steps[None, :]).argmin(axis=1)


def _cells_to_keep(data: gpd.GeoDataFrame, raster: Raster, drop_na: bool, agg_fact: Optional[int]):
    grid = aggregate_grid(raster, agg_fact) if agg_fact else raster
    coords = get_coords(data)
    cells = cell_index(grid, coords[:, 0], coords[:, 1])
    keep = cells >= 0
    if (~keep).any():
        logger.info(f"{int((~keep).sum())} points fall outside the raster and are removed.")
    if drop_na:
        on_data = valid_mask(grid).ravel()[np.clip(cells, 0, None)]
        if (keep & ~on_data).any():
            logger.info(f"{int((keep & ~on_data).sum())} points fall on NaN cells and are removed.")
        keep &= on_data
    return cells, keep


def thin_by_cell(
    data: gpd.GeoDataFrame,
    raster: Raster,
    drop_na: bool = True,
    agg_fact: Optional[int] = None,
) -> gpd.GeoDataFrame:
    """
    Thin occurrences to at most one per raster cell.

    The first record found in each cell is kept.

    Args:
        data: Occurrence points, in the raster's CRS.
        raster: Dataset or DataArray defining the grid.
        drop_na: Also remove points on NaN cells.
        agg_fact: Optional factor to coarsen the grid before thinning.

    Returns:
        Subset of ``data`` with its original columns.
    """
    cells, keep = _cells_to_keep(data, raster, drop_na, agg_fact)
    first_in_cell = ~pd.Series(np.where(keep, cells, -1)).duplicated(keep="first").values
    keep &= first_in_cell
    logger.info(f"Thinned by cell: kept {int(keep.sum())}/{len(data)} points.")
    return data[keep]


def thin_by_cell_time(
    data: gpd.GeoDataFrame,
    raster: Raster,
    time_col: str = "time",
    time_steps: Optional[Sequence] = None,
    drop_na: bool = True,
    agg_fact: Optional[int] = None,
) -> gpd.GeoDataFrame:
    """Thin occurrences to at most one per raster cell per time step.

    Each observation is assigned to the closest of ``time_steps``; if these are
    not given the raster's ``time`` coordinate is used, then the unique values
    of ``time_col``.
    """
    if time_col not in data.columns:
        raise KeyError(f"Time column '{time_col}' not found in data.")
    if time_steps is None:
        if "time" in raster.coords:
            time_steps = raster["time"].values
        else:
            time_steps = np.unique(data[time_col].values)
    steps = assign_time_steps(data[time_col].values, time_steps)

    cells, keep = _cells_to_keep(data, raster, drop_na, agg_fact)
    key = pd.DataFrame({"cell": np.where(keep, cells, -1), "step": steps})
    keep &= ~key.duplicated(keep="first").values
    logger.info(f"Thinned by cell and time: kept {int(keep.sum())}/{len(data)} points.")
    return data[keep]


def _greedy_thin(neighbours: List[np.ndarray], rng: np.random.Generator) -> np.ndarray:
    """Drop points with the most conflicts (random among ties) until none conflict."""
    n = len(neighbours)
    counts = np.array([len(nb) for nb in neighbours], dtype=int)
    removed = np.zeros(n, dtype=bool)
    while n and counts.max() > 0:
        candidates = np.flatnonzero(counts == counts.max())
        drop = rng.choice(candidates)
        removed[drop] = True
        counts[drop] = 0
        for j in neighbours[drop]:
            if not removed[j]:
                counts[j] -= 1
    return ~removed


def thin_by_dist(
    data: gpd.GeoDataFrame,
    dist_min: float,
    random_state: Optional[Union[int, np.random.Generator]] = None,
) -> gpd.GeoDataFrame:
    """
    Thin occurrences so that no two points are within ``dist_min`` of each other.

    Points with the most neighbours inside ``dist_min`` are removed first, picking
    at random among ties, until no conflicts remain.

    Args:
        data: Occurrence points.
        dist_min: Minimum distance, in metres for geographic CRSs (great-circle)
            and in CRS units otherwise.
        random_state: Seed or generator for tie breaking.

    Returns:
        Subset of ``data`` in the original order.
    """
    if dist_min <= 0:
        raise ValueError("dist_min must be positive")
    rng = np.random.default_rng(random_state)
    neighbours = neighbours_within(get_coords(data), dist_min, is_geographic(data.crs))
    keep = _greedy_thin(neighbours, rng)
    logger.info(f"Thinned by distance ({dist_min}): kept {int(keep.sum())}/{len(data)} points.")
    return data[keep]


def thin_by_dist_time(
    data: gpd.GeoDataFrame,
    dist_min: float,
    interval_min,
    time_col: str = "time",
    random_state: Optional[Union[int, np.random.Generator]] = None,
) -> gpd.GeoDataFrame:
    """Thin occurrences in space and time.

    Two points conflict only if they are within ``dist_min`` of each other and
    less than ``interval_min`` apart in time. For datetime columns
    ``interval_min`` is a timedelta (or a number of days).
    """
    if time_col not in data.columns:
        raise KeyError(f"Time column '{time_col}' not found in data.")
    if dist_min <= 0:
        raise ValueError("dist_min must be positive")
    rng = np.random.default_rng(random_state)

    raw_times = np.asarray(data[time_col].values)
    is_datetime = np.issubdtype(raw_times.dtype, np.datetime64) or raw_times.dtype == object
    times = as_numeric_time(raw_times)
    interval = _as_numeric_interval(interval_min, is_datetime)

    neighbours = neighbours_within(get_coords(data), dist_min, is_geographic(data.crs))
    neighbours = [nb[np.abs(times[nb] - times[i]) < interval] for i, nb in enumerate(neighbours)]
    keep = _greedy_thin(neighbours, rng)
    logger.info(f"Thinned by distance and time: kept {int(keep.sum())}/{len(data)} points.")
    return data[keep]
