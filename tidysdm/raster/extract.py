import logging
from typing import Optional, Sequence

import geopandas as gpd
import numpy as np
import xarray as xr

from tidysdm.geo import align_crs, cell_index, get_coords, template_grid
from tidysdm.occurrence.thinning import assign_time_steps

logger = logging.getLogger(__name__)


def extract_raster_values(
    points: gpd.GeoDataFrame,
    raster: xr.Dataset,
    variables: Optional[Sequence[str]] = None,
    time_col: Optional[str] = None,
    drop_na: bool = False,
) -> gpd.GeoDataFrame:
    """Annotate points with the predictor values of the cell they fall in.

    Args:
        points: Points to annotate; reprojected to the raster CRS if needed.
        raster: Predictor Dataset.
        variables: Variables to extract (all by default).
        time_col: For rasters with a ``time`` dim, the column used to pick the
            closest time slice for each point.
        drop_na: Drop points with a missing value in any extracted variable.

    Returns:
        Copy of ``points`` with one column per variable (NaN off the grid).
    """
    if isinstance(raster, xr.DataArray):
        raster = raster.to_dataset(name=raster.name or "value")
    variables = list(variables) if variables is not None else list(raster.data_vars)
    missing = [v for v in variables if v not in raster.data_vars]
    if missing:
        raise KeyError(f"Variables not found in raster: {missing}")

    points = align_crs(points, raster)
    coords = get_coords(points)
    cells = cell_index(raster, coords[:, 0], coords[:, 1])
    off_grid = cells < 0
    safe_cells = np.where(off_grid, 0, cells)

    has_time = "time" in raster.dims
    if has_time:
        if time_col is None:
            raise ValueError("Raster has a time dimension; pass time_col to pick a slice per point.")
        steps = assign_time_steps(points[time_col].values, raster["time"].values)

    out = points.copy()
    for name in variables:
        if has_time:
            da = raster[name].transpose("time", "y", "x").values
            values = da.reshape(da.shape[0], -1)[steps, safe_cells]
        else:
            values = template_grid(raster[name]).values.ravel()[safe_cells]
        out[name] = np.where(off_grid, np.nan, values.astype(float))

    if off_grid.any():
        logger.warning(f"{int(off_grid.sum())} points fall outside the raster extent.")
    if drop_na:
        n_before = len(out)
        out = out.dropna(subset=variables)
        logger.info(f"Removed {n_before - len(out)} points with missing predictor values.")
    return out
