import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import rioxarray as rxr
import xarray as xr

from tidysdm.geo import Raster, template_grid, valid_cells

logger = logging.getLogger(__name__)


def _band_names(data: xr.DataArray, path: Path) -> List[str]:
    long_name = data.attrs.get("long_name")
    n_bands = data.sizes.get("band", 1)
    if long_name is None:
        if n_bands == 1:
            return [path.stem]
        return [f"{path.stem}_{i + 1}" for i in range(n_bands)]
    if isinstance(long_name, str):
        long_name = [long_name]
    return list(long_name)


def load_dataset(path: Union[str, Path]) -> xr.Dataset:
    """Open a (multi-band) GeoTIFF as a Dataset with one variable per band."""
    path = Path(path)
    data = rxr.open_rasterio(path, masked=True)
    data.coords["band"] = _band_names(data, path)
    return data.to_dataset(dim="band")


def load_environmental_variables(
    paths: Union[str, Path, Sequence[Union[str, Path]]],
    variables: Optional[Sequence[str]] = None,
) -> xr.Dataset:
    """Load predictor rasters into a single Dataset.

    Args:
        paths: A GeoTIFF, a directory of GeoTIFFs or a list of files. All must
            share the same grid.
        variables: Optional subset (and order) of variables to keep.
    """
    if isinstance(paths, (str, Path)):
        paths = Path(paths)
        paths = sorted(paths.glob("*.tif")) if paths.is_dir() else [paths]
    if not paths:
        raise FileNotFoundError("No raster files to load.")

    evs = xr.merge([load_dataset(p) for p in paths])
    if variables is not None:
        missing = [v for v in variables if v not in evs.data_vars]
        if missing:
            raise KeyError(f"Variables not found in rasters: {missing}")
        evs = evs[list(variables)]
    logger.info(f"Loaded {len(evs.data_vars)} environmental variables from {len(paths)} file(s)")
    return evs


def raster_to_frame(raster: xr.Dataset, drop_na: bool = True) -> pd.DataFrame:
    """Table of cell values: one row per cell, columns x, y, cell and one per variable.

    Only the first slice of extra dims (band, time) is used.
    """
    if isinstance(raster, xr.DataArray):
        raster = raster.to_dataset(name=raster.name or "value")
    width = template_grid(raster).shape[1]
    if drop_na:
        frame = valid_cells(raster)
    else:
        grid = template_grid(raster)
        yy, xx = np.meshgrid(grid.y.values, grid.x.values, indexing="ij")
        frame = pd.DataFrame({"x": xx.ravel(), "y": yy.ravel(), "cell": np.arange(grid.size)})
    rows, cols = np.divmod(frame["cell"].values, width)
    for name in raster.data_vars:
        values = template_grid(raster[name]).values
        frame[name] = values[rows, cols]
    return frame


def frame_to_raster(
    values,
    cells,
    template: Raster,
    name: Optional[str] = None,
) -> xr.DataArray:
    """Place per-cell values back on the template grid (NaN elsewhere)."""
    grid = template_grid(template)
    out = np.full(grid.size, np.nan)
    out[np.asarray(cells, dtype=int)] = np.asarray(values, dtype=float)
    da = xr.DataArray(
        out.reshape(grid.shape),
        coords={"y": grid.y.values, "x": grid.x.values},
        dims=("y", "x"),
        name=name,
    )
    if grid.rio.crs is not None:
        da = da.rio.write_crs(grid.rio.crs)
    da.rio.write_nodata(np.nan, inplace=True)
    return da
