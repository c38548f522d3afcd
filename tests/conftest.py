import geopandas as gpd
import numpy as np
import pytest
import rioxarray  # noqa: F401
import xarray as xr

from tidysdm.occurrence.sampling import sample_pseudoabs
from tidysdm.raster.extract import extract_raster_values


@pytest.fixture
def config() -> dict:
    """Grid settings shared by the fixtures."""
    return {
        "resolution": 1000,
        "n_cells": 20,
        "n_presences": 40,
        "crs": "EPSG:27700",
    }


@pytest.fixture
def raster(config: dict) -> xr.Dataset:
    """
    A 20 x 20 grid of 1 km cells with origin (0, 0).

    temp increases west to east, temp_f is temp in another unit (collinear),
    prec increases south to north and noise is random. The top-left 2 x 2
    cells are NaN in every variable.
    """
    res = config["resolution"]
    n = config["n_cells"]
    rng = np.random.default_rng(0)
    x = np.arange(n) * res + res / 2
    y = (np.arange(n) * res + res / 2)[::-1]
    xx, yy = np.meshgrid(x, y)

    temp = 5 + xx / 1000
    variables = {
        "temp": temp,
        "temp_f": temp * 1.8 + 32 + rng.normal(0, 0.01, temp.shape),
        "prec": 500 + yy / 20 + rng.normal(0, 5, temp.shape),
        "noise": rng.normal(0, 1, temp.shape),
    }
    data = {}
    for name, values in variables.items():
        values = values.astype(float)
        values[:2, :2] = np.nan
        data[name] = (("y", "x"), values)

    ds = xr.Dataset(data, coords={"y": y, "x": x})
    ds = ds.rio.write_crs(config["crs"])
    for name in ds.data_vars:
        ds[name] = ds[name].rio.write_nodata(np.nan)
    return ds


@pytest.fixture
def presences(config: dict) -> gpd.GeoDataFrame:
    """Presences in the warm eastern half of the grid."""
    rng = np.random.default_rng(1)
    n = config["n_presences"]
    xs = rng.uniform(12000, 19900, n)
    ys = rng.uniform(100, 19900, n)
    return gpd.GeoDataFrame(
        {"species": ["Myotis daubentonii"] * n},
        geometry=gpd.points_from_xy(xs, ys),
        crs=config["crs"],
    )


@pytest.fixture
def training_data(presences, raster) -> gpd.GeoDataFrame:
    """Presences and random pseudo-absences annotated with predictor values."""
    sampled = sample_pseudoabs(presences, raster, n=80, method="random", random_state=2)
    return extract_raster_values(sampled, raster, variables=["temp", "prec"], drop_na=True)
