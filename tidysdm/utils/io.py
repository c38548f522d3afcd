import logging
import pickle
from pathlib import Path
from typing import Any, Optional, Union

import geopandas as gpd
import pandas as pd

logger = logging.getLogger(__name__)

COORD_NAMES = (("x", "y"), ("longitude", "latitude"), ("lon", "lat"), ("decimalLongitude", "decimalLatitude"))


def load_boundary(
    filepath: Union[str, Path],
    buffer_distance: Union[float, int] = 0,
    target_crs: Optional[Union[str, int]] = None,
) -> gpd.GeoDataFrame:
    """
    Loads a boundary from a file, optionally reprojects and applies a buffer.

    Parameters:
    filepath (str): The path to the file containing the boundary data.
    buffer_distance (float): Buffer to apply, in units of the (target) CRS. 0 means no buffer.
    target_crs (str): Optional CRS to reproject the boundary to.

    Returns:
    GeoDataFrame: A GeoDataFrame containing the boundary.
    """
    boundary = gpd.read_file(filepath)
    if target_crs is not None and boundary.crs != target_crs:
        boundary = boundary.to_crs(target_crs)
    if buffer_distance > 0:
        boundary["geometry"] = boundary.buffer(buffer_distance)
    return boundary


def load_occurrences(
    path: Union[str, Path],
    x: Optional[str] = None,
    y: Optional[str] = None,
    crs: Union[str, int] = "EPSG:4326",
) -> gpd.GeoDataFrame:
    """Load occurrence records from a vector file, GeoParquet or a CSV with coordinate columns.

    For CSV files the coordinate columns are guessed from common names
    (x/y, longitude/latitude, lon/lat, GBIF's decimalLongitude/decimalLatitude)
    unless given.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Occurrence file not found: {path}")

    if path.suffix.lower() == ".parquet":
        gdf = gpd.read_parquet(path)
    elif path.suffix.lower() in (".csv", ".txt", ".tsv"):
        df = pd.read_csv(path, sep="\t" if path.suffix.lower() == ".tsv" else ",")
        if x is None or y is None:
            for x_name, y_name in COORD_NAMES:
                if x_name in df.columns and y_name in df.columns:
                    x, y = x_name, y_name
                    break
            else:
                raise ValueError(
                    f"Could not find coordinate columns in {path}; pass x and y explicitly."
                )
        gdf = gpd.GeoDataFrame(
            df.drop(columns=[x, y]),
            geometry=gpd.points_from_xy(df[x], df[y]),
            crs=crs,
        )
    else:
        gdf = gpd.read_file(path)

    logger.info(f"Loaded {len(gdf)} occurrence records from {path}")
    return gdf


def save_ensemble(ensemble: Any, path: Union[str, Path]) -> Path:
    """Pickle a fitted ensemble (or any model object) to disk."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        pickle.dump(ensemble, f)
    logger.info(f"Saved ensemble to: {path}")
    return path


def load_ensemble(path: Union[str, Path]) -> Any:
    """Loads a pickled ensemble from a given path."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Model file not found: {path}")
    with open(path, "rb") as f:
        return pickle.load(f)
