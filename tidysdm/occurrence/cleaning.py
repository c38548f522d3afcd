import logging
from typing import Iterable, Optional, Union

import geopandas as gpd
import numpy as np

from tidysdm.geo import Raster, cell_index, get_coords, valid_mask

logger = logging.getLogger(__name__)


def check_sdm_presence(data, class_col: str = "class") -> bool:
    """Check that ``data`` is usable as SDM training data.

    The class column must exist and hold both presences (1) and
    pseudo-absences/background (0), and nothing else.
    """
    if class_col not in data.columns:
        raise ValueError(f"Class column '{class_col}' not found in data.")
    levels = set(data[class_col].dropna().unique().tolist())
    if not levels <= {0, 1}:
        raise ValueError(
            f"Class column '{class_col}' must be coded 1 (presence) / 0 (absence), found {sorted(levels)}."
        )
    if 1 not in levels:
        raise ValueError(f"No presences (class 1) in '{class_col}'.")
    if 0 not in levels:
        raise ValueError(f"No pseudo-absences or background points (class 0) in '{class_col}'.")
    return True


def filter_species(
    gdf: gpd.GeoDataFrame,
    species: Optional[Union[str, Iterable[str]]] = None,
    species_col: str = "species",
) -> gpd.GeoDataFrame:
    """Filters a GeoDataFrame of occurrence records to one or more taxa."""
    if species is None:
        return gdf
    if species_col not in gdf.columns:
        logger.warning(f"'{species_col}' column not found in GeoDataFrame. Cannot filter by species.")
        return gdf
    if isinstance(species, str):
        species = [species]
    return gdf[gdf[species_col].isin(list(species))]


def clean_occurrences(
    gdf: gpd.GeoDataFrame,
    boundary: Optional[gpd.GeoDataFrame] = None,
    raster: Optional[Raster] = None,
) -> gpd.GeoDataFrame:
    """
    Remove records that cannot be used for modelling.

    Drops missing and empty geometries, duplicated coordinates (keeping the first),
    points outside ``boundary`` and points that fall off ``raster`` or on its NaN cells.

    Args:
        gdf: Occurrence points.
        boundary: Optional study area polygons, reprojected to the points' CRS if needed.
        raster: Optional predictor raster in the same CRS as the points.

    Returns:
        Cleaned copy of the occurrences.
    """
    gdf = gdf.copy()
    n_start = len(gdf)

    gdf = gdf[gdf.geometry.notna() & ~gdf.geometry.is_empty]
    if len(gdf) < n_start:
        logger.info(f"Dropped {n_start - len(gdf)} records with missing geometry.")

    coords = get_coords(gdf)
    duplicated = (
        gdf.assign(_x=coords[:, 0], _y=coords[:, 1]).duplicated(subset=["_x", "_y"], keep="first").values
    )
    if duplicated.any():
        logger.info(f"Dropped {int(duplicated.sum())} records with duplicated coordinates.")
        gdf = gdf[~duplicated]

    if boundary is not None:
        if boundary.crs != gdf.crs:
            boundary = boundary.to_crs(gdf.crs)
        inside = gdf.intersects(boundary.union_all()).values
        if not inside.all():
            logger.info(f"Dropped {int((~inside).sum())} records outside the boundary.")
        gdf = gdf[inside]

    if raster is not None:
        coords = get_coords(gdf)
        cells = cell_index(raster, coords[:, 0], coords[:, 1])
        mask = valid_mask(raster).ravel()
        on_data = (cells >= 0) & mask[np.clip(cells, 0, None)]
        if not on_data.all():
            logger.info(f"Dropped {int((~on_data).sum())} records off the raster or on NaN cells.")
        gdf = gdf[on_data]

    logger.info(f"Kept {len(gdf)}/{n_start} occurrence records after cleaning.")
    return gdf
