import logging
from enum import StrEnum
from typing import Optional, Sequence, Union

import geopandas as gpd
import numpy as np
import pandas as pd
import xarray as xr
from scipy.ndimage import gaussian_filter

from tidysdm.geo import (
    Raster,
    align_crs,
    cell_index,
    get_coords,
    is_geographic,
    nearest_distance,
    template_grid,
    valid_cells,
    valid_mask,
)
from tidysdm.occurrence.thinning import assign_time_steps

logger = logging.getLogger(__name__)

RandomState = Optional[Union[int, np.random.Generator]]


class SamplingMethod(StrEnum):
    RANDOM = "random"
    DIST_MIN = "dist_min"
    DIST_MAX = "dist_max"
    DIST_DISC = "dist_disc"
    BIAS = "bias"


class TransformMethod(StrEnum):
    LOG = "log"
    SQRT = "sqrt"
    PRESENCE = "presence"
    CAP = "cap"
    RANK = "rank"


class BackgroundMethod(StrEnum):
    CONTRAST = "contrast"
    PERCENTILE = "percentile"
    SCALE = "scale"
    FIXED = "fixed"
    BINARY = "binary"


def transform_point_counts(
    point_counts: np.ndarray,
    transform_method: TransformMethod,
    cap_percentile: float = 90.0,
) -> np.ndarray:
    """
    Transform point counts based on the transform method.

    Args:
        point_counts: 2D numpy array of point counts.
        transform_method: Method to transform point counts.
        cap_percentile: Percentile to cap point counts at.

    Returns:
        Transformed point counts.
    """
    transform_method = TransformMethod(transform_method)
    if transform_method == TransformMethod.LOG:
        logger.info("Applying log transformation to point counts")
        point_counts = np.log1p(point_counts)
    elif transform_method == TransformMethod.SQRT:
        logger.info("Applying square root transformation to point counts")
        point_counts = np.sqrt(point_counts)
    elif transform_method == TransformMethod.PRESENCE:
        logger.info("Converting counts to binary presence/absence")
        point_counts = (point_counts > 0).astype(float)
    elif transform_method == TransformMethod.CAP:
        logger.info("Capping counts at %sth percentile", cap_percentile)
        non_zero = point_counts[point_counts > 0]
        if len(non_zero) > 0:
            cap_value = np.percentile(non_zero, cap_percentile)
            point_counts = np.minimum(point_counts, cap_value)
        else:
            logger.warning("No non-zero counts to cap, skipping cap transformation.")
    elif transform_method == TransformMethod.RANK:
        logger.info("Applying rank-based normalization")
        from scipy.stats import rankdata

        ranks = rankdata(point_counts.ravel(), method="average") / point_counts.size
        point_counts = ranks.reshape(point_counts.shape)
    return point_counts


def calculate_floor_probability(
    density: np.ndarray,
    background_method: BackgroundMethod,
    background_value: float,
) -> float:
    """
    Minimum sampling weight given to every valid cell.

    This is the chance of a background point landing in a cell regardless of the
    occurrence density there.

    Args:
        density: Smoothed occurrence density (NaN outside the study area).
        background_method: The method to use to calculate the floor.
        background_value: The value to use with the background method.

    Returns:
        The floor probability.
    """
    background_method = BackgroundMethod(background_method)
    original_max = float(np.nanmax(density)) if np.isfinite(density).any() else 0.0

    if background_method == BackgroundMethod.CONTRAST:
        if not 0 <= background_value <= 1:
            logger.warning(f"Contrast value {background_value} out of [0,1] range. Clamping.")
            background_value = max(0, min(1, background_value))
        floor_probability = original_max * background_value
    elif background_method == BackgroundMethod.PERCENTILE:
        floor_probability = float(np.nanpercentile(density, background_value))
    elif background_method == BackgroundMethod.SCALE:
        floor_probability = original_max * background_value
    elif background_method == BackgroundMethod.FIXED:
        floor_probability = background_value
    else:
        floor_probability = 0.0
    logger.info(f"Background floor ({background_method.value}): {floor_probability:.8f}")
    return floor_probability


def occurrence_density_surface(
    data: gpd.GeoDataFrame,
    raster: Raster,
    transform_method: TransformMethod = TransformMethod.LOG,
    sigma: float = 1.5,
    background_method: BackgroundMethod = BackgroundMethod.CONTRAST,
    background_value: float = 0.3,
    cap_percentile: float = 90.0,
) -> xr.DataArray:
    """Bias surface from the smoothed density of occurrence records.

    Typically built from records of a whole target group (e.g. all species
    surveyed with the same method) to mimic sampling effort, then passed as
    ``bias`` to :func:`sample_background`.

    Args:
        data: Occurrence points in the raster's CRS.
        raster: Grid to build the surface on; NaN cells are excluded.
        transform_method: Transformation applied to cell counts before smoothing.
        sigma: Gaussian smoothing, in cells.
        background_method: How the floor probability is set.
        background_value: Value used by ``background_method``.
        cap_percentile: Percentile for the 'cap' transform.

    Returns:
        DataArray on the raster grid summing to 1 over valid cells.
    """
    grid = template_grid(raster)
    coords = get_coords(data)
    cells = cell_index(grid, coords[:, 0], coords[:, 1])
    cells = cells[cells >= 0]
    if len(cells) == 0:
        raise ValueError("No occurrence points fall on the raster grid. Cannot build a density surface.")
    logger.info(f"Using {len(cells)} occurrence points to generate density surface.")

    point_counts = np.bincount(cells, minlength=grid.size).reshape(grid.shape).astype(float)
    point_counts = transform_point_counts(point_counts, transform_method, cap_percentile)

    logger.info(f"Applying Gaussian smoothing with sigma={sigma}")
    smoothed = gaussian_filter(point_counts, sigma=sigma)
    if BackgroundMethod(background_method) == BackgroundMethod.BINARY:
        smoothed = (smoothed > 1e-9).astype(float)

    mask = valid_mask(raster)
    smoothed = np.where(mask, smoothed, np.nan)
    floor_probability = calculate_floor_probability(smoothed, background_method, background_value)
    prob = np.where(mask, np.maximum(smoothed, floor_probability), np.nan)

    total = np.nansum(prob)
    if total < 1e-9:
        logger.warning("Sum of probabilities is near zero. Falling back to uniform weights over valid cells.")
        prob = np.where(mask, 1.0, np.nan)
        total = np.nansum(prob)
        if total == 0:
            raise ValueError("No valid cells to sample from.")
    prob = prob / total

    density = xr.DataArray(prob, coords={"y": grid.y.values, "x": grid.x.values}, dims=("y", "x"), name="occurrence_density")
    if grid.rio.crs is not None:
        density = density.rio.write_crs(grid.rio.crs)
    density.rio.write_nodata(np.nan, inplace=True)
    return density


def _output_crs(data: gpd.GeoDataFrame, raster: Raster):
    return raster.rio.crs if raster.rio.crs is not None else data.crs


def _filter_by_distance(
    candidates: pd.DataFrame,
    presence_coords: np.ndarray,
    method: SamplingMethod,
    dist_min: Optional[float],
    dist_max: Optional[float],
    geographic: bool,
) -> pd.DataFrame:
    if method in (SamplingMethod.DIST_MIN, SamplingMethod.DIST_DISC) and dist_min is None:
        raise ValueError(f"method '{method.value}' requires dist_min")
    if method in (SamplingMethod.DIST_MAX, SamplingMethod.DIST_DISC) and dist_max is None:
        raise ValueError(f"method '{method.value}' requires dist_max")
    if method == SamplingMethod.DIST_DISC and dist_min >= dist_max:
        raise ValueError("dist_min must be smaller than dist_max")

    dist = nearest_distance(candidates[["x", "y"]].values, presence_coords, geographic)
    keep = np.ones(len(candidates), dtype=bool)
    if dist_min is not None and method != SamplingMethod.DIST_MAX:
        keep &= dist > dist_min
    if dist_max is not None and method != SamplingMethod.DIST_MIN:
        keep &= dist <= dist_max
    return candidates[keep]


def _draw(
    candidates: pd.DataFrame,
    n: int,
    rng: np.random.Generator,
    weights: Optional[np.ndarray] = None,
) -> pd.DataFrame:
    available = len(candidates) if weights is None else int((weights > 0).sum())
    if available < n:
        raise ValueError(
            f"Only {available} cells are available for sampling, fewer than the {n} points requested."
        )
    p = None if weights is None else weights / weights.sum()
    chosen = rng.choice(len(candidates), size=n, replace=False, p=p)
    return candidates.iloc[np.sort(chosen)]


def _stack(
    data: gpd.GeoDataFrame,
    sampled: pd.DataFrame,
    crs,
    return_pres: bool,
    class_label: int = 0,
) -> gpd.GeoDataFrame:
    absences = gpd.GeoDataFrame(
        {"class": np.full(len(sampled), class_label, dtype=int)},
        geometry=gpd.points_from_xy(sampled["x"].values, sampled["y"].values),
        crs=crs,
    )
    if not return_pres:
        return absences
    presences = gpd.GeoDataFrame(
        {"class": np.ones(len(data), dtype=int)},
        geometry=data.geometry.values,
        crs=crs,
    )
    return gpd.GeoDataFrame(pd.concat([presences, absences], ignore_index=True), crs=crs)


def sample_pseudoabs(
    data: gpd.GeoDataFrame,
    raster: Raster,
    n: int,
    method: Union[str, SamplingMethod] = SamplingMethod.RANDOM,
    dist_min: Optional[float] = None,
    dist_max: Optional[float] = None,
    class_label: int = 0,
    return_pres: bool = True,
    random_state: RandomState = None,
) -> gpd.GeoDataFrame:
    """
    Sample pseudo-absences from raster cells without presences.

    Candidate cells are the non-NaN cells of ``raster`` that hold no presence.
    Cells are drawn without replacement and represented by their centres.

    Args:
        data: Presence points.
        raster: Predictor raster (or template grid) defining the sampling area.
        n: Number of pseudo-absences.
        method: "random"; "dist_min" (farther than ``dist_min`` from every presence);
            "dist_max" (within ``dist_max`` of a presence); "dist_disc" (both).
        dist_min: Minimum distance (metres for geographic CRSs, CRS units otherwise).
        dist_max: Maximum distance.
        class_label: Class given to the sampled points.
        return_pres: Prepend the presences to the output.
        random_state: Seed or generator.

    Returns:
        GeoDataFrame with geometry and ``class`` (1 presence, 0 pseudo-absence).

    Raises:
        ValueError: If fewer than ``n`` candidate cells are available.
    """
    method = SamplingMethod(method)
    if method == SamplingMethod.BIAS:
        raise ValueError("'bias' sampling is only available for sample_background")
    rng = np.random.default_rng(random_state)
    data = align_crs(data, raster)
    crs = _output_crs(data, raster)

    coords = get_coords(data)
    occupied = cell_index(raster, coords[:, 0], coords[:, 1])
    candidates = valid_cells(raster)
    candidates = candidates[~candidates["cell"].isin(occupied)]
    if method != SamplingMethod.RANDOM:
        candidates = _filter_by_distance(candidates, coords, method, dist_min, dist_max, is_geographic(crs))
    logger.info(f"Sampling {n} pseudo-absences ({method.value}) from {len(candidates)} candidate cells.")

    sampled = _draw(candidates, n, rng)
    return _stack(data, sampled, crs, return_pres, class_label)


def sample_background(
    data: gpd.GeoDataFrame,
    raster: Raster,
    n: int,
    method: Union[str, SamplingMethod] = SamplingMethod.RANDOM,
    bias: Optional[xr.DataArray] = None,
    dist_max: Optional[float] = None,
    class_label: int = 0,
    return_pres: bool = True,
    random_state: RandomState = None,
) -> gpd.GeoDataFrame:
    """
    Sample background points describing the environment available to the species.

    Unlike pseudo-absences, cells holding presences can be drawn.

    Args:
        data: Presence points.
        raster: Predictor raster defining the sampling area.
        n: Number of background points.
        method: "random", "bias" (probability proportional to ``bias``) or
            "dist_max" (within ``dist_max`` of a presence).
        bias: Surface on the same grid as ``raster``, e.g. from
            :func:`occurrence_density_surface`.
        dist_max: Maximum distance for "dist_max".
        class_label: Class given to the background points.
        return_pres: Prepend the presences to the output.
        random_state: Seed or generator.
    """
    method = SamplingMethod(method)
    if method not in (SamplingMethod.RANDOM, SamplingMethod.BIAS, SamplingMethod.DIST_MAX):
        raise ValueError(f"Unsupported background sampling method: {method.value}")
    rng = np.random.default_rng(random_state)
    data = align_crs(data, raster)
    crs = _output_crs(data, raster)
    candidates = valid_cells(raster)

    weights = None
    if method == SamplingMethod.BIAS:
        if bias is None:
            raise ValueError("method 'bias' requires a bias surface")
        bias_grid = template_grid(bias)
        if bias_grid.shape != template_grid(raster).shape:
            raise ValueError(
                f"Bias surface shape {bias_grid.shape} does not match raster {template_grid(raster).shape}"
            )
        weights = bias_grid.values.ravel()[candidates["cell"].values].astype(float)
        weights = np.where(np.isfinite(weights) & (weights > 0), weights, 0.0)
    elif method == SamplingMethod.DIST_MAX:
        candidates = _filter_by_distance(
            candidates, get_coords(data), method, None, dist_max, is_geographic(crs)
        )
    logger.info(f"Sampling {n} background points ({method.value}) from {len(candidates)} cells.")

    sampled = _draw(candidates, n, rng, weights)
    return _stack(data, sampled, crs, return_pres, class_label)


def sample_pseudoabs_time(
    data: gpd.GeoDataFrame,
    raster: Raster,
    n_per_presence: float,
    time_col: str = "time",
    time_steps: Optional[Sequence] = None,
    method: Union[str, SamplingMethod] = SamplingMethod.RANDOM,
    dist_min: Optional[float] = None,
    dist_max: Optional[float] = None,
    class_label: int = 0,
    return_pres: bool = True,
    random_state: RandomState = None,
) -> gpd.GeoDataFrame:
    """
    Sample pseudo-absences for each time step separately.

    Presences are assigned to the closest time step; each step gets
    ``round(n_per_presence * n_presences_in_step)`` pseudo-absences, sampled
    from that step's raster slice (when the raster has a ``time`` dim) and
    away from that step's presences. Pseudo-absences carry the step's time in
    ``time_col``.
    """
    if time_col not in data.columns:
        raise KeyError(f"Time column '{time_col}' not found in data.")
    rng = np.random.default_rng(random_state)
    has_time_dim = "time" in getattr(raster, "dims", ())
    if time_steps is None:
        if has_time_dim:
            time_steps = raster["time"].values
        else:
            time_steps = np.unique(data[time_col].values)
    time_steps = np.asarray(time_steps)
    steps = assign_time_steps(data[time_col].values, time_steps)

    pieces = []
    for step in np.unique(steps):
        step_data = data[steps == step]
        step_raster = raster.isel(time=int(step)) if has_time_dim else raster
        n_step = int(round(n_per_presence * len(step_data)))
        logger.info(f"Time step {time_steps[step]}: {len(step_data)} presences, {n_step} pseudo-absences.")
        sampled = sample_pseudoabs(
            step_data,
            step_raster,
            n=n_step,
            method=method,
            dist_min=dist_min,
            dist_max=dist_max,
            class_label=class_label,
            return_pres=False,
            random_state=rng,
        )
        sampled[time_col] = time_steps[step]
        pieces.append(sampled)

    crs = _output_crs(data, raster)
    absences = gpd.GeoDataFrame(pd.concat(pieces, ignore_index=True), crs=crs)
    if not return_pres:
        return absences
    presences = gpd.GeoDataFrame(
        {"class": np.ones(len(data), dtype=int), time_col: data[time_col].values},
        geometry=align_crs(data, raster).geometry.values,
        crs=crs,
    )
    return gpd.GeoDataFrame(pd.concat([presences, absences], ignore_index=True), crs=crs)
