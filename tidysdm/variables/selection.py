"""Predictor selection: collinearity filtering and presence/background separation."""

import logging
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import xarray as xr
from scipy.integrate import trapezoid
from scipy.stats import gaussian_kde, rankdata

from tidysdm.raster.io import raster_to_frame

logger = logging.getLogger(__name__)


def _find_correlation_exact(x: np.ndarray, cutoff: float) -> np.ndarray:
    """Indices to drop, re-evaluating mean correlations after every removal."""
    p = x.shape[0]
    order = np.argsort(-x.mean(axis=0), kind="stable")
    x = x[np.ix_(order, order)]
    delete = np.zeros(p, dtype=bool)
    idx = np.arange(p)

    for i in range(p - 1):
        if delete[i]:
            continue
        for j in range(i + 1, p):
            if delete[i]:
                break
            if delete[j] or x[i, j] <= cutoff:
                continue
            mn1 = x[i, ~delete & (idx != i)].mean()
            mn2 = x[~delete & (idx != j), j].mean()
            if mn1 > mn2:
                delete[i] = True
            else:
                delete[j] = True
    return np.sort(order[delete])


def _find_correlation_fast(x: np.ndarray, cutoff: float) -> np.ndarray:
    """Indices to drop, comparing mean correlations computed once up front."""
    rank = rankdata(x.mean(axis=0), method="dense")
    rows, cols = np.nonzero(np.triu(x, k=1) > cutoff)
    drop_col = rank[cols] > rank[rows]
    return np.unique(np.concatenate([cols[drop_col], rows[~drop_col]]))


def _is_correlation_matrix(df: pd.DataFrame) -> bool:
    if df.shape[0] != df.shape[1] or list(df.index) != list(df.columns):
        return False
    values = df.to_numpy(dtype=float)
    return np.allclose(np.diag(values), 1.0) and np.allclose(values, values.T, equal_nan=True)


def correlation_matrix(
    x: Union[pd.DataFrame, xr.Dataset],
    method: str = "pearson",
) -> pd.DataFrame:
    """Correlation matrix of predictors from a table of values, a raster, or pass-through."""
    if isinstance(x, xr.Dataset):
        frame = raster_to_frame(x).drop(columns=["x", "y", "cell"])
        return frame.corr(method=method)
    if not isinstance(x, pd.DataFrame):
        raise TypeError(f"Expected a DataFrame or xarray Dataset, got {type(x)}")
    if _is_correlation_matrix(x):
        return x
    numeric = x.select_dtypes(include="number")
    dropped = [c for c in x.columns if c not in numeric.columns]
    if dropped:
        logger.debug(f"Ignoring non-numeric columns: {dropped}")
    return numeric.corr(method=method)


def filter_high_cor(
    x: Union[pd.DataFrame, xr.Dataset],
    cutoff: float = 0.7,
    verbose: bool = False,
    names: bool = True,
    to_keep: Optional[Sequence[str]] = None,
    exact: Optional[bool] = None,
    method: str = "pearson",
) -> List[Union[str, int]]:
    """
    Choose a set of predictors with no pairwise absolute correlation above ``cutoff``.

    For each highly correlated pair, the variable with the larger mean absolute
    correlation with all other variables is removed.

    Args:
        x: Predictor values (DataFrame), a correlation matrix, or a predictor
            raster (correlations computed over its valid cells).
        cutoff: Maximum absolute correlation allowed.
        verbose: Log every variable removed.
        names: Return variable names; otherwise positional indices into the
            correlation matrix.
        to_keep: Variables that must be retained. Variables correlated with
            them above ``cutoff`` are removed first.
        exact: Recompute mean correlations after each removal. Defaults to
            True for fewer than 100 variables.
        method: Correlation method passed to pandas.

    Returns:
        Variables to keep, in their original order.
    """
    if not 0 < cutoff <= 1:
        raise ValueError("cutoff must be in (0, 1]")
    cor = correlation_matrix(x, method=method)
    variables = list(cor.columns)
    abs_cor = cor.abs()
    if abs_cor.isna().any().any():
        logger.warning("Correlation matrix has missing values (constant variables?); treating them as 0.")
        abs_cor = abs_cor.fillna(0.0)

    to_keep = list(to_keep or [])
    missing = [v for v in to_keep if v not in variables]
    if missing:
        raise KeyError(f"to_keep variables not found: {missing}")
    if len(to_keep) > 1:
        kept_block = abs_cor.loc[to_keep, to_keep].to_numpy(copy=True)
        np.fill_diagonal(kept_block, 0.0)
        if (kept_block > cutoff).any():
            raise ValueError("Some variables in to_keep are correlated with each other above the cutoff.")

    removed_for_keep = [
        v for v in variables if v not in to_keep and to_keep and (abs_cor.loc[v, to_keep] > cutoff).any()
    ]
    candidates = [v for v in variables if v not in to_keep and v not in removed_for_keep]

    if exact is None:
        exact = len(candidates) < 100
    sub = abs_cor.loc[candidates, candidates].to_numpy(dtype=float)
    find = _find_correlation_exact if exact else _find_correlation_fast
    drop_idx = find(sub, cutoff) if len(candidates) > 1 else np.array([], dtype=int)
    removed = set(removed_for_keep) | {candidates[i] for i in drop_idx}

    kept = [v for v in variables if v not in removed]
    if verbose:
        for v in variables:
            if v in removed:
                logger.info(f"Removing {v} (correlated above {cutoff})")
    logger.info(f"Kept {len(kept)}/{len(variables)} variables with |r| <= {cutoff}.")
    if names:
        return kept
    return [variables.index(v) for v in kept]


def _overlap(a: np.ndarray, b: np.ndarray, n_grid: int = 512) -> float:
    lo = min(a.min(), b.min())
    hi = max(a.max(), b.max())
    grid = np.linspace(lo, hi, n_grid)
    da = gaussian_kde(a)(grid)
    db = gaussian_kde(b)(grid)
    da /= trapezoid(da, grid)
    db /= trapezoid(db, grid)
    return float(trapezoid(np.minimum(da, db), grid))


def dist_pres_vs_bg(data: pd.DataFrame, class_col: str = "class") -> pd.Series:
    """
    How well each predictor separates presences from background.

    The distance is 1 minus the overlap of the kernel density estimates of the
    predictor for presences and for background points: 0 for identical
    distributions, 1 for no overlap.

    Returns:
        Series indexed by variable, sorted from most to least separating.
        Variables that cannot be estimated (constant or too few values) are NaN.
    """
    if class_col not in data.columns:
        raise KeyError(f"Class column '{class_col}' not found in data.")
    numeric = data.drop(columns=[class_col]).select_dtypes(include="number")
    is_pres = data[class_col].values == 1
    distances = {}
    for name in numeric.columns:
        values = numeric[name].to_numpy(dtype=float)
        pres = values[is_pres & np.isfinite(values)]
        bg = values[~is_pres & np.isfinite(values)]
        if len(pres) < 2 or len(bg) < 2 or np.ptp(pres) == 0 or np.ptp(bg) == 0:
            logger.warning(f"Cannot estimate densities for {name}; skipping.")
            distances[name] = np.nan
            continue
        distances[name] = 1.0 - _overlap(pres, bg)
    return pd.Series(distances, name="distance").sort_values(ascending=False)
