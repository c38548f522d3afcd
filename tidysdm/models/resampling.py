"""Spatial cross-validation splits."""

import logging
from typing import List, Optional, Tuple

import elapid as ela
import geopandas as gpd
import numpy as np
import pandas as pd

from tidysdm.geo import get_coords

logger = logging.getLogger(__name__)

Splits = List[Tuple[np.ndarray, np.ndarray]]


def spatial_block_cv(
    data: gpd.GeoDataFrame,
    v: int = 5,
    n_blocks: Optional[int] = None,
    cellsize: Optional[float] = None,
    random_state: Optional[int] = None,
) -> Splits:
    """
    Spatial block cross-validation.

    A grid of square blocks is laid over the extent of the points; the blocks
    holding points are shuffled and dealt to ``v`` folds, so each fold is
    assessed on whole blocks.

    Args:
        data: Points to split.
        v: Number of folds.
        n_blocks: Approximate number of blocks covering the extent
            (``4 * v`` by default). Ignored when ``cellsize`` is given.
        cellsize: Block side length in CRS units.
        random_state: Seed for the block to fold assignment.

    Returns:
        One (analysis indices, assessment indices) pair per fold, positional.
    """
    if v < 2:
        raise ValueError("v must be at least 2")
    coords = get_coords(data)
    xmin, ymin = coords.min(axis=0)
    xmax, ymax = coords.max(axis=0)
    width = max(xmax - xmin, 1e-9)
    height = max(ymax - ymin, 1e-9)

    if cellsize is None:
        n_blocks = n_blocks or 4 * v
        cellsize = float(np.sqrt(width * height / n_blocks))
    if cellsize <= 0:
        raise ValueError("cellsize must be positive")

    n_cols = int(np.floor(width / cellsize)) + 1
    cols = np.floor((coords[:, 0] - xmin) / cellsize).astype(int)
    rows = np.floor((coords[:, 1] - ymin) / cellsize).astype(int)
    block = rows * n_cols + cols

    occupied = np.unique(block)
    if len(occupied) < v:
        raise ValueError(f"Only {len(occupied)} blocks hold points; cannot make {v} folds. Use smaller blocks.")
    rng = np.random.default_rng(random_state)
    shuffled = rng.permutation(occupied)
    fold_of_block = dict(zip(shuffled, np.arange(len(shuffled)) % v))
    fold = np.array([fold_of_block[b] for b in block])

    logger.info(f"Spatial block CV: {len(occupied)} occupied blocks of side {cellsize:.2f} in {v} folds")
    idx = np.arange(len(data))
    return [(idx[fold != k], idx[fold == k]) for k in range(v)]


def geographic_kfold_cv(
    data: gpd.GeoDataFrame,
    v: int = 5,
    random_state: Optional[int] = None,
) -> Splits:
    """Folds from k-means clusters of the point coordinates (elapid GeographicKFold)."""
    gfolds = ela.GeographicKFold(n_splits=v, random_state=random_state)
    return [(np.asarray(train), np.asarray(test)) for train, test in gfolds.split(data)]


def check_splits_balance(splits: Splits, data: pd.DataFrame, class_col: str = "class") -> pd.DataFrame:
    """Presence and absence counts in the analysis and assessment set of each fold."""
    if class_col not in data.columns:
        raise ValueError(f"Class column '{class_col}' not found in data.")
    y = data[class_col].to_numpy()
    rows = []
    for i, (train, test) in enumerate(splits):
        rows.append(
            {
                "fold": i + 1,
                "presence_analysis": int((y[train] == 1).sum()),
                "absence_analysis": int((y[train] == 0).sum()),
                "presence_assessment": int((y[test] == 1).sum()),
                "absence_assessment": int((y[test] == 0).sum()),
            }
        )
    balance = pd.DataFrame(rows)
    unbalanced = balance[(balance["presence_assessment"] == 0) | (balance["absence_assessment"] == 0)]
    if len(unbalanced):
        logger.warning(f"Folds {unbalanced['fold'].tolist()} have a single class in their assessment set.")
    return balance
