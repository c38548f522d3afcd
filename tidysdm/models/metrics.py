"""Evaluation metrics for presence / pseudo-absence predictions.

All metrics take observed classes (1 presence, 0 absence) and predicted
presence probabilities, and are "higher is better".
"""

import logging
from typing import Callable, Dict, Optional

import numpy as np
from scipy.stats import spearmanr
from sklearn.metrics import roc_auc_score, roc_curve

logger = logging.getLogger(__name__)


def _as_arrays(y_true, y_score):
    y_true = np.asarray(y_true).astype(int)
    y_score = np.asarray(y_score, dtype=float)
    if y_true.shape != y_score.shape:
        raise ValueError(f"Shape mismatch: y_true {y_true.shape}, y_score {y_score.shape}")
    if not np.isin(np.unique(y_true), [0, 1]).all():
        raise ValueError("y_true must be coded 1 (presence) / 0 (absence)")
    return y_true, y_score


def boyce_cont(y_true, y_score, n_bins: int = 101, bin_width: Optional[float] = None) -> float:
    """
    Continuous Boyce index.

    A window slides over the range of predicted values; in each window the
    ratio of the share of presences to the share of all points is computed
    (predicted / expected). The index is the Spearman correlation between
    these ratios and the window positions. Consecutive duplicated ratios are
    removed before correlating.

    Args:
        y_true: Observed classes.
        y_score: Predicted probabilities for every point (presences and background).
        n_bins: Number of windows.
        bin_width: Window width; one tenth of the prediction range by default.

    Returns:
        Index in [-1, 1], or NaN when fewer than two windows hold points.
    """
    y_true, y_score = _as_arrays(y_true, y_score)
    fit = y_score
    obs = y_score[y_true == 1]
    if len(obs) == 0:
        return np.nan

    lo, hi = fit.min(), fit.max()
    if bin_width is None:
        bin_width = (hi - lo) / 10
    starts = np.linspace(lo, hi - bin_width, n_bins)
    ends = starts + bin_width

    p = ((obs[:, None] >= starts) & (obs[:, None] <= ends)).sum(axis=0) / len(obs)
    e = ((fit[:, None] >= starts) & (fit[:, None] <= ends)).sum(axis=0) / len(fit)
    with np.errstate(divide="ignore", invalid="ignore"):
        f = np.round(p / e, 10)

    keep = np.isfinite(f)
    f = f[keep]
    positions = starts[keep]
    if len(f) < 2:
        return np.nan
    not_dup = f != np.append(f[1:], 1.0)
    f, positions = f[not_dup], positions[not_dup]
    if len(f) < 2 or np.ptp(f) == 0:
        return np.nan
    return float(spearmanr(f, positions)[0])


def _confusion_by_threshold(y_true, y_score):
    fpr, tpr, thresholds = roc_curve(y_true, y_score, drop_intermediate=False)
    n_pos = (y_true == 1).sum()
    n_neg = (y_true == 0).sum()
    tp = tpr * n_pos
    fp = fpr * n_neg
    fn = n_pos - tp
    tn = n_neg - fp
    return thresholds, tp, fp, fn, tn


def _kappa(tp, fp, fn, tn):
    n = tp + fp + fn + tn
    observed = (tp + tn) / n
    expected = ((tp + fp) * (tp + fn) + (fn + tn) * (fp + tn)) / n**2
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(expected < 1, (observed - expected) / (1 - expected), 0.0)


def tss(y_true, y_pred) -> float:
    """True skill statistic (sensitivity + specificity - 1) of class predictions."""
    y_true, y_pred = _as_arrays(y_true, y_pred)
    y_pred = y_pred.astype(int)
    sens = ((y_pred == 1) & (y_true == 1)).sum() / max((y_true == 1).sum(), 1)
    spec = ((y_pred == 0) & (y_true == 0)).sum() / max((y_true == 0).sum(), 1)
    return float(sens + spec - 1)


def tss_max(y_true, y_score) -> float:
    """Maximum true skill statistic over all probability thresholds."""
    y_true, y_score = _as_arrays(y_true, y_score)
    fpr, tpr, _ = roc_curve(y_true, y_score)
    return float(np.max(tpr - fpr))


def kap_max(y_true, y_score) -> float:
    """Maximum Cohen's kappa over all probability thresholds."""
    y_true, y_score = _as_arrays(y_true, y_score)
    _, tp, fp, fn, tn = _confusion_by_threshold(y_true, y_score)
    return float(np.max(_kappa(tp, fp, fn, tn)))


def roc_auc(y_true, y_score) -> float:
    y_true, y_score = _as_arrays(y_true, y_score)
    return float(roc_auc_score(y_true, y_score))


def optim_thresh(y_true, y_score, metric: str = "tss_max", sens: Optional[float] = None) -> float:
    """
    Probability threshold that optimises a metric.

    Args:
        y_true: Observed classes.
        y_score: Predicted presence probabilities.
        metric: "tss_max", "kap_max" or "sensitivity".
        sens: Target sensitivity for "sensitivity": the highest threshold
            whose sensitivity is at least ``sens``.
    """
    y_true, y_score = _as_arrays(y_true, y_score)
    thresholds, tp, fp, fn, tn = _confusion_by_threshold(y_true, y_score)
    # roc_curve starts with an infinite threshold that classifies nothing as presence
    thresholds = np.minimum(thresholds, y_score.max())

    if metric == "tss_max":
        sensitivity = tp / (tp + fn)
        specificity = tn / (tn + fp)
        best = np.argmax(sensitivity + specificity - 1)
    elif metric == "kap_max":
        best = np.argmax(_kappa(tp, fp, fn, tn))
    elif metric in ("sensitivity", "sens"):
        if sens is None or not 0 < sens <= 1:
            raise ValueError("metric 'sensitivity' needs sens in (0, 1]")
        sensitivity = tp / (tp + fn)
        best = int(np.argmax(sensitivity >= sens))
    else:
        raise ValueError(f"Unknown threshold metric: {metric}")
    return float(thresholds[best])


METRICS: Dict[str, Callable] = {
    "boyce_cont": boyce_cont,
    "roc_auc": roc_auc,
    "tss_max": tss_max,
    "kap_max": kap_max,
}


def sdm_metric_set(*names: str) -> Dict[str, Callable]:
    """Named metric functions; ``boyce_cont``, ``roc_auc`` and ``tss_max`` by default."""
    if not names:
        names = ("boyce_cont", "roc_auc", "tss_max")
    unknown = [n for n in names if n not in METRICS]
    if unknown:
        raise ValueError(f"Unknown metrics {unknown}; choose from {list(METRICS)}")
    return {n: METRICS[n] for n in names}
