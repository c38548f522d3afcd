"""Ensembles of tuned SDM workflows."""

import logging
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from sklearn.base import clone
from sklearn.pipeline import Pipeline

from tidysdm.models.metrics import METRICS, optim_thresh
from tidysdm.models.tuning import TuneResults, select_best

logger = logging.getLogger(__name__)

ENSEMBLE_FUNS = ("mean", "median", "weighted_mean", "weighted_median", "none")
ClassThresh = Union[str, Tuple[str, float]]
MetricThresh = Optional[Tuple[str, float]]


def _weighted_median(values: np.ndarray, weights: np.ndarray) -> np.ndarray:
    order = np.argsort(values, axis=1)
    sorted_values = np.take_along_axis(values, order, axis=1)
    sorted_weights = weights[order]
    cum = np.cumsum(sorted_weights, axis=1)
    half = cum[:, -1:] / 2
    idx = (cum < half).sum(axis=1)
    return sorted_values[np.arange(len(values)), idx]


def _thresh_key(class_thresh: ClassThresh, metric_thresh: MetricThresh, fun: str) -> Tuple:
    if isinstance(class_thresh, str):
        class_thresh = (class_thresh, None)
    else:
        class_thresh = (class_thresh[0], float(class_thresh[1]))
    if metric_thresh is not None:
        metric_thresh = (metric_thresh[0], float(metric_thresh[1]))
    return (class_thresh, metric_thresh, fun)


class SimpleEnsemble:
    """
    The best candidate of each tuned workflow, refitted on all the training data.

    Members are fitted scikit-learn pipelines taking the annotated points table
    (or a raster table) and returning presence probabilities.
    """

    def __init__(self, metric: str = "boyce_cont"):
        if metric not in METRICS:
            raise ValueError(f"Unknown metric '{metric}'; choose from {list(METRICS)}")
        self.metric = metric
        self.members: Dict[str, Pipeline] = {}
        self.member_params: Dict[str, Dict] = {}
        self.member_metrics = pd.DataFrame(columns=["member", "wflow_id", "metric", "mean", "std_err", "n"])
        self.class_thresholds: Dict[Tuple, float] = {}
        self.X_train: Optional[pd.DataFrame] = None
        self.y_train: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return len(self.members)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(metric={self.metric!r}, members={list(self.members)})"

    def add_member(
        self,
        tune_results: Union[TuneResults, Dict[str, TuneResults]],
        data: pd.DataFrame,
    ) -> "SimpleEnsemble":
        """
        Add the best candidate of each tuned workflow as a member.

        The best hyperparameters are chosen by the ensemble metric; the
        workflow is then refitted on ``data``.

        Args:
            tune_results: Results of one workflow, or a dict of them.
            data: The annotated points the workflows were tuned on.
        """
        if isinstance(tune_results, TuneResults):
            tune_results = {tune_results.wflow_id: tune_results}
        for wflow_id, result in tune_results.items():
            if wflow_id in self.members:
                raise ValueError(f"Workflow '{wflow_id}' is already in the ensemble")
            params = select_best(result, self.metric)
            X, y = result.workflow.recipe.xy(data)
            model = clone(result.workflow.pipeline).set_params(**params)
            logger.info(f"Fitting {wflow_id} on all {len(y)} points with {params}")
            model.fit(X, y)
            self.members[wflow_id] = model
            self.member_params[wflow_id] = params
            self._add_member_metrics(wflow_id, wflow_id, result, params)
            self._add_training_data(X, y)
        self.class_thresholds = {}
        return self

    def _add_member_metrics(self, member: str, wflow_id: str, result: TuneResults, params: Dict) -> None:
        summary = result.summary()
        config = result.candidates.index(params)
        rows = summary[summary["config"] == config][["metric", "mean", "std_err", "n"]].copy()
        rows.insert(0, "wflow_id", wflow_id)
        rows.insert(0, "member", member)
        frames = [f for f in (self.member_metrics, rows) if len(f)]
        self.member_metrics = pd.concat(frames, ignore_index=True)

    def _add_training_data(self, X: pd.DataFrame, y: np.ndarray) -> None:
        if self.X_train is None:
            self.X_train, self.y_train = X, y
            return
        new_cols = [c for c in X.columns if c not in self.X_train.columns]
        if new_cols and len(X) == len(self.X_train):
            self.X_train = pd.concat([self.X_train, X[new_cols]], axis=1)

    def _metric_values(self, metric: str) -> pd.Series:
        values = self.member_metrics[self.member_metrics["metric"] == metric].set_index("member")["mean"]
        if values.empty:
            raise ValueError(f"Metric '{metric}' is not available for the ensemble members")
        return values.reindex(list(self.members)).astype(float)

    def _select_members(self, metric_thresh: MetricThresh) -> List[str]:
        if not self.members:
            raise ValueError("The ensemble has no members")
        if metric_thresh is None:
            return list(self.members)
        metric, value = metric_thresh
        scores = self._metric_values(metric)
        kept = scores[scores >= value].index.tolist()
        if not kept:
            raise ValueError(f"No members have {metric} >= {value}")
        logger.debug(f"Using {len(kept)}/{len(self.members)} members with {metric} >= {value}")
        return kept

    def predict_proba(
        self,
        X: pd.DataFrame,
        fun: str = "mean",
        metric_thresh: MetricThresh = None,
    ) -> Union[np.ndarray, pd.DataFrame]:
        """
        Ensemble probability of presence.

        Args:
            X: Table with the predictor columns.
            fun: "mean", "median", "weighted_mean", "weighted_median" (weights
                are the members' ensemble metric) or "none" for one column per member.
            metric_thresh: (metric, value); only members whose cross-validated
                metric is at least ``value`` are used.

        Returns:
            Probabilities, or a DataFrame of member probabilities for fun="none".
        """
        if fun not in ENSEMBLE_FUNS:
            raise ValueError(f"fun must be one of {ENSEMBLE_FUNS}")
        members = self._select_members(metric_thresh)
        preds = pd.DataFrame(
            {m: self.members[m].predict_proba(X)[:, 1] for m in members},
            index=X.index if isinstance(X, pd.DataFrame) else None,
        )
        if fun == "none":
            return preds
        values = preds.to_numpy()
        if fun == "mean":
            return values.mean(axis=1)
        if fun == "median":
            return np.median(values, axis=1)

        weights = self._metric_values(self.metric).loc[members].to_numpy()
        weights = np.clip(np.nan_to_num(weights, nan=0.0), 0, None)
        if weights.sum() == 0:
            raise ValueError(f"All member weights ({self.metric}) are zero or missing")
        if fun == "weighted_mean":
            return values @ weights / weights.sum()
        return _weighted_median(values, weights)

    def predict(
        self,
        X: pd.DataFrame,
        class_thresh: ClassThresh = "tss_max",
        metric_thresh: MetricThresh = None,
        fun: str = "mean",
    ) -> np.ndarray:
        """Presence (1) / absence (0) using a threshold set by ``calib_class_thresh``."""
        key = _thresh_key(class_thresh, metric_thresh, fun)
        if key not in self.class_thresholds:
            raise ValueError(
                f"No calibrated threshold for class_thresh={class_thresh}, metric_thresh={metric_thresh}, "
                f"fun={fun}; run calib_class_thresh first."
            )
        proba = self.predict_proba(X, fun=fun, metric_thresh=metric_thresh)
        return (proba >= self.class_thresholds[key]).astype(int)


def simple_ensemble(metric: str = "boyce_cont") -> SimpleEnsemble:
    return SimpleEnsemble(metric=metric)


class RepeatEnsemble(SimpleEnsemble):
    """
    Members of several simple ensembles, each fitted to a different
    pseudo-absence sample. Members are named ``repeat_<k>.<workflow>``.
    """

    def __init__(self, metric: Optional[str] = None):
        self.metric = metric
        self.members = {}
        self.member_params = {}
        self.member_metrics = pd.DataFrame(columns=["member", "wflow_id", "metric", "mean", "std_err", "n"])
        self.class_thresholds = {}
        self.X_train = None
        self.y_train = None
        self.n_repeats = 0

    def add_member(self, tune_results, data):
        raise TypeError("Add whole ensembles to a RepeatEnsemble with add_repeat")

    def add_repeat(self, ensemble: SimpleEnsemble) -> "RepeatEnsemble":
        """Add every member of a simple ensemble as a new repeat."""
        if not ensemble.members:
            raise ValueError("Cannot add an empty ensemble")
        if self.metric is None:
            self.metric = ensemble.metric
        elif ensemble.metric != self.metric:
            raise ValueError(f"Ensemble metric {ensemble.metric} does not match {self.metric}")

        self.n_repeats += 1
        prefix = f"repeat_{self.n_repeats}"
        renamed = {m: f"{prefix}.{m}" for m in ensemble.members}
        for old, new in renamed.items():
            self.members[new] = ensemble.members[old]
            self.member_params[new] = ensemble.member_params.get(old, {})
        metrics = ensemble.member_metrics.copy()
        metrics["member"] = metrics["member"].map(renamed)
        frames = [f for f in (self.member_metrics, metrics) if len(f)]
        self.member_metrics = pd.concat(frames, ignore_index=True)

        # presences are repeated in every sample; all of them count towards calibration
        if self.X_train is None:
            self.X_train, self.y_train = ensemble.X_train, ensemble.y_train
        else:
            self.X_train = pd.concat([self.X_train, ensemble.X_train], ignore_index=True)
            self.y_train = np.concatenate([self.y_train, ensemble.y_train])
        if self.class_thresholds:
            logger.warning("Discarding calibrated thresholds after adding a repeat")
        self.class_thresholds = {}
        logger.info(f"Added repeat {self.n_repeats} with {len(renamed)} members")
        return self


def repeat_ensemble(metric: Optional[str] = None) -> RepeatEnsemble:
    return RepeatEnsemble(metric=metric)


def calib_class_thresh(
    ensemble: SimpleEnsemble,
    class_thresh: ClassThresh = "tss_max",
    metric_thresh: MetricThresh = None,
    fun: str = "mean",
) -> SimpleEnsemble:
    """
    Compute and store the probability threshold for presence / absence predictions.

    The threshold is optimised on the ensemble's predictions for its own
    training data.

    Args:
        ensemble: A simple or repeat ensemble.
        class_thresh: "tss_max", "kap_max" or ("sens", value) for the highest
            threshold keeping sensitivity at or above ``value``.
        metric_thresh: Member filter, as in ``predict_proba``.
        fun: Aggregation function, as in ``predict_proba`` (not "none").
    """
    if fun == "none":
        raise ValueError("Cannot calibrate a threshold for fun='none'")
    if ensemble.X_train is None:
        raise ValueError("The ensemble has no training data")
    key = _thresh_key(class_thresh, metric_thresh, fun)
    if key in ensemble.class_thresholds:
        logger.info(f"Threshold for {key} already calibrated")
        return ensemble

    (metric, sens), _, _ = key
    if metric in ("sens", "sensitivity"):
        metric = "sensitivity"
    proba = ensemble.predict_proba(ensemble.X_train, fun=fun, metric_thresh=metric_thresh)
    threshold = optim_thresh(ensemble.y_train, proba, metric=metric, sens=sens)
    ensemble.class_thresholds[key] = threshold
    logger.info(f"Calibrated class threshold {threshold:.4f} ({class_thresh}, fun={fun})")
    return ensemble
