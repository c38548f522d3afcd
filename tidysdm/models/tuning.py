"""Grid search of workflows over spatial resamples."""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.base import clone
from sklearn.model_selection import ParameterGrid
from tqdm import tqdm

from tidysdm.models.metrics import sdm_metric_set
from tidysdm.models.recipe import SdmRecipe, SdmWorkflow, sdm_workflow
from tidysdm.models.resampling import Splits
from tidysdm.models.specs import SdmSpec

logger = logging.getLogger(__name__)


@dataclass
class TuneResults:
    """Cross-validated metrics of every candidate of one workflow.

    ``fold_metrics`` has one row per candidate, fold and metric with columns
    config, fold, metric and estimate (NaN where the fold could not be scored).
    """

    workflow: SdmWorkflow
    candidates: List[Dict]
    fold_metrics: pd.DataFrame
    metrics: List[str] = field(default_factory=list)

    @property
    def wflow_id(self) -> str:
        return self.workflow.id

    def summary(self) -> pd.DataFrame:
        grouped = self.fold_metrics.groupby(["config", "metric"], sort=False)["estimate"]
        out = grouped.agg(mean="mean", std="std", n="count").reset_index()
        out["std_err"] = out["std"] / np.sqrt(out["n"].where(out["n"] > 0))
        out["params"] = [self.candidates[c] for c in out["config"]]
        out.insert(0, "wflow_id", self.wflow_id)
        return out[["wflow_id", "config", "params", "metric", "mean", "std_err", "n"]]


def workflow_set(recipe: SdmRecipe, specs: Sequence[SdmSpec]) -> Dict[str, SdmWorkflow]:
    """One workflow per model spec, all sharing the same recipe, keyed by spec name."""
    wset: Dict[str, SdmWorkflow] = {}
    for spec in specs:
        if spec.name in wset:
            raise ValueError(f"Duplicate model spec '{spec.name}'")
        wset[spec.name] = sdm_workflow(recipe, spec)
    return wset


def _fit_and_score(pipeline, params, X, y, train, test, metrics, config, fold) -> List[Dict]:
    rows = [{"config": config, "fold": fold, "metric": m, "estimate": np.nan} for m in metrics]
    if len(np.unique(y[test])) < 2:
        logger.warning(f"Fold {fold} has only one class in its assessment set; recording NaN.")
        return rows
    try:
        model = clone(pipeline).set_params(**params)
        model.fit(X.iloc[train], y[train])
        y_pred_proba = model.predict_proba(X.iloc[test])[:, 1]
        for row in rows:
            row["estimate"] = float(metrics[row["metric"]](y[test], y_pred_proba))
    except Exception as e:
        logger.error(f"Error fitting config {config} on fold {fold}: {e}", exc_info=True)
    return rows


def tune_grid(
    workflow: SdmWorkflow,
    grid: Optional[Dict[str, list]],
    data: pd.DataFrame,
    resamples: Splits,
    metrics: Optional[Dict[str, Callable]] = None,
    n_jobs: int = 1,
) -> TuneResults:
    """
    Evaluate every grid candidate of a workflow on every resample.

    Args:
        workflow: Workflow to tune.
        grid: Parameter grid keyed by pipeline parameter names; the workflow's
            own grid when None.
        data: Annotated points (class and predictors).
        resamples: (analysis, assessment) positional index pairs.
        metrics: Metric functions by name; ``sdm_metric_set()`` by default.
        n_jobs: Parallel fits (joblib).

    Returns:
        TuneResults for the workflow.
    """
    metrics = metrics or sdm_metric_set()
    grid = workflow.param_grid if grid is None else grid
    candidates = list(ParameterGrid(grid)) if grid else [{}]
    X, y = workflow.recipe.xy(data)
    if X.isna().any().any():
        raise ValueError("Predictors contain missing values; drop or impute them before tuning.")
    if not resamples:
        raise ValueError("No resamples given.")

    tasks = [
        (config, fold, params, train, test)
        for config, params in enumerate(candidates)
        for fold, (train, test) in enumerate(resamples, start=1)
    ]
    logger.info(f"Tuning {workflow.id}: {len(candidates)} candidates x {len(resamples)} folds")
    results = Parallel(n_jobs=n_jobs)(
        delayed(_fit_and_score)(workflow.pipeline, params, X, y, train, test, metrics, config, fold)
        for config, fold, params, train, test in tqdm(tasks, desc=f"Tuning {workflow.id}", leave=False)
    )
    fold_metrics = pd.DataFrame([row for rows in results for row in rows])
    return TuneResults(workflow=workflow, candidates=candidates, fold_metrics=fold_metrics, metrics=list(metrics))


def tune_workflow_set(
    wset: Dict[str, SdmWorkflow],
    data: pd.DataFrame,
    resamples: Splits,
    metrics: Optional[Dict[str, Callable]] = None,
    n_jobs: int = 1,
) -> Dict[str, TuneResults]:
    """Tune every workflow of a set on the same resamples."""
    return {
        wflow_id: tune_grid(workflow, None, data, resamples, metrics=metrics, n_jobs=n_jobs)
        for wflow_id, workflow in wset.items()
    }


def collect_metrics(results) -> pd.DataFrame:
    """Tidy table of mean cross-validated metrics for one or many tuning results."""
    if isinstance(results, TuneResults):
        return results.summary()
    return pd.concat([r.summary() for r in results.values()], ignore_index=True)


def select_best(result: TuneResults, metric: str) -> Dict:
    """Parameters of the candidate with the highest mean ``metric``."""
    if metric not in result.metrics:
        raise ValueError(f"Metric '{metric}' was not computed; available: {result.metrics}")
    summary = result.summary()
    scores = summary[summary["metric"] == metric]
    if scores["mean"].isna().all():
        raise ValueError(f"No valid {metric} estimates for workflow {result.wflow_id}")
    best = scores.loc[scores["mean"].idxmax()]
    logger.info(f"Best {result.wflow_id} config {best['config']}: {metric} = {best['mean']:.4f}")
    return dict(result.candidates[int(best["config"])])
