"""End to end fitting: thin, sample pseudo-absences, select predictors, tune and ensemble."""

import json
import logging
import math
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import geopandas as gpd
import mlflow
import pandas as pd
import xarray as xr

from tidysdm.models.ensemble import RepeatEnsemble, SimpleEnsemble, calib_class_thresh
from tidysdm.models.metrics import sdm_metric_set
from tidysdm.models.recipe import sdm_recipe
from tidysdm.models.resampling import check_splits_balance, geographic_kfold_cv, spatial_block_cv
from tidysdm.models.specs import spec_from_config
from tidysdm.models.tuning import collect_metrics, tune_workflow_set, workflow_set
from tidysdm.occurrence.cleaning import clean_occurrences
from tidysdm.occurrence.sampling import sample_pseudoabs
from tidysdm.occurrence.thinning import thin_by_cell, thin_by_dist
from tidysdm.raster.extract import extract_raster_values
from tidysdm.utils.config import PipelineConfig
from tidysdm.utils.io import save_ensemble
from tidysdm.variables.selection import filter_high_cor

logger = logging.getLogger(__name__)


@dataclass
class SdmFitResult:
    """Output of ``fit_sdm``: the calibrated ensemble and what went into it."""

    ensemble: SimpleEnsemble
    predictors: List[str]
    metrics: pd.DataFrame
    n_presences: int
    n_absences: int
    training_data: List[gpd.GeoDataFrame] = field(default_factory=list)


def thin_occurrences(data: gpd.GeoDataFrame, raster: xr.Dataset, config: PipelineConfig) -> gpd.GeoDataFrame:
    thinning = config.thinning
    if thinning.method == "cell":
        return thin_by_cell(data, raster, agg_fact=thinning.agg_fact)
    if thinning.method == "dist":
        if thinning.dist_min is None:
            raise ValueError("thinning.dist_min is required for distance thinning")
        return thin_by_dist(data, thinning.dist_min, random_state=config.random_state)
    return data


def select_predictors(raster: xr.Dataset, config: PipelineConfig) -> List[str]:
    """Candidate predictors from the config, filtered for collinearity over the raster."""
    candidates = config.variables.predictors or list(raster.data_vars)
    missing = [v for v in candidates if v not in raster.data_vars]
    if missing:
        raise KeyError(f"Predictors not found in raster: {missing}")
    if len(candidates) < 2:
        return list(candidates)
    return filter_high_cor(
        raster[candidates],
        cutoff=config.variables.cutoff,
        to_keep=config.variables.to_keep,
        exact=config.variables.exact,
        verbose=True,
    )


def _make_resamples(data: gpd.GeoDataFrame, config: PipelineConfig, seed: Optional[int]):
    resampling = config.resampling
    if resampling.method == "geographic":
        return geographic_kfold_cv(data, v=resampling.v, random_state=seed)
    return spatial_block_cv(
        data,
        v=resampling.v,
        n_blocks=resampling.n_blocks,
        cellsize=resampling.cellsize,
        random_state=seed,
    )


def sample_training_data(
    presences: gpd.GeoDataFrame,
    raster: xr.Dataset,
    config: PipelineConfig,
    seed: Optional[int] = None,
) -> gpd.GeoDataFrame:
    """Presences plus one pseudo-absence sample, annotated with predictor values."""
    pseudoabs = config.pseudoabs
    n = pseudoabs.n or math.ceil(pseudoabs.n_per_presence * len(presences))
    sampled = sample_pseudoabs(
        presences,
        raster,
        n=n,
        method=pseudoabs.method,
        dist_min=pseudoabs.dist_min,
        dist_max=pseudoabs.dist_max,
        random_state=seed,
    )
    return extract_raster_values(sampled, raster, drop_na=True)


def fit_sdm(
    occurrences: gpd.GeoDataFrame,
    raster: xr.Dataset,
    config: Optional[PipelineConfig] = None,
) -> SdmFitResult:
    """
    Fit an ensemble species distribution model to presence-only records.

    Args:
        occurrences: Presence points.
        raster: Predictor Dataset on the study area grid.
        config: Pipeline settings; defaults when None.

    Returns:
        SdmFitResult with a calibrated simple ensemble (one repeat) or repeat
        ensemble (several pseudo-absence samples).
    """
    config = config or PipelineConfig()
    presences = clean_occurrences(occurrences, raster=raster)
    presences = thin_occurrences(presences, raster, config)
    if len(presences) == 0:
        raise ValueError("No presences left after cleaning and thinning")
    logger.info(f"Fitting with {len(presences)} presences")

    predictors = select_predictors(raster, config)
    metrics = sdm_metric_set(*dict.fromkeys(["boyce_cont", "roc_auc", "tss_max", config.ensemble.metric]))
    specs = [spec_from_config(m.name, tune=m.tune, grid=m.grid) for m in config.models]

    n_repeats = config.ensemble.n_repeats
    repeats = RepeatEnsemble(metric=config.ensemble.metric)
    all_metrics = []
    training_data = []
    for repeat in range(n_repeats):
        seed = None if config.random_state is None else config.random_state + repeat
        data = sample_training_data(presences, raster, config, seed=seed)
        training_data.append(data)
        resamples = _make_resamples(data, config, seed)
        logger.debug(f"Fold balance:\n{check_splits_balance(resamples, data)}")

        recipe = sdm_recipe(data, predictors=predictors)
        wset = workflow_set(recipe, specs)
        results = tune_workflow_set(wset, data, resamples, metrics=metrics, n_jobs=config.n_jobs)
        tuned = collect_metrics(results)
        tuned.insert(0, "repeat", repeat + 1)
        all_metrics.append(tuned)

        ensemble = SimpleEnsemble(metric=config.ensemble.metric).add_member(results, data)
        if n_repeats > 1:
            repeats.add_repeat(ensemble)

    final = ensemble if n_repeats == 1 else repeats
    calib_class_thresh(
        final,
        class_thresh=config.ensemble.class_thresh,
        metric_thresh=config.ensemble.metric_thresh,
        fun=config.ensemble.fun,
    )
    n_abs = int(sum((d["class"] == 0).sum() for d in training_data))
    return SdmFitResult(
        ensemble=final,
        predictors=predictors,
        metrics=pd.concat(all_metrics, ignore_index=True),
        n_presences=len(presences),
        n_absences=n_abs,
        training_data=training_data,
    )


def log_ensemble_to_mlflow(
    result: SdmFitResult,
    config: PipelineConfig,
    run_name: Optional[str] = None,
    experiment: Optional[str] = None,
) -> None:
    """Logs a fitted ensemble's settings, member metrics and pickle to MLflow."""
    if experiment is not None:
        mlflow.set_experiment(experiment)
    try:
        with mlflow.start_run(run_name=run_name) as run:
            mlflow.set_tag("model_type", type(result.ensemble).__name__)
            mlflow.log_params(
                {
                    "n_presences": result.n_presences,
                    "n_absences": result.n_absences,
                    "n_predictors": len(result.predictors),
                    "ensemble_metric": result.ensemble.metric,
                    "models": ",".join(m.name for m in config.models),
                    "n_repeats": config.ensemble.n_repeats,
                    "resampling": config.resampling.method,
                }
            )
            member_metrics = result.ensemble.member_metrics
            for _, row in member_metrics.iterrows():
                if pd.notna(row["mean"]):
                    key = f"{row['member']}.{row['metric']}".replace(".", "_")
                    mlflow.log_metric(key, float(row["mean"]))
            for ((name, sens), _, fun), value in result.ensemble.class_thresholds.items():
                suffix = "" if sens is None else f"_{sens:g}"
                mlflow.log_metric(f"class_thresh_{name}{suffix}_{fun}".replace(".", "_"), value)

            with tempfile.TemporaryDirectory() as tmp:
                tmp = Path(tmp)
                with open(tmp / "predictors.json", "w") as f:
                    json.dump(result.predictors, f)
                with open(tmp / "config.json", "w") as f:
                    f.write(config.model_dump_json(indent=2))
                result.metrics.drop(columns=["params"]).assign(
                    params=result.metrics["params"].astype(str)
                ).to_csv(tmp / "tuning_metrics.csv", index=False)
                save_ensemble(result.ensemble, tmp / "ensemble.pkl")
                mlflow.log_artifacts(str(tmp), "ensemble")
            logger.info(f"Logged run to MLflow: {run.info.run_name}")
    except Exception as e:
        logger.error(f"Error logging ensemble to MLflow: {e}", exc_info=True)
