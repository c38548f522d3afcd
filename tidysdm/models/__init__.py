"""
Model specifications, tuning over spatial resamples and ensembles.
"""

from .metrics import boyce_cont, kap_max, optim_thresh, roc_auc, sdm_metric_set, tss, tss_max
from .specs import (
    SdmSpec,
    sdm_spec_boost_tree,
    sdm_spec_gam,
    sdm_spec_glm,
    sdm_spec_maxent,
    sdm_spec_rf,
)
from .recipe import FeatureSubsetter, SdmRecipe, SdmWorkflow, sdm_recipe, sdm_workflow
from .resampling import check_splits_balance, geographic_kfold_cv, spatial_block_cv
from .tuning import TuneResults, collect_metrics, select_best, tune_grid, tune_workflow_set, workflow_set
from .ensemble import (
    RepeatEnsemble,
    SimpleEnsemble,
    calib_class_thresh,
    repeat_ensemble,
    simple_ensemble,
)
from .training import SdmFitResult, fit_sdm, log_ensemble_to_mlflow

__all__ = [
    "boyce_cont",
    "kap_max",
    "optim_thresh",
    "roc_auc",
    "sdm_metric_set",
    "tss",
    "tss_max",
    "SdmSpec",
    "sdm_spec_boost_tree",
    "sdm_spec_gam",
    "sdm_spec_glm",
    "sdm_spec_maxent",
    "sdm_spec_rf",
    "FeatureSubsetter",
    "SdmRecipe",
    "SdmWorkflow",
    "sdm_recipe",
    "sdm_workflow",
    "check_splits_balance",
    "geographic_kfold_cv",
    "spatial_block_cv",
    "TuneResults",
    "collect_metrics",
    "select_best",
    "tune_grid",
    "tune_workflow_set",
    "workflow_set",
    "RepeatEnsemble",
    "SimpleEnsemble",
    "calib_class_thresh",
    "repeat_ensemble",
    "simple_ensemble",
    "SdmFitResult",
    "fit_sdm",
    "log_ensemble_to_mlflow",
]
