"""Model specifications with SDM-oriented defaults and tuning grids."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from elapid import MaxentModel
from sklearn.base import BaseEstimator
from sklearn.ensemble import GradientBoostingClassifier, RandomForestClassifier
from sklearn.linear_model import LogisticRegression
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import SplineTransformer

logger = logging.getLogger(__name__)

TUNE_OPTIONS = ("sdm", "all", "custom", "none")


@dataclass
class SdmSpec:
    """An unfitted classifier and the grid of hyperparameters to tune it over."""

    name: str
    estimator: BaseEstimator
    param_grid: Dict[str, List[Any]] = field(default_factory=dict)

    @property
    def n_candidates(self) -> int:
        n = 1
        for values in self.param_grid.values():
            n *= len(values)
        return n


def _resolve_grid(
    name: str,
    tune: str,
    sdm_grid: Dict[str, List[Any]],
    all_grid: Dict[str, List[Any]],
    grid: Optional[Dict[str, List[Any]]],
) -> Dict[str, List[Any]]:
    if tune not in TUNE_OPTIONS:
        raise ValueError(f"tune must be one of {TUNE_OPTIONS}, got '{tune}'")
    if tune == "custom":
        if not grid:
            raise ValueError(f"tune='custom' needs a grid for {name}")
        return {k: list(v) for k, v in grid.items()}
    if grid is not None:
        logger.warning(f"Ignoring grid for {name} because tune='{tune}'")
    if tune == "sdm":
        return sdm_grid
    if tune == "all":
        return all_grid
    return {}


def sdm_spec_glm(tune: str = "none", grid: Optional[Dict[str, List[Any]]] = None) -> SdmSpec:
    """Logistic regression (binomial GLM) with effectively no penalty.

    There are no hyperparameters worth tuning, so "sdm" and "all" give an empty grid.
    """
    estimator = LogisticRegression(C=1e4, max_iter=1000)
    return SdmSpec("glm", estimator, _resolve_grid("glm", tune, {}, {}, grid))


def sdm_spec_gam(tune: str = "sdm", grid: Optional[Dict[str, List[Any]]] = None) -> SdmSpec:
    """Additive model: cubic spline basis per predictor followed by a penalised logistic regression."""
    estimator = Pipeline(
        [
            ("spline", SplineTransformer(n_knots=5, degree=3)),
            ("logistic", LogisticRegression(C=1.0, max_iter=2000)),
        ]
    )
    sdm_grid = {"spline__n_knots": [4, 6], "logistic__C": [0.1, 1.0]}
    all_grid = {"spline__n_knots": [3, 4, 6, 8, 10], "logistic__C": [0.01, 0.1, 1.0, 10.0]}
    return SdmSpec("gam", estimator, _resolve_grid("gam", tune, sdm_grid, all_grid, grid))


def sdm_spec_rf(tune: str = "sdm", grid: Optional[Dict[str, List[Any]]] = None) -> SdmSpec:
    """Random forest of 500 probability trees; tunes the share of predictors tried at each split."""
    estimator = RandomForestClassifier(n_estimators=500, min_samples_leaf=1, n_jobs=1)
    sdm_grid = {"max_features": ["sqrt", 0.5, 1.0]}
    all_grid = {"max_features": ["sqrt", 0.25, 0.5, 0.75, 1.0], "min_samples_leaf": [1, 5, 10]}
    return SdmSpec("rf", estimator, _resolve_grid("rf", tune, sdm_grid, all_grid, grid))


def sdm_spec_boost_tree(tune: str = "sdm", grid: Optional[Dict[str, List[Any]]] = None) -> SdmSpec:
    """Gradient boosted trees."""
    estimator = GradientBoostingClassifier(n_estimators=300, max_depth=3, learning_rate=0.1, subsample=0.8)
    sdm_grid = {
        "n_estimators": [100, 300],
        "max_depth": [2, 4],
        "learning_rate": [0.05, 0.1],
        "subsample": [0.8],
    }
    all_grid = {
        "n_estimators": [100, 300, 1000],
        "max_depth": [1, 2, 4, 6],
        "learning_rate": [0.01, 0.05, 0.1, 0.3],
        "subsample": [0.5, 0.8, 1.0],
    }
    return SdmSpec("boost_tree", estimator, _resolve_grid("boost_tree", tune, sdm_grid, all_grid, grid))


def sdm_spec_maxent(
    tune: str = "sdm",
    grid: Optional[Dict[str, List[Any]]] = None,
    n_cpus: int = 1,
) -> SdmSpec:
    """
    Maxent (elapid) returning cloglog probabilities.

    Tunes the feature classes and the regularisation multiplier. Feature classes
    are given as lists of elapid feature names.

    Args:
        tune: "sdm", "all", "custom" or "none".
        grid: Grid used with tune="custom".
        n_cpus: Threads used by each Maxent fit.
    """
    estimator = MaxentModel(
        feature_types=["linear", "quadratic", "product", "hinge"],
        beta_multiplier=1.0,
        transform="cloglog",
        clamp=True,
        n_hinge_features=10,
        n_threshold_features=10,
        class_weights=100,
        n_cpus=n_cpus,
        use_sklearn=True,
    )
    sdm_grid = {
        "feature_types": [
            ["linear"],
            ["linear", "quadratic"],
            ["linear", "quadratic", "product"],
            ["linear", "quadratic", "product", "hinge"],
        ],
        "beta_multiplier": [0.5, 1.0, 2.0, 4.0],
    }
    all_grid = {
        "feature_types": sdm_grid["feature_types"] + [["linear", "quadratic", "hinge", "product", "threshold"]],
        "beta_multiplier": [0.5, 1.0, 1.5, 2.0, 3.0, 4.0],
    }
    return SdmSpec("maxent", estimator, _resolve_grid("maxent", tune, sdm_grid, all_grid, grid))


SPEC_FACTORIES = {
    "glm": sdm_spec_glm,
    "gam": sdm_spec_gam,
    "rf": sdm_spec_rf,
    "boost_tree": sdm_spec_boost_tree,
    "maxent": sdm_spec_maxent,
}


def spec_from_config(name: str, tune: str = "sdm", grid: Optional[Dict[str, List[Any]]] = None) -> SdmSpec:
    """Build a spec by name, as listed in the pipeline config."""
    if name not in SPEC_FACTORIES:
        raise ValueError(f"Unknown model '{name}'; choose from {list(SPEC_FACTORIES)}")
    return SPEC_FACTORIES[name](tune=tune, grid=grid)
