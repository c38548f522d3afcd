import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.base import BaseEstimator, TransformerMixin, clone
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler

from tidysdm.models.specs import SdmSpec
from tidysdm.occurrence.cleaning import check_sdm_presence

logger = logging.getLogger(__name__)

MODEL_STEP = "model"
NON_PREDICTORS = ("x", "y", "X", "Y", "cell", "geometry")


class FeatureSubsetter(BaseEstimator, TransformerMixin):
    """
    Subset a table to the predictor columns, in a fixed order.

    Lets a fitted pipeline take the full annotated points table (or a raster
    table with x, y and cell columns) and still see only its predictors.
    """

    def __init__(self, feature_names: List[str]):
        self.feature_names = feature_names

    def fit(self, X, y=None):
        return self

    def transform(self, X):
        if isinstance(X, pd.DataFrame):
            missing = [f for f in self.feature_names if f not in X.columns]
            if missing:
                raise KeyError(f"Predictors missing from data: {missing}")
            return pd.DataFrame(X[self.feature_names])
        return pd.DataFrame(X, columns=self.feature_names)

    def get_feature_names_out(self, input_features=None):
        return np.asarray(self.feature_names, dtype=object)


@dataclass
class SdmRecipe:
    """Which columns are predictors and the response, and how predictors are preprocessed."""

    predictors: List[str]
    class_col: str = "class"
    scale: bool = False

    def steps(self) -> List[Tuple[str, BaseEstimator]]:
        steps: List[Tuple[str, BaseEstimator]] = [("features", FeatureSubsetter(feature_names=list(self.predictors)))]
        if self.scale:
            steps.append(("scaler", StandardScaler()))
        return steps

    def xy(self, data: pd.DataFrame) -> Tuple[pd.DataFrame, np.ndarray]:
        """Predictor table and 0/1 response from an annotated points table."""
        missing = [p for p in self.predictors if p not in data.columns]
        if missing:
            raise KeyError(f"Predictors missing from data: {missing}")
        X = pd.DataFrame(data[self.predictors]).reset_index(drop=True)
        y = data[self.class_col].to_numpy().astype(int)
        return X, y


def sdm_recipe(
    data: pd.DataFrame,
    predictors: Optional[Sequence[str]] = None,
    class_col: str = "class",
    scale: bool = False,
) -> SdmRecipe:
    """
    Describe the preprocessing of an annotated presence / pseudo-absence table.

    Args:
        data: Points with a 0/1 class column and one column per predictor.
        predictors: Predictor columns; all numeric columns other than the class
            and coordinates by default.
        class_col: Response column.
        scale: Standardise predictors before the model.
    """
    check_sdm_presence(data, class_col=class_col)
    if predictors is None:
        numeric = data.select_dtypes(include="number").columns
        predictors = [c for c in numeric if c != class_col and c not in NON_PREDICTORS]
    predictors = list(predictors)
    if not predictors:
        raise ValueError("No predictors found in data.")
    missing = [p for p in predictors if p not in data.columns]
    if missing:
        raise KeyError(f"Predictors missing from data: {missing}")
    n_missing = int(pd.DataFrame(data[predictors]).isna().any(axis=1).sum())
    if n_missing:
        logger.warning(f"{n_missing} rows have missing predictor values; drop them before fitting.")
    logger.info(f"Recipe with {len(predictors)} predictors: {predictors}")
    return SdmRecipe(predictors=predictors, class_col=class_col, scale=scale)


@dataclass
class SdmWorkflow:
    """A recipe and a model spec combined into one scikit-learn pipeline."""

    id: str
    recipe: SdmRecipe
    spec: SdmSpec
    pipeline: Pipeline

    @property
    def param_grid(self) -> Dict[str, list]:
        return {f"{MODEL_STEP}__{k}": v for k, v in self.spec.param_grid.items()}


def sdm_workflow(recipe: SdmRecipe, spec: SdmSpec, id: Optional[str] = None) -> SdmWorkflow:
    """Pipeline of the recipe steps followed by an unfitted copy of the spec's model."""
    pipeline = Pipeline(recipe.steps() + [(MODEL_STEP, clone(spec.estimator))])
    return SdmWorkflow(id=id or spec.name, recipe=recipe, spec=spec, pipeline=pipeline)
