import numpy as np
import pandas as pd
import pytest
from sklearn.ensemble import RandomForestClassifier
from sklearn.pipeline import Pipeline

from tidysdm.models.ensemble import (
    RepeatEnsemble,
    calib_class_thresh,
    repeat_ensemble,
    simple_ensemble,
)
from tidysdm.models.recipe import FeatureSubsetter, sdm_recipe, sdm_workflow
from tidysdm.models.resampling import spatial_block_cv
from tidysdm.models.specs import (
    sdm_spec_boost_tree,
    sdm_spec_gam,
    sdm_spec_glm,
    sdm_spec_maxent,
    sdm_spec_rf,
    spec_from_config,
)
from tidysdm.models.tuning import collect_metrics, select_best, tune_grid, tune_workflow_set, workflow_set
from tidysdm.utils.io import load_ensemble, save_ensemble

SMALL_RF_GRID = {"n_estimators": [25], "max_features": [1, 2]}


@pytest.fixture
def recipe(training_data):
    return sdm_recipe(training_data)


@pytest.fixture
def resamples(training_data):
    return spatial_block_cv(training_data, v=3, random_state=0)


@pytest.fixture
def tuned(recipe, training_data, resamples):
    specs = [sdm_spec_glm(), sdm_spec_rf(tune="custom", grid=SMALL_RF_GRID)]
    return tune_workflow_set(workflow_set(recipe, specs), training_data, resamples)


@pytest.fixture
def ensemble(tuned, training_data):
    return simple_ensemble(metric="roc_auc").add_member(tuned, training_data)


def test_specs_grids():
    assert sdm_spec_glm().param_grid == {}
    assert sdm_spec_rf(tune="none").param_grid == {}
    assert set(sdm_spec_maxent().param_grid) == {"feature_types", "beta_multiplier"}
    assert set(sdm_spec_boost_tree().param_grid) == {"n_estimators", "max_depth", "learning_rate", "subsample"}
    assert len(sdm_spec_gam(tune="all").param_grid["spline__n_knots"]) > len(sdm_spec_gam().param_grid["spline__n_knots"])
    assert isinstance(sdm_spec_rf().estimator, RandomForestClassifier)
    assert sdm_spec_rf().estimator.n_estimators == 500


def test_specs_custom_grid():
    spec = sdm_spec_rf(tune="custom", grid=SMALL_RF_GRID)
    assert spec.param_grid == SMALL_RF_GRID
    assert spec.n_candidates == 2
    with pytest.raises(ValueError):
        sdm_spec_rf(tune="custom")
    with pytest.raises(ValueError):
        sdm_spec_rf(tune="everything")
    with pytest.raises(ValueError):
        spec_from_config("svm")


def test_recipe_defaults(training_data):
    recipe = sdm_recipe(training_data)
    assert recipe.predictors == ["temp", "prec"]
    X, y = recipe.xy(training_data)
    assert list(X.columns) == ["temp", "prec"]
    assert set(np.unique(y)) == {0, 1}


def test_recipe_needs_both_classes(training_data):
    with pytest.raises(ValueError):
        sdm_recipe(training_data[training_data["class"] == 1])
    with pytest.raises(KeyError):
        sdm_recipe(training_data, predictors=["temp", "elevation"])


def test_feature_subsetter():
    frame = pd.DataFrame({"a": [1.0], "b": [2.0], "x": [0.0]})
    assert list(FeatureSubsetter(["b", "a"]).fit_transform(frame).columns) == ["b", "a"]
    with pytest.raises(KeyError):
        FeatureSubsetter(["c"]).transform(frame)


def test_workflow(recipe):
    wf = sdm_workflow(recipe, sdm_spec_maxent())
    assert isinstance(wf.pipeline, Pipeline)
    assert list(wf.pipeline.named_steps) == ["features", "model"]
    assert all(k.startswith("model__") for k in wf.param_grid)

    scaled = sdm_recipe(pd.DataFrame({"class": [0, 1], "v": [1.0, 2.0]}), scale=True)
    assert list(sdm_workflow(scaled, sdm_spec_glm()).pipeline.named_steps) == ["features", "scaler", "model"]


def test_workflow_set_rejects_duplicates(recipe):
    with pytest.raises(ValueError):
        workflow_set(recipe, [sdm_spec_glm(), sdm_spec_glm()])


def test_tune_grid(recipe, training_data, resamples):
    wf = sdm_workflow(recipe, sdm_spec_rf(tune="custom", grid=SMALL_RF_GRID))
    result = tune_grid(wf, None, training_data, resamples)
    assert len(result.candidates) == 2
    # candidates x folds x metrics
    assert len(result.fold_metrics) == 2 * 3 * 3

    summary = collect_metrics(result)
    assert list(summary.columns) == ["wflow_id", "config", "params", "metric", "mean", "std_err", "n"]
    assert set(summary["metric"]) == {"boyce_cont", "roc_auc", "tss_max"}

    best = select_best(result, "roc_auc")
    assert best in result.candidates
    with pytest.raises(ValueError):
        select_best(result, "kap_max")


def test_tune_grid_single_class_fold(recipe, training_data):
    y = training_data["class"].to_numpy()
    idx = np.arange(len(y))
    pres_only = idx[y == 1][:5]
    resamples = [(np.setdiff1d(idx, pres_only), pres_only)]
    wf = sdm_workflow(recipe, sdm_spec_glm())
    result = tune_grid(wf, None, training_data, resamples)
    assert result.fold_metrics["estimate"].isna().all()


def test_tune_grid_rejects_missing_values(recipe, training_data, resamples):
    data = training_data.copy()
    data.loc[data.index[0], "temp"] = np.nan
    with pytest.raises(ValueError):
        tune_grid(sdm_workflow(recipe, sdm_spec_glm()), None, data, resamples)


def test_collect_metrics_workflow_set(tuned):
    summary = collect_metrics(tuned)
    assert set(summary["wflow_id"]) == {"glm", "rf"}
    # the warm east is easy to separate from the rest of the grid
    auc = summary[summary["metric"] == "roc_auc"]["mean"]
    assert (auc > 0.6).all()


def test_simple_ensemble(ensemble, training_data):
    assert list(ensemble.members) == ["glm", "rf"]
    assert set(ensemble.member_metrics["member"]) == {"glm", "rf"}

    proba = ensemble.predict_proba(training_data)
    assert proba.shape == (len(training_data),)
    assert ((proba >= 0) & (proba <= 1)).all()

    members = ensemble.predict_proba(training_data, fun="none")
    assert list(members.columns) == ["glm", "rf"]
    np.testing.assert_allclose(members.mean(axis=1).to_numpy(), proba)

    for fun in ("median", "weighted_mean", "weighted_median"):
        values = ensemble.predict_proba(training_data, fun=fun)
        assert ((values >= members.min(axis=1)) & (values <= members.max(axis=1))).all()


def test_simple_ensemble_metric_thresh(ensemble, training_data):
    with pytest.raises(ValueError):
        ensemble.predict_proba(training_data, metric_thresh=("roc_auc", 1.01))
    proba = ensemble.predict_proba(training_data, metric_thresh=("roc_auc", 0.0))
    assert proba.shape == (len(training_data),)


def test_simple_ensemble_class_predictions(ensemble, training_data):
    with pytest.raises(ValueError):
        ensemble.predict(training_data)
    calib_class_thresh(ensemble, class_thresh="tss_max")
    classes = ensemble.predict(training_data, class_thresh="tss_max")
    assert set(np.unique(classes)) <= {0, 1}
    assert classes[training_data["class"].to_numpy() == 1].mean() > 0.5

    calib_class_thresh(ensemble, class_thresh=("sens", 0.9))
    sens = ensemble.predict(training_data, class_thresh=("sens", 0.9))
    assert sens[training_data["class"].to_numpy() == 1].mean() >= 0.9


def test_simple_ensemble_rejects_duplicates(ensemble, tuned, training_data):
    with pytest.raises(ValueError):
        ensemble.add_member(tuned["glm"], training_data)


def test_repeat_ensemble(tuned, training_data):
    first = simple_ensemble(metric="roc_auc").add_member(tuned, training_data)
    second = simple_ensemble(metric="roc_auc").add_member(tuned, training_data)
    repeats = repeat_ensemble().add_repeat(first).add_repeat(second)

    assert isinstance(repeats, RepeatEnsemble)
    assert repeats.metric == "roc_auc"
    assert list(repeats.members) == ["repeat_1.glm", "repeat_1.rf", "repeat_2.glm", "repeat_2.rf"]
    assert len(repeats.X_train) == 2 * len(training_data)

    members = repeats.predict_proba(training_data, fun="none")
    assert members.shape == (len(training_data), 4)
    calib_class_thresh(repeats)
    assert set(np.unique(repeats.predict(training_data))) <= {0, 1}

    with pytest.raises(ValueError):
        repeat_ensemble(metric="boyce_cont").add_repeat(first)


def test_ensemble_pickles(ensemble, training_data, tmp_path):
    path = save_ensemble(ensemble, tmp_path / "models" / "ensemble.pkl")
    loaded = load_ensemble(path)
    np.testing.assert_allclose(loaded.predict_proba(training_data), ensemble.predict_proba(training_data))
    with pytest.raises(FileNotFoundError):
        load_ensemble(tmp_path / "missing.pkl")


def test_maxent_workflow(recipe, training_data, resamples):
    wf = sdm_workflow(recipe, sdm_spec_maxent(tune="none"))
    result = tune_grid(wf, None, training_data, resamples, metrics=None)
    assert len(result.candidates) == 1
    auc = collect_metrics(result).query("metric == 'roc_auc'")["mean"].iloc[0]
    assert auc > 0.6
