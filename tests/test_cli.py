import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
import rioxarray as rxr
import yaml
from pydantic import ValidationError
from typer.testing import CliRunner

from tidysdm.cli import app
from tidysdm.models.ensemble import calib_class_thresh, simple_ensemble
from tidysdm.models.recipe import sdm_recipe
from tidysdm.models.resampling import spatial_block_cv
from tidysdm.models.specs import sdm_spec_glm
from tidysdm.models.tuning import tune_workflow_set, workflow_set
from tidysdm.utils.io import load_ensemble, save_ensemble

runner = CliRunner()


@pytest.fixture
def raster_dir(raster, tmp_path):
    out = tmp_path / "rasters"
    out.mkdir()
    for name in raster.data_vars:
        da = raster[name].copy()
        da.attrs = {}
        da.rio.write_nodata(np.nan, inplace=True)
        da.rio.to_raster(out / f"{name}.tif")
    return out


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.yaml"
    with open(path, "w") as f:
        yaml.safe_dump(
            {
                "pipeline": {
                    "pseudoabs": {"n_per_presence": 2, "method": "random"},
                    "variables": {"cutoff": 0.8, "to_keep": ["temp"]},
                }
            },
            f,
        )
    return path


@pytest.fixture
def fit_config_path(tmp_path):
    path = tmp_path / "fit.yaml"
    with open(path, "w") as f:
        yaml.safe_dump(
            {
                "pipeline": {
                    "pseudoabs": {"n_per_presence": 2, "method": "random"},
                    "variables": {"predictors": ["temp", "prec"]},
                    "models": [{"name": "glm"}],
                    "resampling": {"v": 3},
                    "ensemble": {"metric": "roc_auc"},
                    "random_state": 0,
                }
            },
            f,
        )
    return path


@pytest.fixture
def presences_path(presences, tmp_path):
    path = tmp_path / "presences.parquet"
    presences.to_parquet(path)
    return path


def test_select_vars(raster_dir, config_path):
    result = runner.invoke(app, ["select-vars", str(raster_dir), "--config", str(config_path)])
    assert result.exit_code == 0, result.output
    kept = result.output.splitlines()
    assert "temp" in kept
    assert "temp_f" not in kept


def test_pseudoabs(presences, presences_path, raster_dir, config_path, tmp_path):
    output = tmp_path / "out" / "pseudoabs.parquet"
    result = runner.invoke(
        app,
        ["pseudoabs", str(presences_path), str(raster_dir), "--output-path", str(output), "--config", str(config_path)],
    )
    assert result.exit_code == 0, result.output
    sampled = gpd.read_parquet(output)
    assert (sampled["class"] == 0).sum() == 2 * len(presences)


def test_predict(training_data, raster_dir, tmp_path):
    recipe = sdm_recipe(training_data)
    resamples = spatial_block_cv(training_data, v=3, random_state=0)
    tuned = tune_workflow_set(workflow_set(recipe, [sdm_spec_glm()]), training_data, resamples)
    ensemble = calib_class_thresh(simple_ensemble(metric="roc_auc").add_member(tuned, training_data))
    model_path = save_ensemble(ensemble, tmp_path / "ensemble.pkl")

    output = tmp_path / "binary.tif"
    result = runner.invoke(
        app,
        ["predict", str(model_path), str(raster_dir), "--output-path", str(output), "--type", "class"],
    )
    assert result.exit_code == 0, result.output
    saved = rxr.open_rasterio(output, masked=True)
    values = saved.values[~np.isnan(saved.values)]
    assert set(np.unique(values)) <= {0, 1}


def test_missing_raster(tmp_path):
    result = runner.invoke(app, ["select-vars", str(tmp_path / "missing")])
    assert result.exit_code != 0


def test_thin(presences, presences_path, raster_dir, tmp_path):
    output = tmp_path / "out" / "thinned.parquet"
    result = runner.invoke(
        app,
        ["thin", str(presences_path), str(raster_dir), "--output-path", str(output), "--species", "Myotis daubentonii"],
    )
    assert result.exit_code == 0, result.output
    thinned = gpd.read_parquet(output)
    assert 0 < len(thinned) <= len(presences)
    coords = np.column_stack([thinned.geometry.x, thinned.geometry.y])
    cells = set(map(tuple, np.floor(coords / 1000).astype(int)))
    assert len(cells) == len(thinned)


def test_thin_unknown_species(presences_path, raster_dir, tmp_path):
    output = tmp_path / "thinned.parquet"
    result = runner.invoke(
        app,
        ["thin", str(presences_path), str(raster_dir), "--output-path", str(output), "--species", "Myotis myotis"],
    )
    assert result.exit_code == 0, result.output
    assert len(gpd.read_parquet(output)) == 0


def test_fit(presences_path, raster_dir, fit_config_path, tmp_path):
    output = tmp_path / "models" / "ensemble.pkl"
    result = runner.invoke(
        app,
        ["fit", str(presences_path), str(raster_dir), "--output-path", str(output), "--config", str(fit_config_path)],
    )
    assert result.exit_code == 0, result.output
    ensemble = load_ensemble(output)
    assert list(ensemble.members) == ["glm"]
    metrics = pd.read_csv(tmp_path / "models" / "ensemble_metrics.csv")
    assert set(metrics["wflow_id"]) == {"glm"}
    assert set(metrics["repeat"]) == {1}


def test_fit_repeats(presences_path, raster_dir, fit_config_path, tmp_path):
    output = tmp_path / "ensemble.pkl"
    args = ["fit", str(presences_path), str(raster_dir), "--output-path", str(output), "--config", str(fit_config_path)]
    result = runner.invoke(app, args + ["--n-repeats", "2"])
    assert result.exit_code == 0, result.output
    assert list(load_ensemble(output).members) == ["repeat_1.glm", "repeat_2.glm"]


def test_fit_rejects_zero_repeats(presences_path, raster_dir, fit_config_path, tmp_path):
    output = tmp_path / "ensemble.pkl"
    result = runner.invoke(
        app,
        [
            "fit",
            str(presences_path),
            str(raster_dir),
            "--output-path",
            str(output),
            "--config",
            str(fit_config_path),
            "--n-repeats",
            "0",
        ],
    )
    assert result.exit_code != 0
    assert isinstance(result.exception, ValidationError)
    assert not output.exists()
