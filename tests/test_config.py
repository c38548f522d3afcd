from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from tidysdm.utils.config import PipelineConfig, load_config, load_pipeline_config

DEFAULT_CONFIG = Path(__file__).parents[1] / "config" / "default.yaml"


def write_yaml(path: Path, content: dict) -> Path:
    with open(path, "w") as f:
        yaml.safe_dump(content, f)
    return path


def test_defaults():
    config = PipelineConfig()
    assert config.thinning.method == "cell"
    assert config.pseudoabs.method == "random"
    assert [m.name for m in config.models] == ["glm", "rf", "boost_tree", "maxent"]
    assert config.resampling.v == 5
    assert config.ensemble.metric == "boyce_cont"
    assert config.ensemble.class_thresh == "tss_max"


def test_project_config():
    config = load_pipeline_config(DEFAULT_CONFIG)
    assert config.pseudoabs.method == "dist_min"
    assert config.pseudoabs.dist_min == 50000
    assert "gam" in [m.name for m in config.models]


def test_load_pipeline_config(tmp_path):
    path = write_yaml(
        tmp_path / "config.yaml",
        {
            "pipeline": {
                "thinning": {"method": "dist", "dist_min": 2000},
                "models": [{"name": "rf", "tune": "custom", "grid": {"max_features": [1, 2]}}],
                "ensemble": {"metric": "roc_auc", "class_thresh": ["sens", 0.9]},
            }
        },
    )
    config = load_pipeline_config(path)
    assert config.thinning.dist_min == 2000
    assert config.models[0].grid == {"max_features": [1, 2]}
    assert config.ensemble.class_thresh == ("sens", 0.9)
    assert config.variables.cutoff == 0.7


def test_config_without_pipeline_section(tmp_path):
    path = write_yaml(tmp_path / "config.yaml", {"n_jobs": 2})
    assert load_pipeline_config(path).n_jobs == 2


def test_empty_config(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(path) == {}
    assert load_pipeline_config(path) == PipelineConfig()


def test_missing_config(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_pipeline_config(tmp_path / "missing.yaml")


@pytest.mark.parametrize(
    "section",
    [
        {"thinning": {"dist_min": -5}},
        {"variables": {"cutoff": 1.5}},
        {"resampling": {"v": 1}},
        {"models": [{"name": "svm"}]},
        {"ensemble": {"metric": "accuracy"}},
    ],
)
def test_invalid_config(tmp_path, section):
    path = write_yaml(tmp_path / "config.yaml", {"pipeline": section})
    with pytest.raises(ValidationError):
        load_pipeline_config(path)
