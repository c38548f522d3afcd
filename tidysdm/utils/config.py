"""Pipeline configuration loaded from YAML."""

from pathlib import Path
from typing import Dict, List, Literal, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, Field, field_validator
from pyhere import here

CONFIG_PATH = Path(here(".")) / "config" / "default.yaml"


class ThinningConfig(BaseModel):
    method: Literal["cell", "dist", "none"] = "cell"
    dist_min: Optional[float] = None
    agg_fact: Optional[int] = None

    @field_validator("dist_min")
    @classmethod
    def positive_distance(cls, v):
        if v is not None and v <= 0:
            raise ValueError("dist_min must be positive")
        return v


class PseudoabsConfig(BaseModel):
    n: Optional[int] = None
    n_per_presence: float = 3.0
    method: Literal["random", "dist_min", "dist_max", "dist_disc"] = "random"
    dist_min: Optional[float] = None
    dist_max: Optional[float] = None


class VariableConfig(BaseModel):
    predictors: Optional[List[str]] = None
    cutoff: float = Field(0.7, gt=0, le=1)
    to_keep: List[str] = Field(default_factory=list)
    exact: Optional[bool] = None


class ModelConfig(BaseModel):
    name: Literal["glm", "gam", "rf", "boost_tree", "maxent"]
    tune: Literal["sdm", "all", "custom", "none"] = "sdm"
    grid: Optional[Dict[str, list]] = None


class ResamplingConfig(BaseModel):
    method: Literal["block", "geographic"] = "block"
    v: int = Field(5, ge=2)
    n_blocks: Optional[int] = None
    cellsize: Optional[float] = None


class EnsembleConfig(BaseModel):
    metric: Literal["boyce_cont", "roc_auc", "tss_max", "kap_max"] = "boyce_cont"
    n_repeats: int = Field(1, ge=1)
    metric_thresh: Optional[Tuple[str, float]] = None
    class_thresh: Union[str, Tuple[str, float]] = "tss_max"
    fun: Literal["mean", "median", "weighted_mean", "weighted_median"] = "mean"


class PipelineConfig(BaseModel):
    """All settings for a thin / sample / select / tune / ensemble run."""
    thinning: ThinningConfig = Field(default_factory=ThinningConfig)
    pseudoabs: PseudoabsConfig = Field(default_factory=PseudoabsConfig)
    variables: VariableConfig = Field(default_factory=VariableConfig)
    models: List[ModelConfig] = Field(
        default_factory=lambda: [
            ModelConfig(name="glm"),
            ModelConfig(name="rf"),
            ModelConfig(name="boost_tree"),
            ModelConfig(name="maxent"),
        ]
    )
    resampling: ResamplingConfig = Field(default_factory=ResamplingConfig)
    ensemble: EnsembleConfig = Field(default_factory=EnsembleConfig)
    random_state: Optional[int] = 42
    n_jobs: int = 1


def load_config(config_path: Union[str, Path] = CONFIG_PATH) -> Dict:
    """Loads the YAML configuration file."""
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    with open(config_path, "r") as f:
        config = yaml.safe_load(f)
    return config or {}


def load_pipeline_config(config_path: Optional[Union[str, Path]] = None) -> PipelineConfig:
    """Load and validate the pipeline section of a YAML config.

    With no path the defaults are used, unless the project has a
    ``config/default.yaml``.
    """
    if config_path is None:
        if not CONFIG_PATH.exists():
            return PipelineConfig()
        config_path = CONFIG_PATH
    raw = load_config(config_path)
    return PipelineConfig.model_validate(raw.get("pipeline", raw))
