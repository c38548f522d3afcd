"""
Shared utilities: configuration, persistence and logging.
"""

from .config import PipelineConfig, load_config, load_pipeline_config
from .io import load_occurrences, save_ensemble, load_ensemble
from .logging_utils import setup_logging

__all__ = [
    "PipelineConfig",
    "load_config",
    "load_pipeline_config",
    "load_occurrences",
    "save_ensemble",
    "load_ensemble",
    "setup_logging",
]
