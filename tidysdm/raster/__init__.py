"""
Predictor rasters: loading, extraction at points and prediction.
"""

from .io import frame_to_raster, load_dataset, load_environmental_variables, raster_to_frame
from .extract import extract_raster_values
from .prediction import (
    clamp_predictors,
    extrapol_mess,
    niche_overlap,
    predict_raster,
    save_prediction_raster,
)

__all__ = [
    "frame_to_raster",
    "load_dataset",
    "load_environmental_variables",
    "raster_to_frame",
    "extract_raster_values",
    "clamp_predictors",
    "extrapol_mess",
    "niche_overlap",
    "predict_raster",
    "save_prediction_raster",
]
