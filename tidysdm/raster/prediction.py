import logging
from pathlib import Path
from typing import Dict, Union

import numpy as np
import pandas as pd
import xarray as xr

from tidysdm.geo import template_grid
from tidysdm.models.ensemble import SimpleEnsemble
from tidysdm.raster.io import frame_to_raster, raster_to_frame

logger = logging.getLogger(__name__)


def _predict_frame(model, frame: pd.DataFrame, type: str, **kwargs):
    if isinstance(model, SimpleEnsemble):
        if type == "prob":
            return model.predict_proba(frame, **kwargs)
        return model.predict(frame, **kwargs)
    if type == "prob":
        return model.predict_proba(frame, **kwargs)[:, 1]
    return model.predict(frame, **kwargs)


def predict_raster(
    model,
    raster: xr.Dataset,
    type: str = "prob",
    **kwargs,
) -> Union[xr.DataArray, xr.Dataset]:
    """
    Predict a model over every valid cell of a predictor raster.

    Args:
        model: A simple or repeat ensemble, or any fitted scikit-learn
            classifier taking a table of predictors.
        raster: Predictor Dataset. Cells with a missing value in any variable
            are left NaN. With a ``time`` dim each step is predicted separately.
        type: "prob" for probability of presence, "class" for presence/absence.
        **kwargs: Passed to the model's predict_proba / predict, e.g. ``fun``,
            ``metric_thresh`` or ``class_thresh`` for ensembles.

    Returns:
        DataArray on the raster grid, or a Dataset with one variable per
        member when ``fun="none"``.
    """
    if type not in ("prob", "class"):
        raise ValueError(f"type must be 'prob' or 'class', got '{type}'")
    if isinstance(raster, xr.DataArray):
        raster = raster.to_dataset(name=raster.name or "value")

    if "time" in raster.dims:
        steps = [predict_raster(model, raster.isel(time=i), type=type, **kwargs) for i in range(raster.sizes["time"])]
        return xr.concat(steps, dim=pd.Index(raster["time"].values, name="time"))

    frame = raster_to_frame(raster, drop_na=True)
    if frame.empty:
        raise ValueError("Raster has no cells with values for every predictor")
    logger.info(f"Predicting {len(frame)} cells")
    preds = _predict_frame(model, frame, type, **kwargs)

    if isinstance(preds, pd.DataFrame):
        return xr.Dataset(
            {name: frame_to_raster(preds[name].values, frame["cell"].values, raster, name=name) for name in preds.columns}
        )
    if isinstance(model, SimpleEnsemble):
        name = kwargs.get("fun", "mean")
        name = name if type == "prob" else f"binary_{name}"
    else:
        name = "prediction" if type == "prob" else "class"
    return frame_to_raster(np.asarray(preds), frame["cell"].values, raster, name=name)


def clamp_predictors(
    raster: xr.Dataset,
    training: pd.DataFrame,
    use_na: bool = False,
) -> xr.Dataset:
    """
    Restrict predictor values to the range seen in the training data.

    Values outside the range are clamped to it, or set to NaN with ``use_na``.
    """
    missing = [v for v in raster.data_vars if v not in training.columns]
    if missing:
        raise KeyError(f"Training data has no values for: {missing}")
    out = raster.copy()
    for name in raster.data_vars:
        lo = float(np.nanmin(training[name].values))
        hi = float(np.nanmax(training[name].values))
        da = raster[name]
        if use_na:
            out[name] = da.where((da >= lo) & (da <= hi))
        else:
            out[name] = da.clip(min=lo, max=hi)
    return out


def _mess_similarity(values: np.ndarray, reference: np.ndarray) -> np.ndarray:
    ref = np.sort(reference[np.isfinite(reference)])
    lo, hi = ref[0], ref[-1]
    span = hi - lo if hi > lo else 1.0
    f = np.searchsorted(ref, values, side="left") / len(ref) * 100
    sim = np.where(f <= 50, 2 * f, 2 * (100 - f))
    sim = np.where(f == 0, (values - lo) / span * 100, sim)
    sim = np.where(f == 100, (hi - values) / span * 100, sim)
    return sim


def extrapol_mess(raster: xr.Dataset, training: pd.DataFrame) -> xr.DataArray:
    """
    Multivariate environmental similarity surface.

    For each variable a cell's similarity to the training values is computed
    from the share of training values below it; negative values mark values
    outside the training range. The MESS is the minimum over variables.
    """
    missing = [v for v in raster.data_vars if v not in training.columns]
    if missing:
        raise KeyError(f"Training data has no values for: {missing}")
    frame = raster_to_frame(raster, drop_na=True)
    sims = np.column_stack(
        [_mess_similarity(frame[name].to_numpy(dtype=float), training[name].to_numpy(dtype=float)) for name in raster.data_vars]
    )
    return frame_to_raster(sims.min(axis=1), frame["cell"].values, raster, name="mess")


def niche_overlap(a: xr.DataArray, b: xr.DataArray) -> Dict[str, float]:
    """Schoener's D and Warren's I between two suitability surfaces on the same grid."""
    va = template_grid(a).values.ravel()
    vb = template_grid(b).values.ravel()
    if va.shape != vb.shape:
        raise ValueError(f"Rasters have different shapes: {a.shape} and {b.shape}")
    ok = np.isfinite(va) & np.isfinite(vb)
    va, vb = va[ok], vb[ok]
    if va.sum() <= 0 or vb.sum() <= 0:
        raise ValueError("Suitability surfaces must have positive values")
    pa = va / va.sum()
    pb = vb / vb.sum()
    return {
        "D": float(1 - 0.5 * np.abs(pa - pb).sum()),
        "I": float(1 - 0.5 * ((np.sqrt(pa) - np.sqrt(pb)) ** 2).sum()),
    }


def save_prediction_raster(
    predictions: Union[xr.DataArray, xr.Dataset],
    output_path: Union[str, Path],
    nodata: float = -9999.0,
) -> Path:
    """Save a prediction raster as a GeoTIFF.

    Args:
        predictions: Prediction on a y/x grid; a Dataset or a time series is
            written with one band per variable or step.
        output_path: Path to save raster
        nodata: Nodata value
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        if isinstance(predictions, xr.Dataset):
            crs = predictions.rio.crs
            names = list(predictions.data_vars)
            predictions = predictions.to_array(dim="band")
            predictions = predictions.assign_coords(band=np.arange(1, len(names) + 1))
            predictions.attrs["long_name"] = tuple(names)
            if crs is not None:
                predictions = predictions.rio.write_crs(crs)
        da = predictions.astype("float32").fillna(nodata)
        da = da.rio.write_nodata(nodata)
        da.rio.to_raster(output_path, driver="GTiff")
        logger.info(f"Successfully saved prediction raster to: {output_path}")
    except Exception as e:
        logger.error(f"Error saving prediction raster: {e}", exc_info=True)
        raise
    return output_path
