import logging
from pathlib import Path
from typing import List, Optional

import geopandas as gpd
import mlflow
import typer
from typing_extensions import Annotated

from tidysdm.models.training import fit_sdm, log_ensemble_to_mlflow, thin_occurrences
from tidysdm.occurrence.cleaning import clean_occurrences, filter_species
from tidysdm.occurrence.sampling import sample_pseudoabs
from tidysdm.raster.io import load_environmental_variables
from tidysdm.raster.prediction import predict_raster, save_prediction_raster
from tidysdm.utils.config import EnsembleConfig, load_pipeline_config
from tidysdm.utils.io import load_ensemble, load_occurrences, save_ensemble
from tidysdm.utils.logging_utils import setup_logging
from tidysdm.variables.selection import filter_high_cor

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="tidysdm",
    help="Species distribution modelling from presence-only records",
    add_completion=False,
)

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="YAML config with a 'pipeline' section.", exists=True, readable=True),
]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose logging.")]


def _save_points(gdf: gpd.GeoDataFrame, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix == ".parquet":
        gdf.to_parquet(path)
    else:
        gdf.to_file(path)
    logger.info(f"Saved {len(gdf)} points to: {path}")


def _load_presences(path: Path, species: Optional[List[str]], species_col: str) -> gpd.GeoDataFrame:
    occurrences = load_occurrences(path)
    return filter_species(occurrences, species=species, species_col=species_col)


@app.command()
def thin(
    occurrences_path: Annotated[Path, typer.Argument(help="Occurrence records (csv, parquet or vector file).", exists=True)],
    rasters_path: Annotated[Path, typer.Argument(help="Predictor GeoTIFF or directory of GeoTIFFs.", exists=True)],
    output_path: Annotated[Path, typer.Option(help="Where to write thinned points.")] = Path("data/processed/thinned.parquet"),
    species: Annotated[Optional[List[str]], typer.Option(help="Species to keep.")] = None,
    species_col: Annotated[str, typer.Option(help="Species column.")] = "species",
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Clean occurrences and thin them to one per raster cell (or by distance)."""
    setup_logging(verbose=verbose)
    pipeline = load_pipeline_config(config)
    raster = load_environmental_variables(rasters_path)
    presences = clean_occurrences(_load_presences(occurrences_path, species, species_col), raster=raster)
    thinned = thin_occurrences(presences, raster, pipeline)
    logger.info(f"Thinned {len(presences)} records to {len(thinned)}")
    _save_points(thinned, output_path)


@app.command()
def pseudoabs(
    presences_path: Annotated[Path, typer.Argument(help="Thinned presence points.", exists=True)],
    rasters_path: Annotated[Path, typer.Argument(help="Predictor GeoTIFF or directory of GeoTIFFs.", exists=True)],
    output_path: Annotated[Path, typer.Option(help="Where to write presences and pseudo-absences.")] = Path(
        "data/processed/presence-pseudoabs.parquet"
    ),
    n: Annotated[Optional[int], typer.Option(help="Number of pseudo-absences (overrides the config).")] = None,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Sample pseudo-absences for a set of presences."""
    setup_logging(verbose=verbose)
    pipeline = load_pipeline_config(config)
    raster = load_environmental_variables(rasters_path)
    presences = load_occurrences(presences_path)
    settings = pipeline.pseudoabs
    n = n or settings.n or int(round(settings.n_per_presence * len(presences)))
    sampled = sample_pseudoabs(
        presences,
        raster,
        n=n,
        method=settings.method,
        dist_min=settings.dist_min,
        dist_max=settings.dist_max,
        random_state=pipeline.random_state,
    )
    _save_points(sampled, output_path)


@app.command("select-vars")
def select_vars(
    rasters_path: Annotated[Path, typer.Argument(help="Predictor GeoTIFF or directory of GeoTIFFs.", exists=True)],
    cutoff: Annotated[Optional[float], typer.Option(help="Maximum absolute correlation (overrides the config).")] = None,
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Print a set of predictors with no pairwise correlation above the cutoff."""
    setup_logging(verbose=verbose)
    pipeline = load_pipeline_config(config)
    raster = load_environmental_variables(rasters_path, variables=pipeline.variables.predictors)
    kept = filter_high_cor(
        raster,
        cutoff=cutoff or pipeline.variables.cutoff,
        to_keep=pipeline.variables.to_keep,
        exact=pipeline.variables.exact,
        verbose=True,
    )
    typer.echo("\n".join(kept))


@app.command()
def fit(
    occurrences_path: Annotated[Path, typer.Argument(help="Occurrence records (csv, parquet or vector file).", exists=True)],
    rasters_path: Annotated[Path, typer.Argument(help="Predictor GeoTIFF or directory of GeoTIFFs.", exists=True)],
    output_path: Annotated[Path, typer.Option(help="Where to pickle the fitted ensemble.")] = Path("data/sdm_models/ensemble.pkl"),
    species: Annotated[Optional[List[str]], typer.Option(help="Species to model.")] = None,
    species_col: Annotated[str, typer.Option(help="Species column.")] = "species",
    n_repeats: Annotated[Optional[int], typer.Option(help="Pseudo-absence repeats (overrides the config).")] = None,
    mlflow_uri: Annotated[Optional[str], typer.Option(help="MLflow tracking URI; no tracking when omitted.")] = None,
    experiment: Annotated[str, typer.Option(help="MLflow experiment name.")] = "tidysdm",
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Run the full pipeline and save the calibrated ensemble."""
    setup_logging(verbose=verbose)
    logger.info("=== Starting SDM fit ===")
    pipeline = load_pipeline_config(config)
    if n_repeats is not None:
        pipeline.ensemble = EnsembleConfig.model_validate({**pipeline.ensemble.model_dump(), "n_repeats": n_repeats})
    raster = load_environmental_variables(rasters_path, variables=pipeline.variables.predictors)
    presences = _load_presences(occurrences_path, species, species_col)

    result = fit_sdm(presences, raster, pipeline)
    save_ensemble(result.ensemble, output_path)
    metrics_path = output_path.with_name(f"{output_path.stem}_metrics.csv")
    result.metrics.assign(params=result.metrics["params"].astype(str)).to_csv(metrics_path, index=False)
    logger.info(f"Saved tuning metrics to: {metrics_path}")

    if mlflow_uri is not None:
        mlflow.set_tracking_uri(mlflow_uri)
        log_ensemble_to_mlflow(result, pipeline, run_name=output_path.stem, experiment=experiment)
    logger.info("=== SDM fit complete ===")


@app.command()
def predict(
    model_path: Annotated[Path, typer.Argument(help="Pickled ensemble.", exists=True)],
    rasters_path: Annotated[Path, typer.Argument(help="Predictor GeoTIFF or directory of GeoTIFFs.", exists=True)],
    output_path: Annotated[Path, typer.Option(help="Output GeoTIFF.")] = Path("data/predictions/suitability.tif"),
    type: Annotated[str, typer.Option("--type", help="'prob' or 'class'.")] = "prob",
    fun: Annotated[str, typer.Option(help="Ensemble aggregation: mean, median, weighted_mean, weighted_median, none.")] = "mean",
    class_thresh: Annotated[str, typer.Option(help="Calibrated threshold used with --type class.")] = "tss_max",
    verbose: VerboseOption = False,
) -> None:
    """Predict a fitted ensemble over a predictor raster."""
    setup_logging(verbose=verbose)
    ensemble = load_ensemble(model_path)
    raster = load_environmental_variables(rasters_path)
    kwargs = {"fun": fun}
    if type == "class":
        kwargs["class_thresh"] = class_thresh
    prediction = predict_raster(ensemble, raster, type=type, **kwargs)
    save_prediction_raster(prediction, output_path)


if __name__ == "__main__":
    app()
