import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Libraries that log every raster read or tracking call at INFO
NOISY_LOGGERS = ("rasterio", "fiona", "pyogrio", "mlflow", "urllib3")


def setup_logging(level=logging.INFO, verbose: bool = False, quiet_libraries: bool = True):
    """Configure root logging for the CLI and pipelines."""
    log_level = logging.DEBUG if verbose else level
    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        stream=sys.stdout,
        force=True,
    )
    if quiet_libraries:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
